"""Crawl-state records, scan scheduling, block addresses and file ranges for btrfs deduplication."""

__version__ = "0.1.0"

__all__ = ["address", "crawlstate", "scanmodes", "types"]