"""Crawl position of one subvolume and its text persistence format."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

_log = logging.getLogger(__name__)

U64_MAX = 2**64 - 1
_TIME_FORMAT = "%Y-%m-%d-%H-%M-%S"
_NUMBER = re.compile(r"\s*(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")


def format_time(t: float) -> str:
    """Format a Unix timestamp as local time, e.g. 2020-01-31-23-59-59."""
    return time.strftime(_TIME_FORMAT, time.localtime(t))


@dataclass
class CrawlState:
    """Where a crawl of one subvolume stands within a transid range."""

    root: int = 0
    objectid: int = 0
    offset: int = 0
    min_transid: int = 0
    max_transid: int = 0
    started: int = field(default_factory=lambda: int(time.time()))

    def sort_key(self) -> tuple:
        """Key ordering states by transid range, then position, then root."""
        return (self.min_transid, self.max_transid, self.objectid, self.offset, self.root)

    def __lt__(self, that: "CrawlState") -> bool:
        if not isinstance(that, CrawlState):
            return NotImplemented
        return self.sort_key() < that.sort_key()

    def __str__(self) -> str:
        age = int(time.time()) - self.started
        return (
            f"CrawlState {self.root}:{self.objectid} offset {hex(self.offset)}"
            f" transid {self.min_transid}..{self.max_transid}"
            f" started {format_time(self.started)} ({age}s ago)"
        )


def _parse_number(word: str) -> int:
    match = _NUMBER.match(word)
    if match is None:
        raise ValueError(f"not a number: {word!r}")
    value = int(match.group(1), 0) if match.group(1) != "0" else 0
    if value > U64_MAX:
        raise ValueError(f"number out of range: {word!r}")
    return value


def parse_state_line(line: str) -> CrawlState:
    """Parse one saved line of space-separated key/value pairs."""
    words = [w for w in line.split(" ") if w]
    if len(words) % 2:
        raise ValueError(f"odd number of words ({len(words)}) in crawl state line")
    fields: Dict[str, int] = {}
    for key, value in zip(words[::2], words[1::2]):
        if key in fields:
            raise ValueError(f"duplicate key {key!r} in crawl state line")
        fields[key] = _parse_number(value)

    def need(key: str) -> int:
        try:
            return fields[key]
        except KeyError:
            raise ValueError(f"missing key {key!r} in crawl state line") from None

    state = CrawlState(
        root=need("root"),
        objectid=need("objectid"),
        offset=need("offset"),
        min_transid=fields["gen_current"] if "gen_current" in fields else need("min_transid"),
        max_transid=fields["gen_next"] if "gen_next" in fields else need("max_transid"),
    )
    if "started" in fields:
        state.started = fields["started"]
    if state.min_transid == U64_MAX:
        _log.warning(
            "WARNING: root %d: bad min_transid %d, resetting to 0", state.root, state.min_transid
        )
        state.min_transid = 0
    if state.max_transid == U64_MAX:
        _log.warning(
            "WARNING: root %d: bad max_transid %d, resetting to %d",
            state.root,
            state.max_transid,
            state.min_transid,
        )
        state.max_transid = state.min_transid
    return state


def parse_states(text: str) -> List[CrawlState]:
    """Parse every non-blank line of a saved crawl state file."""
    return [parse_state_line(line) for line in text.split("\n") if line.strip()]


def dump_states(states: Iterable[CrawlState]) -> str:
    """Render states in the saved format, skipping those never given a max_transid."""
    return "".join(
        f"root {s.root} objectid {s.objectid} offset {s.offset}"
        f" min_transid {s.min_transid} max_transid {s.max_transid}"
        f" started {s.started} start_ts {format_time(s.started)}\n"
        for s in states
        if s.max_transid
    )