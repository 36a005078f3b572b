"""Policies that decide which subvolume crawl gets the next batch of work."""

from __future__ import annotations

import heapq
import logging
import threading
from collections import deque
from enum import IntEnum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

_log = logging.getLogger(__name__)

CrawlBatch = Callable[[Any], bool]


class ScanMode(IntEnum):
    """Available scan orderings, numbered as in saved configuration."""

    LOCKSTEP = 0
    INDEPENDENT = 1
    SEQUENTIAL = 2
    RECENT = 3


def _front(crawl: Any) -> Optional[Any]:
    """Next range of ``crawl``, or None if it has nothing left to offer."""
    front = crawl.peek_front()
    if front is None:
        return None
    fd = getattr(front, "fd", None)
    if fd is not None and fd >= 0:
        return front
    return front if front.fid() else None


class Scanner:
    """Base class: hands crawls to ``crawl_batch`` in a mode-specific order.

    ``crawl_batch`` takes one crawl and returns True if it queued work.
    """

    mode: ScanMode

    def __init__(self, crawl_batch: CrawlBatch) -> None:
        self._crawl_batch = crawl_batch
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.mode.name

    def __str__(self) -> str:
        return self.name

    def scan(self) -> bool:
        """Run one batch from some crawl; False when every crawl is exhausted."""
        raise NotImplementedError

    def next_transid(self, crawl_map: Mapping[int, Any]) -> None:
        """Rebuild the schedule from a map of root id to crawl."""
        raise NotImplementedError


class LockstepScanner(Scanner):
    """Scan the same inode and offset in every subvolume together.

    Good for caching and space saving, bad for rotating snapshots.
    """

    mode = ScanMode.LOCKSTEP

    def __init__(self, crawl_batch: CrawlBatch) -> None:
        super().__init__(crawl_batch)
        self._sorted: Optional[Tuple[List[tuple], Dict[tuple, Any]]] = None

    @staticmethod
    def _key(front: Any) -> tuple:
        fid = front.fid()
        return (fid.ino, front.begin, fid.root)

    @staticmethod
    def _insert(heap: List[tuple], crawls: Dict[tuple, Any], key: tuple, crawl: Any) -> None:
        if key in crawls:
            raise RuntimeError(f"duplicate lockstep key {key}")
        crawls[key] = crawl
        heapq.heappush(heap, key)

    def scan(self) -> bool:
        with self._lock:
            held = self._sorted
        if held is None:
            _log.info("called Lockstep scan without a sorted map")
            return False
        heap, crawls = held
        while heap:
            key = heapq.heappop(heap)
            crawl = crawls.pop(key)
            if self._crawl_batch(crawl):
                front = _front(crawl)
                if front is not None:
                    self._insert(heap, crawls, self._key(front), crawl)
                return True
        return False

    def next_transid(self, crawl_map: Mapping[int, Any]) -> None:
        heap: List[tuple] = []
        crawls: Dict[tuple, Any] = {}
        for _, crawl in sorted(crawl_map.items(), key=lambda item: item[0]):
            front = _front(crawl)
            if front is not None:
                self._insert(heap, crawls, self._key(front), crawl)
        with self._lock:
            self._sorted = (heap, crawls)


class IndependentScanner(Scanner):
    """Round-robin over subvolumes with no synchronization between them."""

    mode = ScanMode.INDEPENDENT

    def __init__(self, crawl_batch: CrawlBatch) -> None:
        super().__init__(crawl_batch)
        self._subvols: Optional[Deque[Any]] = None

    def scan(self) -> bool:
        with self._lock:
            subvols = self._subvols
        if subvols is None:
            _log.info("called Independent scan without a subvol list")
            return False
        while subvols:
            crawl = subvols.popleft()
            if self._crawl_batch(crawl):
                subvols.append(crawl)
                return True
        return False

    def next_transid(self, crawl_map: Mapping[int, Any]) -> None:
        subvols = deque(
            crawl
            for _, crawl in sorted(crawl_map.items(), key=lambda item: item[0])
            if _front(crawl) is not None
        )
        with self._lock:
            self._subvols = subvols


class SequentialScanner(Scanner):
    """Scan each subvolume completely, in root id order, before the next."""

    mode = ScanMode.SEQUENTIAL

    def __init__(self, crawl_batch: CrawlBatch) -> None:
        super().__init__(crawl_batch)
        self._sorted: Optional[Deque[Tuple[int, Any]]] = None

    def scan(self) -> bool:
        with self._lock:
            ordered = self._sorted
        if ordered is None:
            _log.info("called Sequential scan without a sorted map")
            return False
        while ordered:
            _, crawl = ordered[0]
            if self._crawl_batch(crawl):
                return True
            ordered.popleft()
        return False

    def next_transid(self, crawl_map: Mapping[int, Any]) -> None:
        entries: Dict[int, Any] = {}
        for _, crawl in crawl_map.items():
            front = _front(crawl)
            if front is None:
                continue
            root = front.fid().root
            if root in entries:
                raise RuntimeError(f"duplicate sequential root {root}")
            entries[root] = crawl
        ordered = deque(sorted(entries.items(), key=lambda item: item[0]))
        with self._lock:
            self._sorted = ordered


class RecentScanner(Scanner):
    """Scan subvolumes whose last completed scan is most recent first."""

    mode = ScanMode.RECENT

    def __init__(self, crawl_batch: CrawlBatch) -> None:
        super().__init__(crawl_batch)
        self._sorted: Optional[List[Deque[Any]]] = None

    def scan(self) -> bool:
        with self._lock:
            groups = self._sorted
        if groups is None:
            _log.info("called Recent scan without a sorted map")
            return False
        while groups:
            group = groups[0]
            if not group:
                groups.pop(0)
                continue
            crawl = group.popleft()
            if self._crawl_batch(crawl):
                group.append(crawl)
                return True
        return False

    def next_transid(self, crawl_map: Mapping[int, Any]) -> None:
        grouped: Dict[Tuple[int, int], Deque[Any]] = {}
        for _, crawl in sorted(crawl_map.items(), key=lambda item: item[0]):
            if _front(crawl) is None:
                continue
            # Only min_transid counts; using max_transid would behave like sequential.
            key = (crawl.get_state_end().min_transid, 0)
            grouped.setdefault(key, deque()).append(crawl)
        groups = [grouped[key] for key in sorted(grouped, reverse=True)]
        with self._lock:
            self._sorted = groups


_SCANNERS = {
    ScanMode.LOCKSTEP: LockstepScanner,
    ScanMode.INDEPENDENT: IndependentScanner,
    ScanMode.SEQUENTIAL: SequentialScanner,
    ScanMode.RECENT: RecentScanner,
}


def make_scanner(mode: Any, crawl_batch: CrawlBatch) -> Scanner:
    """Create the scanner for ``mode`` (a ScanMode or its number)."""
    try:
        scan_mode = ScanMode(mode)
    except ValueError:
        raise ValueError(f"invalid scan mode {mode!r}") from None
    scanner = _SCANNERS[scan_mode](crawl_batch)
    _log.info("Scan mode set to %d (%s)", int(scan_mode), scanner.name)
    return scanner