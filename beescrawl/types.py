"""File identities, byte ranges within files, and matched pairs of ranges."""

from __future__ import annotations

import fcntl
import functools
import os
import struct
from dataclasses import dataclass
from typing import Optional

from beescrawl.address import BLOCK_SIZE_SUMS, BlockData, _name_fd, _pretty

# Largest value of a signed 64-bit file offset; an end at this value means "to EOF".
OFF_MAX = 2**63 - 1

BTRFS_FIRST_FREE_OBJECTID = 256
# _IOWR(0x94, 18, struct btrfs_ioctl_ino_lookup_args), a 4096-byte argument.
_BTRFS_IOC_INO_LOOKUP = 0xD0009412
_INO_LOOKUP_ARGS_SIZE = 4096


def _root_id_of_fd(fd: int) -> int:
    """Subvolume id of the file open on ``fd`` (btrfs only)."""
    args = bytearray(struct.pack("<QQ", 0, BTRFS_FIRST_FREE_OBJECTID))
    args.extend(bytes(_INO_LOOKUP_ARGS_SIZE - len(args)))
    fcntl.ioctl(fd, _BTRFS_IOC_INO_LOOKUP, args, True)
    return struct.unpack_from("<Q", args, 0)[0]


@functools.total_ordering
@dataclass(frozen=True, eq=True)
class FileId:
    """A file named by subvolume id and inode number."""

    root: int = 0
    ino: int = 0

    @classmethod
    def from_fd(cls, fd: int) -> "FileId":
        """Identify the file open on ``fd``."""
        return cls(_root_id_of_fd(fd), os.fstat(fd).st_ino)

    def __bool__(self) -> bool:
        return bool(self.root and self.ino)

    def __lt__(self, that: "FileId") -> bool:
        if not isinstance(that, FileId):
            return NotImplemented
        # Inode first gives good locality when scanning across snapshots.
        return (self.ino, self.root) < (that.ino, that.root)

    def __str__(self) -> str:
        return f"{self.root}:{self.ino}"


def _has_fd(fd: Optional[int]) -> bool:
    return fd is not None and fd >= 0


@functools.total_ordering
class FileRange:
    """A byte range ``begin..end`` of a file known by id, by open fd, or both."""

    __hash__ = None  # mutable

    def __init__(
        self,
        fid: Optional[FileId] = None,
        begin: int = 0,
        end: int = 0,
        fd: Optional[int] = None,
    ) -> None:
        self._fid = fid if fid is not None else FileId()
        self.begin = begin
        self.end = end
        self.fd = fd
        self._file_size = 0

    def fid(self) -> FileId:
        """File id, looked up from the fd on first use when not given."""
        if not self._fid and _has_fd(self.fd):
            self._fid = FileId.from_fd(self.fd)
        return self._fid

    def _check_order(self) -> None:
        if self.begin > self.end:
            raise ValueError(f"range begin {self.begin} is after end {self.end}")

    def empty(self) -> bool:
        self._check_order()
        return self.begin >= self.end

    def size(self) -> int:
        self._check_order()
        return self.end - self.begin

    def file_size(self) -> int:
        """Size of the underlying file, measured once."""
        if self._file_size <= 0:
            if not _has_fd(self.fd):
                raise ValueError("file size needs an open fd")
            size = os.fstat(self.fd).st_size
            if size < 0:
                raise ValueError(f"negative file size {size}")
            self._file_size = size
        return self._file_size

    def grow_end(self, delta: int) -> int:
        """Move the end forward by ``delta``, stopping at end of file."""
        if delta <= 0:
            raise ValueError(f"delta {delta} must be positive")
        self.end = min(self.end + delta, self.file_size())
        if self.end > self._file_size:
            raise RuntimeError(f"end {self.end} past file size {self._file_size}")
        return self.end

    def grow_begin(self, delta: int) -> int:
        """Move the beginning back by ``delta``, stopping at offset zero."""
        if delta <= 0:
            raise ValueError(f"delta {delta} must be positive")
        self.begin -= min(delta, self.begin)
        return self.begin

    def is_same_file(self, that: "FileRange") -> bool:
        if _has_fd(self.fd) and _has_fd(that.fd) and self.fd == that.fd:
            return True
        return self.fid() == that.fid()

    def overlaps(self, that: "FileRange") -> bool:
        """True if the byte ranges intersect and lie in the same file."""
        a = (self.begin, self.end)
        b = (that.begin, that.end)
        if b[0] < a[0]:
            a, b = b, a
        if a[0] <= b[0] < a[1]:
            return self.is_same_file(that)
        return False

    def copy_closed(self) -> "FileRange":
        """Same range identified by file id only, without the fd."""
        return FileRange(self.fid(), self.begin, self.end)

    def to_block_data(self) -> BlockData:
        return BlockData(self.fd, self.begin, self.end - self.begin)

    def __eq__(self, that: object) -> bool:
        if not isinstance(that, FileRange):
            return NotImplemented
        if self.begin != that.begin or self.end != that.end:
            return False
        if _has_fd(self.fd) and _has_fd(that.fd) and self.fd == that.fd:
            return True
        return self.fid() == that.fid()

    def __lt__(self, that: "FileRange") -> bool:
        if not isinstance(that, FileRange):
            return NotImplemented
        return (self.fid(), self.begin, self.end) < (that.fid(), that.begin, that.end)

    def __repr__(self) -> str:
        return f"FileRange({self._fid!r}, {self.begin:#x}, {self.end:#x}, fd={self.fd})"

    def __str__(self) -> str:
        if self.end == OFF_MAX:
            text = f"- [{hex(self.begin)}..eof]"
        else:
            text = f"{_pretty(self.size())} "
            text += f"[{hex(self.begin)}" if self.begin != 0 else "("
            text += f"..{hex(self.end)}"
            text += ")" if _has_fd(self.fd) and self.end >= self.file_size() else "]"
        if self._fid:
            text += f" fid = {self._fid}"
        if _has_fd(self.fd):
            text += f" fd = {self.fd} '{_name_fd(self.fd)}'"
        return text


@functools.total_ordering
class RangePair:
    """Two equal-sized, non-overlapping ranges believed to hold the same data."""

    __hash__ = None  # mutable

    def __init__(self, src: FileRange, dst: FileRange) -> None:
        self.first = src
        self.second = dst
        if src.overlaps(dst):
            raise ValueError(f"ranges overlap: {src} and {dst}")
        if src.size() != dst.size():
            raise ValueError(f"range sizes differ: {src.size()} != {dst.size()}")
        if not _has_fd(src.fd) or not _has_fd(dst.fd):
            return
        remaining = src.size()
        src_pos, dst_pos = src.begin, dst.begin
        while remaining:
            length = min(BLOCK_SIZE_SUMS, remaining)
            src_block = BlockData(src.fd, src_pos, length)
            dst_block = BlockData(dst.fd, dst_pos, length)
            if not src_block.is_data_equal(dst_block):
                raise ValueError(f"data differs: {src_block} and {dst_block}")
            src_pos += length
            dst_pos += length
            remaining -= length

    def copy_closed(self) -> "RangePair":
        return RangePair(self.first.copy_closed(), self.second.copy_closed())

    def __eq__(self, that: object) -> bool:
        if not isinstance(that, RangePair):
            return NotImplemented
        return self.first == that.first and self.second == that.second

    def __lt__(self, that: "RangePair") -> bool:
        if not isinstance(that, RangePair):
            return NotImplemented
        # Order by destination, then source.
        return (self.second, self.first) < (that.second, that.first)

    def __str__(self) -> str:
        return (
            f"RangePair: {_pretty(self.first.size())}"
            f" src[{hex(self.first.begin)}..{hex(self.first.end)}]"
            f" dst[{hex(self.second.begin)}..{hex(self.second.end)}]"
            f"\nsrc = {self.first.fd} {_name_fd(self.first.fd) if _has_fd(self.first.fd) else ''}"
            f"\ndst = {self.second.fd} {_name_fd(self.second.fd) if _has_fd(self.second.fd) else ''}"
        )