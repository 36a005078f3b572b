"""Block addresses derived from file extents, and cached reads of single blocks."""

from __future__ import annotations

import functools
import hashlib
import os
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Optional

BLOCK_SIZE_CLONE = 4096
BLOCK_MASK_CLONE = BLOCK_SIZE_CLONE - 1
BLOCK_SIZE_SUMS = 4096
BLOCK_SIZE_MAX_COMPRESSED_EXTENT = 128 * 1024

# FIEMAP extent flags as reported by the kernel.
FIEMAP_EXTENT_LAST = 0x00000001
FIEMAP_EXTENT_UNKNOWN = 0x00000002
FIEMAP_EXTENT_DELALLOC = 0x00000004
FIEMAP_EXTENT_ENCODED = 0x00000008
FIEMAP_EXTENT_DATA_ENCRYPTED = 0x00000080
FIEMAP_EXTENT_NOT_ALIGNED = 0x00000100
FIEMAP_EXTENT_DATA_INLINE = 0x00000200
FIEMAP_EXTENT_DATA_TAIL = 0x00000400
FIEMAP_EXTENT_UNWRITTEN = 0x00000800
FIEMAP_EXTENT_MERGED = 0x00001000
FIEMAP_EXTENT_SHARED = 0x00002000

# Not a FIEMAP flag: marks a gap between extents.
EXTENT_HOLE = 1 << 32

_COMPRESSED_FLAGS = FIEMAP_EXTENT_ENCODED
_DELALLOC_FLAGS = FIEMAP_EXTENT_UNKNOWN | FIEMAP_EXTENT_DELALLOC
_IGNORE_FLAGS = FIEMAP_EXTENT_LAST | FIEMAP_EXTENT_SHARED
_UNUSABLE_FLAGS = FIEMAP_EXTENT_NOT_ALIGNED | FIEMAP_EXTENT_DATA_INLINE
_RECOGNIZED_FLAGS = _COMPRESSED_FLAGS | _DELALLOC_FLAGS | _IGNORE_FLAGS | _UNUSABLE_FLAGS

# Low bits of a physical address are free because addresses are block aligned.
OFFSET_MIN = 1
OFFSET_MAX = BLOCK_SIZE_MAX_COMPRESSED_EXTENT // BLOCK_SIZE_CLONE
OFFSET_MASK = (OFFSET_MAX << 1) - 1
TOXIC_MASK = 1 << 9
EOF_MASK = 1 << 10
COMPRESSED_MASK = 1 << 11
ALL_MASK = COMPRESSED_MASK | EOF_MASK | OFFSET_MASK | TOXIC_MASK

U64_MASK = 2**64 - 1


class MagicValue(IntEnum):
    """Address values that stand for something other than a physical block."""

    ZERO = 0
    DELALLOC = 1
    HOLE = 2
    UNUSABLE = 3


MAGIC_LAST = BLOCK_SIZE_CLONE


@dataclass
class Extent:
    """A logical range of a file and where its data lives on disk."""

    HOLE: ClassVar[int] = EXTENT_HOLE

    begin: int
    end: int
    physical: int = 0
    flags: int = 0
    offset: int = 0

    @property
    def size(self) -> int:
        return self.end - self.begin


def _check(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


@functools.total_ordering
class Address:
    """A physical block address with flag bits, or one of the magic values."""

    __hash__ = None  # mutable via set_toxic

    def __init__(self, value: int = MagicValue.ZERO) -> None:
        self.value = int(value) & U64_MASK

    @classmethod
    def from_extent(cls, extent: Extent, offset: int) -> "Address":
        """Address of the block at file ``offset`` inside ``extent``."""
        _check(extent.physical & BLOCK_MASK_CLONE == 0, f"unaligned physical in {extent}")
        _check(extent.begin & BLOCK_MASK_CLONE == 0, f"unaligned begin in {extent}")
        _check(offset & BLOCK_MASK_CLONE == 0, f"unaligned offset {hex(offset)} in {extent}")
        _check(extent.end > extent.begin, f"empty extent {extent}")

        magic = _magic_for_flags(extent.flags)
        if magic is not None:
            return cls(magic)

        _check(extent.physical > 0, f"no physical address in {extent}")

        if extent.flags & FIEMAP_EXTENT_ENCODED:
            _check(extent.offset & BLOCK_MASK_CLONE == 0, f"unaligned extent offset in {extent}")
            _check(
                0 <= extent.offset < BLOCK_SIZE_MAX_COMPRESSED_EXTENT,
                f"extent offset out of range in {extent}",
            )
            extent_offset = offset - extent.begin + extent.offset
            _check(
                0 <= extent_offset < BLOCK_SIZE_MAX_COMPRESSED_EXTENT,
                f"extent_offset {hex(extent_offset)} out of range",
            )
            _check(extent_offset & BLOCK_MASK_CLONE == 0, f"unaligned extent_offset {hex(extent_offset)}")
            offset_bits = extent_offset // BLOCK_SIZE_CLONE + 1
            _check(OFFSET_MIN <= offset_bits <= OFFSET_MAX, f"offset_bits {offset_bits} out of range")
            _check(offset_bits & ~OFFSET_MASK == 0, f"offset_bits {offset_bits} overflow mask")
            new_addr = extent.physical | COMPRESSED_MASK | offset_bits
        else:
            new_addr = extent.physical + (offset - extent.begin)

        if (
            extent.flags & FIEMAP_EXTENT_LAST
            and extent.end & BLOCK_MASK_CLONE != 0
            and offset & ~BLOCK_MASK_CLONE == extent.end & ~BLOCK_MASK_CLONE
        ):
            new_addr |= EOF_MASK

        return cls(new_addr)

    def is_magic(self) -> bool:
        return self.value < MAGIC_LAST

    def is_toxic(self) -> bool:
        return not self.is_magic() and bool(self.value & TOXIC_MASK)

    def is_compressed(self) -> bool:
        return not self.is_magic() and bool(self.value & COMPRESSED_MASK)

    def has_compressed_offset(self) -> bool:
        return self.is_compressed() and bool(self.value & OFFSET_MASK)

    def is_unaligned_eof(self) -> bool:
        return not self.is_magic() and bool(self.value & EOF_MASK)

    def get_physical_or_zero(self) -> int:
        """Physical address without flag bits; magic values give zero."""
        if self.is_magic():
            return 0
        return self.value & ~ALL_MASK

    def get_compressed_offset(self) -> int:
        """Distance in bytes from the start of a compressed extent to this block."""
        if not self.has_compressed_offset():
            raise ValueError(f"address {self} has no compressed offset")
        return ((self.value & OFFSET_MASK) - 1) * BLOCK_SIZE_CLONE

    def set_toxic(self) -> None:
        if self.is_magic():
            raise ValueError(f"cannot mark magic address {self} toxic")
        self.value |= TOXIC_MASK

    def _compare_values(self, that: "Address") -> tuple:
        if self.has_compressed_offset() != that.has_compressed_offset():
            return self.value & ~OFFSET_MASK, that.value & ~OFFSET_MASK
        return self.value, that.value

    def __eq__(self, that: object) -> bool:
        if isinstance(that, int) and not isinstance(that, Address):
            that = Address(that)
        if not isinstance(that, Address):
            return NotImplemented
        a, b = self._compare_values(that)
        return a == b

    def __lt__(self, that: "Address") -> bool:
        if not isinstance(that, Address):
            return NotImplemented
        a, b = self._compare_values(that)
        return a < b

    def __int__(self) -> int:
        return self.value

    def __repr__(self) -> str:
        return f"Address({hex(self.value)})"

    def __str__(self) -> str:
        if self.is_magic():
            try:
                return MagicValue(self.value).name
            except ValueError:
                return hex(self.value)
        gpz = self.get_physical_or_zero()
        parts = ["NIL" if gpz == 0x1000 else hex(gpz)]
        if self.is_toxic():
            parts.append("t")
        if self.is_unaligned_eof():
            parts.append("u")
        if self.is_compressed():
            parts.append("z")
            if self.has_compressed_offset():
                parts.append(f"{self.get_compressed_offset():x}")
        return "".join(parts)


def _magic_for_flags(flags: int) -> Optional[MagicValue]:
    if flags & EXTENT_HOLE:
        return MagicValue.HOLE
    if flags & ~_RECOGNIZED_FLAGS:
        return MagicValue.UNUSABLE
    if flags & _UNUSABLE_FLAGS:
        return MagicValue.UNUSABLE
    if flags & _DELALLOC_FLAGS:
        return MagicValue.DELALLOC
    return None


def _pretty(size: float) -> str:
    for unit in ("", "K", "M", "G", "T", "P"):
        if abs(size) < 1024:
            return f"{size:.4g}{unit}"
        size /= 1024
    return f"{size:.4g}E"


def _name_fd(fd: int) -> str:
    try:
        return os.readlink(f"/proc/self/fd/{fd}")
    except OSError:
        return ""


class BlockData:
    """One block of a file, read and hashed lazily."""

    def __init__(self, fd: int, offset: int, length: int) -> None:
        _check(length > 0, f"block length {length} must be positive")
        _check(length <= BLOCK_SIZE_SUMS, f"block length {length} exceeds {BLOCK_SIZE_SUMS}")
        _check(offset % BLOCK_SIZE_SUMS == 0, f"block offset {hex(offset)} is unaligned")
        self.fd = fd
        self.offset = offset
        self.length = length
        self.addr = Address()
        self._data: Optional[bytes] = None
        self._hash: Optional[int] = None

    @property
    def size(self) -> int:
        return self.length

    @property
    def begin(self) -> int:
        return self.offset

    @property
    def end(self) -> int:
        return self.offset + self.length

    def data(self) -> bytes:
        """Contents of the block, read on first use."""
        if self._data is None:
            blob = os.pread(self.fd, self.length, self.offset)
            if len(blob) != self.length:
                raise RuntimeError(
                    f"short read: {len(blob)} bytes instead of {self.length} at {hex(self.offset)}"
                )
            self._data = blob
        return self._data

    def hash(self) -> int:
        """64-bit hash of the block contents (not padded to a full block)."""
        if self._hash is None:
            digest = hashlib.blake2b(self.data(), digest_size=8).digest()
            self._hash = int.from_bytes(digest, "little")
        return self._hash

    def is_data_zero(self) -> bool:
        return not any(self.data())

    def is_data_equal(self, that: "BlockData") -> bool:
        _check(self.size > 0, "empty block")
        _check(self.size == that.size, f"block sizes differ: {self.size} != {that.size}")
        if self._hash is not None and that._hash is not None and self._hash != that._hash:
            return False
        return self.data() == that.data()

    def __str__(self) -> str:
        text = (
            f"BlockData {{ {_pretty(self.length)} {hex(self.offset)}"
            f" fd = {self.fd} '{_name_fd(self.fd)}'"
        )
        if self.addr != Address(MagicValue.ZERO):
            text += f", address = {self.addr}"
        if self._hash is not None:
            text += f", hash = {self._hash:#x}"
        if self._data:
            text += f", data[{len(self._data)}]"
        return text + " }"