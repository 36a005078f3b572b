import os

import pytest

from beescrawl.address import (
    BLOCK_SIZE_CLONE,
    COMPRESSED_MASK,
    FIEMAP_EXTENT_DATA_INLINE,
    FIEMAP_EXTENT_DELALLOC,
    FIEMAP_EXTENT_ENCODED,
    FIEMAP_EXTENT_LAST,
    FIEMAP_EXTENT_SHARED,
    Address,
    BlockData,
    Extent,
    MagicValue,
)

PHYS = 0x100000


def plain_extent(flags=0):
    return Extent(begin=0, end=16 * BLOCK_SIZE_CLONE, physical=PHYS, flags=flags)


def test_uncompressed_address_at_extent_start():
    extent = plain_extent()
    addr = Address.from_extent(extent, extent.begin)
    assert addr.get_physical_or_zero() == extent.physical
    assert not addr.is_magic()
    assert not addr.is_compressed()


def test_uncompressed_addresses_increase_with_offset():
    extent = plain_extent(FIEMAP_EXTENT_SHARED)
    a = Address.from_extent(extent, 0)
    b = Address.from_extent(extent, BLOCK_SIZE_CLONE)
    assert a < b
    assert b.get_physical_or_zero() - a.get_physical_or_zero() == BLOCK_SIZE_CLONE


@pytest.mark.parametrize(
    "value,name",
    [
        (MagicValue.ZERO, "ZERO"),
        (MagicValue.DELALLOC, "DELALLOC"),
        (MagicValue.HOLE, "HOLE"),
        (MagicValue.UNUSABLE, "UNUSABLE"),
    ],
)
def test_magic_names(value, name):
    addr = Address(value)
    assert addr.is_magic()
    assert str(addr) == name
    assert addr.get_physical_or_zero() == 0


def test_nil_address_string():
    assert str(Address(0x1000)) == "NIL"


def test_hole_flag_gives_hole():
    addr = Address.from_extent(plain_extent(Extent.HOLE), 0)
    assert addr == Address(MagicValue.HOLE)


def test_delalloc_flag_gives_delalloc():
    addr = Address.from_extent(plain_extent(FIEMAP_EXTENT_DELALLOC), 0)
    assert str(addr) == "DELALLOC"


def test_inline_and_unknown_flags_are_unusable():
    assert Address.from_extent(plain_extent(FIEMAP_EXTENT_DATA_INLINE), 0) == Address(MagicValue.UNUSABLE)
    assert Address.from_extent(plain_extent(1 << 20), 0) == Address(MagicValue.UNUSABLE)


def test_compressed_offset_round_trip():
    extent = plain_extent(FIEMAP_EXTENT_ENCODED)
    for blocks in range(4):
        offset = extent.begin + blocks * BLOCK_SIZE_CLONE
        addr = Address.from_extent(extent, offset)
        assert addr.is_compressed()
        assert addr.has_compressed_offset()
        assert addr.get_compressed_offset() == offset - extent.begin
        assert addr.get_physical_or_zero() == extent.physical
        assert "z" in str(addr)


def test_compressed_compares_equal_without_offset():
    with_offset = Address.from_extent(plain_extent(FIEMAP_EXTENT_ENCODED), 0)
    without_offset = Address(PHYS | COMPRESSED_MASK)
    assert not without_offset.has_compressed_offset()
    assert with_offset == without_offset


def test_compressed_offset_out_of_range():
    extent = Extent(begin=0, end=1 << 20, physical=PHYS, flags=FIEMAP_EXTENT_ENCODED)
    with pytest.raises(ValueError):
        Address.from_extent(extent, 1 << 19)


def test_compressed_offset_requires_compression():
    addr = Address.from_extent(plain_extent(), 0)
    with pytest.raises(ValueError):
        addr.get_compressed_offset()


def test_set_toxic():
    addr = Address.from_extent(plain_extent(), 0)
    addr.set_toxic()
    assert addr.is_toxic()
    assert str(addr).endswith("t")
    assert addr.get_physical_or_zero() == PHYS


def test_set_toxic_on_magic_raises():
    with pytest.raises(ValueError):
        Address(MagicValue.HOLE).set_toxic()


def test_unaligned_eof():
    extent = Extent(begin=0, end=2 * BLOCK_SIZE_CLONE + 100, physical=PHYS, flags=FIEMAP_EXTENT_LAST)
    last = Address.from_extent(extent, 2 * BLOCK_SIZE_CLONE)
    first = Address.from_extent(extent, 0)
    assert last.is_unaligned_eof()
    assert "u" in str(last)
    assert not first.is_unaligned_eof()


@pytest.mark.parametrize(
    "extent,offset",
    [
        (Extent(begin=0, end=8192, physical=PHYS + 1), 0),
        (Extent(begin=1, end=8192, physical=PHYS), 0),
        (Extent(begin=0, end=8192, physical=PHYS), 100),
        (Extent(begin=4096, end=4096, physical=PHYS), 4096),
        (Extent(begin=0, end=8192, physical=0), 0),
    ],
)
def test_invalid_extents_raise(extent, offset):
    with pytest.raises(ValueError):
        Address.from_extent(extent, offset)


@pytest.fixture
def block_file(tmp_path):
    path = tmp_path / "blocks"
    payload = b"\0" * BLOCK_SIZE_CLONE + b"A" * BLOCK_SIZE_CLONE + b"A" * BLOCK_SIZE_CLONE + b"B" * 10
    path.write_bytes(payload)
    fd = os.open(path, os.O_RDONLY)
    yield fd
    os.close(fd)


def test_block_data_reads_contents(block_file):
    bbd = BlockData(block_file, BLOCK_SIZE_CLONE, BLOCK_SIZE_CLONE)
    assert bbd.data() == b"A" * BLOCK_SIZE_CLONE
    assert not bbd.is_data_zero()


def test_block_data_zero(block_file):
    assert BlockData(block_file, 0, BLOCK_SIZE_CLONE).is_data_zero()


def test_block_data_equality_and_hash(block_file):
    a = BlockData(block_file, BLOCK_SIZE_CLONE, BLOCK_SIZE_CLONE)
    b = BlockData(block_file, 2 * BLOCK_SIZE_CLONE, BLOCK_SIZE_CLONE)
    z = BlockData(block_file, 0, BLOCK_SIZE_CLONE)
    assert a.is_data_equal(b)
    assert a.hash() == b.hash()
    assert not a.is_data_equal(z)
    assert a.hash() != z.hash()


def test_block_data_size_mismatch(block_file):
    a = BlockData(block_file, 0, BLOCK_SIZE_CLONE)
    b = BlockData(block_file, BLOCK_SIZE_CLONE, 100)
    with pytest.raises(ValueError):
        a.is_data_equal(b)


def test_block_data_short_read(block_file):
    tail = BlockData(block_file, 3 * BLOCK_SIZE_CLONE, BLOCK_SIZE_CLONE)
    with pytest.raises(RuntimeError):
        tail.data()


@pytest.mark.parametrize("offset,length", [(0, 0), (0, BLOCK_SIZE_CLONE + 1), (100, 10)])
def test_block_data_invalid_construction(block_file, offset, length):
    with pytest.raises(ValueError):
        BlockData(block_file, offset, length)


def test_block_data_str(block_file):
    bbd = BlockData(block_file, BLOCK_SIZE_CLONE, BLOCK_SIZE_CLONE)
    bbd.data()
    text = str(bbd)
    assert text.startswith("BlockData {")
    assert text.endswith(" }")
    assert f"data[{BLOCK_SIZE_CLONE}]" in text