# beescrawl

Building blocks for the subvolume crawler of a btrfs deduplication agent.
The package has four modules.

## `beescrawl.crawlstate`

`CrawlState` is a dataclass that records where the crawl of one subvolume
stands. Its fields are `root`, `objectid`, `offset`, `min_transid`,
`max_transid` and `started`, a Unix timestamp that defaults to the current
time. States sort by `sort_key()`, which is `(min_transid, max_transid,
objectid, offset, root)`.

The text format has one state per line, written as `key value` pairs:

- `dump_states(states)` renders states as text. States whose
  `max_transid` is zero are left out. Each line ends with a `start_ts`
  field, which is `started` formatted by `format_time`.
- `parse_state_line(line)` reads one line and `parse_states(text)` reads
  every non-blank line. A number may be decimal, hexadecimal with a `0x`
  prefix, or octal with a leading `0`. The parser also accepts the older
  keys `gen_current` and `gen_next` in place of `min_transid` and
  `max_transid`. A transid that is stored as 2**64-1 is reset, and a
  warning is logged. A line whose word count is odd, that repeats a key,
  or that lacks a required key raises `ValueError`.
- `format_time(t)` formats a timestamp in local time, for example
  `2024-01-31-23-59-59`.

```python
from beescrawl.crawlstate import CrawlState, dump_states, parse_states

text = dump_states([CrawlState(root=5, objectid=100, min_transid=10,
                               max_transid=20, started=1700000000)])
state = parse_states(text)[0]
print(state.root, state.min_transid, state.max_transid)   # 5 10 20
```

## `beescrawl.scanmodes`

Scanners choose which subvolume crawl runs the next batch of work.

- `ScanMode` lists the available modes: `LOCKSTEP`, `INDEPENDENT`,
  `SEQUENTIAL` and `RECENT`.
- `make_scanner(mode, crawl_batch)` takes a `ScanMode` or its number and
  builds the matching scanner. An unknown mode raises `ValueError`.
- `crawl_batch` is a callable that takes one crawl and returns `True` if
  it queued work for that crawl.
- `Scanner.next_transid(crawl_map)` rebuilds the schedule from a mapping
  of root id to crawl.
- `Scanner.scan()` runs one batch. It returns `False` when no crawl has
  any work left.

The scanner calls methods on the crawl objects you pass in. Each crawl
must provide `peek_front()`, which returns a range with `fid()` and
`begin`, or `None`. It must also provide `get_state_end()`, which returns
a `CrawlState`; only `RecentScanner` uses it.

The four scanners order the work as follows:

- `LockstepScanner` orders work by inode, then offset, then root.
- `IndependentScanner` goes round-robin over the crawls.
- `SequentialScanner` finishes one root before it moves to the next.
- `RecentScanner` takes the highest `min_transid` first.

## `beescrawl.address`

- `Extent` describes a logical file range: its physical location, its
  FIEMAP flags and the offset of the range within the extent.
- `Address` packs a physical block address together with flag bits:
  toxic, compressed (with a block offset inside the compressed extent)
  and unaligned EOF. It can also hold one of the `MagicValue` entries:
  `ZERO`, `DELALLOC`, `HOLE` or `UNUSABLE`.
- `Address.from_extent(extent, offset)` computes the address of one
  block.
- `BlockData(fd, offset, length)` reads one block with `os.pread` on
  first use. It provides `data()`, `hash()` (a 64-bit BLAKE2b value),
  `is_data_zero()` and `is_data_equal()`.

## `beescrawl.types`

- `FileId(root, ino)` names a file by subvolume id and inode number. It
  orders by inode first. `FileId.from_fd` asks btrfs for the subvolume id
  through an ioctl, so it works on Linux btrfs only.
- `FileRange` is a byte range of a file, known by `FileId`, by open fd, or
  by both. It provides growth, overlap and same-file checks, and
  `to_block_data()`.
- `RangePair(src, dst)` checks that two ranges do not overlap and have the
  same size. When both ranges have open fds, it also checks that their
  contents match block by block. A failed check raises `ValueError`.

## What this package does not do

This package only provides the pieces listed above:

- There is no crawl driver that walks a subvolume's extent items.
- There is no registry that keeps one crawl per root, and nothing saves
  state files to disk.
- There are no worker threads, tracing or daemon.
- There is no command-line program.

## Install

    pip install .

To run the tests:

    pip install .[test]
    pytest