import re
import time

import pytest

from beescrawl.crawlstate import (
    CrawlState,
    dump_states,
    format_time,
    parse_state_line,
    parse_states,
)


def test_round_trip():
    states = [
        CrawlState(root=5, objectid=257, offset=0, min_transid=10, max_transid=20, started=1600000000),
        CrawlState(root=256, objectid=1000, offset=4096, min_transid=3, max_transid=30, started=1600000100),
    ]
    assert parse_states(dump_states(states)) == states


def test_dump_line_format():
    state = CrawlState(root=5, objectid=257, offset=0, min_transid=10, max_transid=20, started=0)
    text = dump_states([state])
    assert text.startswith(
        "root 5 objectid 257 offset 0 min_transid 10 max_transid 20 started 0 start_ts "
    )
    assert text.endswith("\n")


def test_dump_skips_states_without_max_transid():
    assert dump_states([CrawlState(root=5, min_transid=3, max_transid=0)]) == ""


def test_legacy_keys():
    state = parse_state_line("root 5 objectid 1 offset 2 gen_current 7 gen_next 9")
    assert (state.min_transid, state.max_transid) == (7, 9)


def test_hex_values():
    state = parse_state_line("root 0x100 objectid 1 offset 0 min_transid 1 max_transid 2")
    assert state.root == 256


def test_timestamp_word_is_tolerated():
    state = parse_state_line(
        "root 5 objectid 1 offset 0 min_transid 1 max_transid 2 started 77 start_ts 2020-09-13-12-26-40"
    )
    assert state.started == 77
    assert state.root == 5


def test_odd_word_count_rejected():
    with pytest.raises(ValueError):
        parse_state_line("root 5 objectid")


def test_duplicate_key_rejected():
    with pytest.raises(ValueError):
        parse_state_line("root 5 root 6 objectid 1 offset 0 min_transid 1 max_transid 2")


def test_missing_key_rejected():
    with pytest.raises(ValueError):
        parse_state_line("objectid 1 offset 0 min_transid 1 max_transid 2")


def test_bad_number_rejected():
    with pytest.raises(ValueError):
        parse_state_line("root zz objectid 1 offset 0 min_transid 1 max_transid 2")


def test_bad_transids_reset():
    state = parse_state_line(
        "root 5 objectid 1 offset 0 min_transid 0xffffffffffffffff max_transid 0xffffffffffffffff"
    )
    assert state.min_transid == 0
    assert state.max_transid == 0


def test_bad_max_transid_reset_to_min():
    state = parse_state_line("root 5 objectid 1 offset 0 min_transid 12 max_transid 0xffffffffffffffff")
    assert state.max_transid == 12


def test_blank_lines_ignored():
    text = "\nroot 5 objectid 1 offset 0 min_transid 1 max_transid 2\n\n"
    assert [s.root for s in parse_states(text)] == [5]


def test_ordering_by_transid_first():
    a = CrawlState(root=9, objectid=9, min_transid=1, max_transid=9)
    b = CrawlState(root=1, objectid=1, min_transid=2, max_transid=0)
    c = CrawlState(root=1, objectid=1, min_transid=1, max_transid=9)
    assert sorted([b, a, c]) == [c, a, b]
    assert a.sort_key() == (1, 9, 9, 0, 9)


def test_default_started_is_now():
    assert abs(CrawlState().started - time.time()) < 5


def test_format_time_round_trip():
    t = 1600000000
    text = format_time(t)
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2}", text)
    assert int(time.mktime(time.strptime(text, "%Y-%m-%d-%H-%M-%S"))) == t


def test_str_mentions_position():
    state = CrawlState(root=5, objectid=257, offset=4096, min_transid=10, max_transid=20)
    text = str(state)
    assert "5:257" in text
    assert f"offset {hex(4096)}" in text
    assert "transid 10..20" in text