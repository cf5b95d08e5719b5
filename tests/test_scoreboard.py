"""
Scoreboard Verification
=======================
"""

import pytest

from tapverif.config import ScoreboardConfig
from tapverif.scoreboard import MatchOutcome, Scoreboard
from tapverif.transaction import OpKind


@pytest.fixture
def scan(make_txn):
    def make(end_time, data_out=0x149511C3, **fields):
        values = dict(instruction=1, instruction_width=4, data_in=0, bit_length=32)
        values.update(fields)
        return make_txn(OpKind.DATA_SCAN, data_out=data_out, end_time=end_time, **values)
    return make


def test_pair_matches_exactly_once(scan):
    sb = Scoreboard(ScoreboardConfig())
    obs = scan(1000.0)
    assert sb.observe(obs) is None

    event = sb.expect(scan(1100.0))
    assert event.outcome == MatchOutcome.MATCH
    assert event.observed.transaction is obs
    assert sb.is_matched(obs)

    # Nothing left to pair with
    assert sb.expect(scan(1100.0)) is None
    summary = sb.summary()
    assert summary["matched"] == 1
    assert summary["pending_expected"] == 1 and summary["pending_observed"] == 0


def test_time_tolerance_is_inclusive(scan):
    sb = Scoreboard(ScoreboardConfig(timing_tolerance_ns=200.0))
    assert sb.matches(scan(1000.0), scan(1200.0))
    assert sb.matches(scan(1200.0), scan(1000.0))
    assert not sb.matches(scan(1000.0), scan(1200.5))


def test_expected_none_is_a_wildcard(scan):
    sb = Scoreboard(ScoreboardConfig())
    assert sb.matches(scan(500.0, data_out=0x1234), scan(500.0, data_out=None))
    assert not sb.matches(scan(500.0, data_out=0x1234), scan(500.0, data_out=0x1235))


def test_request_fields_must_agree(scan):
    sb = Scoreboard(ScoreboardConfig())
    assert not sb.matches(scan(500.0), scan(500.0, instruction=0xF))
    assert not sb.matches(scan(500.0), scan(500.0, bit_length=16))
    assert not sb.matches(scan(500.0), scan(500.0, data_in=1))


def test_mismatch_stays_pending(scan):
    sb = Scoreboard(ScoreboardConfig())
    sb.observe(scan(100.0, data_out=1))
    assert sb.expect(scan(100.0, data_out=2)) is None
    assert len(sb.observed) == 1 and len(sb.expected) == 1
    assert sb.summary()["matched"] == 0


def test_expire_times_out_stale_entries(scan):
    sb = Scoreboard(ScoreboardConfig(transaction_timeout_ns=1000.0))
    sb.observe(scan(0.0))
    sb.expect(scan(1500.0, data_out=7))

    events = sb.expire(now=2000.0)
    assert [e.outcome for e in events] == [MatchOutcome.TIMEOUT]
    assert len(sb.unmatched_observed) == 1 and not sb.observed
    # The expected entry is still young
    assert len(sb.expected) == 1
    assert sb.summary()["timeouts"] == 1


def test_overflow_is_signalled_then_evicted(scan):
    sb = Scoreboard(ScoreboardConfig(capacity=2))
    seen = []
    sb.on_overflow(lambda name, length: seen.append((name, length)))

    txns = [scan(t, data_out=i) for i, t in enumerate((300.0, 100.0, 200.0))]
    for txn in txns:
        sb.observe(txn)
    assert seen == [("observed", 3)]
    assert sb.summary()["overflows"] == 1
    # Nothing is dropped on insert
    assert len(sb.observed) == 3

    events = sb.expire()
    assert [e.outcome for e in events] == [MatchOutcome.EVICTED]
    assert events[0].observed.transaction is txns[1]    # earliest end time
    assert [e.transaction for e in sb.unmatched_observed] == [txns[1]]
    assert len(sb.observed) == 2


def test_eviction_ties_break_by_arrival(scan):
    sb = Scoreboard(ScoreboardConfig(capacity=1))
    first, second = scan(100.0, data_out=1), scan(100.0, data_out=2)
    sb.expect(first)
    sb.expect(second)
    sb.expire()
    assert [e.transaction for e in sb.unmatched_expected] == [first]
    assert [e.transaction for e in sb.expected] == [second]


def test_events_reach_listeners(scan):
    sb = Scoreboard(ScoreboardConfig())
    outcomes = []
    sb.on_event(lambda event: outcomes.append(event.outcome))
    sb.observe(scan(10.0))
    sb.expect(scan(10.0))
    assert outcomes == [MatchOutcome.MATCH]
    assert sb.summary()["match_rate"] == pytest.approx(100.0)


def test_event_log_is_bounded(scan):
    sb = Scoreboard(ScoreboardConfig(event_history=3))
    seen = []
    sb.on_event(seen.append)
    for i in range(5):
        sb.observe(scan(100.0 * i))
        sb.expect(scan(100.0 * i))

    assert len(seen) == 5
    assert len(sb.events) == 3
    assert list(sb.events) == seen[-3:]
    assert sb.summary()["matched"] == 5
