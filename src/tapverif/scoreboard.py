"""
TapVerif Scoreboard
===================
Matches the observed (driven) transaction stream against an independently
supplied expected stream.

Match predicate:
    same kind, same instruction (when applicable), equal payload
    (expected data_out=None is a wildcard) and
    |observed.end_time - expected.end_time| <= timing_tolerance

Every entry lives in exactly one place: the observed or expected queue, an
unmatched list, or a matched pair. Queues are capacity-bounded: overflow is
signalled on insert and resolved by expire(), which moves the oldest entries
(by end time, then arrival) to the unmatched lists. Nothing is dropped.
"""

from __future__ import annotations

import enum
import itertools
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from tapverif.config import ScoreboardConfig
from tapverif.transaction import Transaction

logger = structlog.get_logger(system="tapverif.scoreboard")


class MatchOutcome(str, enum.Enum):
    MATCH = "match"
    TIMEOUT = "timeout"
    EVICTED = "evicted"
    OVERFLOW = "overflow"


@dataclass(frozen=True)
class ScoreboardEntry:
    transaction: Transaction
    seq: int              # arrival order across both streams
    enqueued_at: float    # scoreboard clock when inserted

    @property
    def end_time(self) -> float:
        t = self.transaction.end_time
        return t if t is not None else self.enqueued_at


@dataclass(frozen=True)
class MatchEvent:
    outcome: MatchOutcome
    observed: Optional[ScoreboardEntry] = None
    expected: Optional[ScoreboardEntry] = None
    detail: str = ""


class Scoreboard:
    def __init__(self, config: ScoreboardConfig):
        self.config = config
        self.observed: list[ScoreboardEntry] = []
        self.expected: list[ScoreboardEntry] = []
        self.unmatched_observed: list[ScoreboardEntry] = []
        self.unmatched_expected: list[ScoreboardEntry] = []
        self.matched: list[tuple[ScoreboardEntry, ScoreboardEntry]] = []
        self.events: deque[MatchEvent] = deque(maxlen=config.event_history)

        self.overflows = 0
        self.timeouts = 0
        self.evictions = 0
        self._seq = itertools.count()
        self._now = 0.0
        self._overflow_listeners: list[Callable[[str, int], None]] = []
        self._listeners: list[Callable[[MatchEvent], None]] = []

    # ---- subscriptions ----

    def on_overflow(self, callback: Callable[[str, int], None]):
        """callback(queue_name, queue_length) on every insert past capacity."""
        self._overflow_listeners.append(callback)

    def on_event(self, callback: Callable[[MatchEvent], None]):
        self._listeners.append(callback)

    # ---- streams ----

    def observe(self, txn: Transaction) -> Optional[MatchEvent]:
        return self._insert(txn, self.observed, "observed")

    def expect(self, txn: Transaction) -> Optional[MatchEvent]:
        return self._insert(txn, self.expected, "expected")

    def expire(self, now: Optional[float] = None) -> list[MatchEvent]:
        """
        Periodic cleanup: time out stale entries and evict over-capacity
        queues, oldest first. Returns the events produced.
        """
        if now is not None:
            self._now = max(self._now, now)
        produced = []
        for queue, unmatched, name in ((self.observed, self.unmatched_observed, "observed"),
                                       (self.expected, self.unmatched_expected, "expected")):
            # 1. Timeouts
            limit = self._now - self.config.transaction_timeout_ns
            stale = [e for e in queue if e.end_time < limit]
            for entry in stale:
                queue.remove(entry)
                unmatched.append(entry)
                self.timeouts += 1
                produced.append(self._event(MatchOutcome.TIMEOUT, name, entry,
                                            f"no match within {self.config.transaction_timeout_ns:.0f}ns"))

            # 2. Capacity
            excess = len(queue) - self.config.capacity
            if excess > 0:
                oldest = sorted(queue, key=lambda e: (e.end_time, e.seq))[:excess]
                for entry in oldest:
                    queue.remove(entry)
                    unmatched.append(entry)
                    self.evictions += 1
                    produced.append(self._event(MatchOutcome.EVICTED, name, entry, "evicted over capacity"))
        if produced:
            logger.info("scoreboard_expired", timeouts=self.timeouts, evictions=self.evictions)
        return produced

    # ---- reporting ----

    def summary(self) -> dict:
        matched = len(self.matched)
        unmatched = len(self.unmatched_observed) + len(self.unmatched_expected)
        decided = matched + unmatched
        return {
            "matched": matched,
            "pending_observed": len(self.observed),
            "pending_expected": len(self.expected),
            "unmatched_observed": len(self.unmatched_observed),
            "unmatched_expected": len(self.unmatched_expected),
            "timeouts": self.timeouts,
            "evictions": self.evictions,
            "overflows": self.overflows,
            "match_rate": 100.0 * matched / decided if decided else 100.0,
        }

    def is_matched(self, txn: Transaction) -> bool:
        return any(o.transaction is txn for o, _ in self.matched)

    # ---- matcher ----

    def matches(self, observed: Transaction, expected: Transaction) -> bool:
        if observed.kind != expected.kind:
            return False
        if expected.instruction is not None and observed.instruction != expected.instruction:
            return False
        if not observed.payload.matches(expected.payload):
            return False
        if observed.end_time is None or expected.end_time is None:
            return False
        return abs(observed.end_time - expected.end_time) <= self.config.timing_tolerance_ns

    def _insert(self, txn, queue, name) -> Optional[MatchEvent]:
        if txn.end_time is not None:
            self._now = max(self._now, txn.end_time)
        entry = ScoreboardEntry(transaction=txn, seq=next(self._seq), enqueued_at=self._now)
        queue.append(entry)

        if len(queue) > self.config.capacity:
            self.overflows += 1
            logger.warning("scoreboard_overflow", queue=name, length=len(queue), capacity=self.config.capacity)
            for callback in self._overflow_listeners:
                callback(name, len(queue))
            self._notify(MatchEvent(MatchOutcome.OVERFLOW, detail=f"{name} queue at {len(queue)}"))

        return self._match(entry, name)

    def _match(self, entry, name) -> Optional[MatchEvent]:
        if name == "observed":
            candidates, own = self.expected, self.observed
            pair = lambda other: (entry, other)
        else:
            candidates, own = self.observed, self.expected
            pair = lambda other: (other, entry)

        # Oldest candidate first so equal entries pair up in arrival order
        for other in candidates:
            obs, exp = pair(other)
            if self.matches(obs.transaction, exp.transaction):
                candidates.remove(other)
                own.remove(entry)
                self.matched.append((obs, exp))
                event = MatchEvent(MatchOutcome.MATCH, observed=obs, expected=exp)
                self._notify(event)
                return event
        return None

    def _event(self, outcome, name, entry, detail) -> MatchEvent:
        if name == "observed":
            event = MatchEvent(outcome, observed=entry, detail=detail)
        else:
            event = MatchEvent(outcome, expected=entry, detail=detail)
        self._notify(event)
        return event

    def _notify(self, event: MatchEvent):
        self.events.append(event)
        for callback in self._listeners:
            callback(event)
