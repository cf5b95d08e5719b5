"""
TapVerif Timing Validator
=========================
Reconstructs per-clock timing from a transaction's ClockRecords and checks
it against the configured bounds.

Per clock i (times in ns):
    period     = fall[i] - fall[i-1]
    duty       = (fall[i] - rise[i]) / period
    setup      = rise[i] - drive[i]
    hold       = drive[i+1] - rise[i]     (last clock: fall[i] - rise[i])
    propagation    = tdo_valid[i] - rise[i]
    clock_to_out   = tdo_valid[i] - fall[i]

Jitter is the population std/mean of the trailing `jitter_window` periods,
as a percentage. Every bound is checked; the result is their AND.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
from typing import Optional

import numpy as np
import structlog

from tapverif.config import TimingConfig
from tapverif.transaction import Transaction

logger = structlog.get_logger(system="tapverif.timing")


@dataclass(frozen=True)
class TimingSample:
    periods: np.ndarray
    duty_cycles: np.ndarray        # percent
    setup: np.ndarray
    hold: np.ndarray
    propagation: np.ndarray
    clock_to_out: np.ndarray
    reset_pulse_ns: Optional[float] = None
    jitter_pct: float = 0.0

    @classmethod
    def from_values(cls, periods=(), duty_cycles=(), setup=(), hold=(), propagation=(),
                    clock_to_out=(), reset_pulse_ns=None, jitter_pct=0.0) -> "TimingSample":
        """Build a sample from plain sequences (handy for hand-made measurements)."""
        as_array = lambda v: np.asarray(v, dtype=np.float64)
        return cls(as_array(periods), as_array(duty_cycles), as_array(setup), as_array(hold),
                   as_array(propagation), as_array(clock_to_out), reset_pulse_ns, jitter_pct)


@dataclass(frozen=True)
class TimingViolation:
    parameter: str
    measured: float
    bound: float
    message: str


def _jitter(periods) -> float:
    arr = np.asarray(periods, dtype=np.float64)
    if arr.size < 2:
        return 0.0
    mean = arr.mean()
    if mean <= 0:
        return 0.0
    return float(arr.std() / mean * 100.0)


class TimingValidator:
    def __init__(self, timing: TimingConfig):
        self.timing = timing
        self._window = deque(maxlen=timing.jitter_window)

        # Rolling histories, capped
        n = timing.history_window
        self.periods = deque(maxlen=n)
        self.duty_cycles = deque(maxlen=n)
        self.setup_times = deque(maxlen=n)
        self.hold_times = deque(maxlen=n)
        self.propagation = deque(maxlen=n)
        self.reset_pulses = deque(maxlen=n)
        self.jitter_history = deque(maxlen=n)

        self.validated = 0
        self.failed = 0
        self.by_parameter: Counter = Counter()

    # ---- measurement ----

    def derive_samples(self, txn: Transaction) -> TimingSample:
        clocks = txn.clocks
        rise = np.array([c.rise for c in clocks], dtype=np.float64)
        fall = np.array([c.fall for c in clocks], dtype=np.float64)
        drive = np.array([c.drive_time for c in clocks], dtype=np.float64)
        tdo_valid = np.array([c.tdo_valid for c in clocks], dtype=np.float64)

        periods = np.diff(fall)
        duty = 100.0 * (fall[1:] - rise[1:]) / periods if periods.size else periods
        hold = np.append(drive[1:], fall[-1:]) - rise if rise.size else rise

        pulse = txn.reset.pulse_ns if txn.reset is not None and txn.reset.hard else None
        return TimingSample(
            periods=periods,
            duty_cycles=duty,
            setup=rise - drive,
            hold=hold,
            propagation=tdo_valid - rise,
            clock_to_out=tdo_valid - fall,
            reset_pulse_ns=pulse,
            jitter_pct=self._trailing_jitter(periods),
        )

    def _trailing_jitter(self, periods: np.ndarray) -> float:
        """Jitter over the last `jitter_window` periods, this transaction's included."""
        combined = np.concatenate([np.asarray(self._window, dtype=np.float64), periods])
        return _jitter(combined[-self.timing.jitter_window:])

    def jitter_pct(self) -> float:
        """Jitter of the trailing window of committed periods."""
        return _jitter(self._window)

    # ---- validation ----

    def validate(self, txn: Transaction, samples: Optional[TimingSample] = None):
        """Returns (timing_valid, [TimingViolation, ...])."""
        if samples is None:
            samples = self.derive_samples(txn)
        t = self.timing
        violations: list[TimingViolation] = []

        # 1. Clock period, inclusive bounds
        lo = t.clock_period_ns * (1 - t.jitter_pct / 100.0)
        hi = t.clock_period_ns * (1 + t.jitter_pct / 100.0)
        for p in samples.periods:
            if p < lo:
                violations.append(TimingViolation("period", float(p), lo, f"period {p:.3f}ns below {lo:.3f}ns"))
            elif p > hi:
                violations.append(TimingViolation("period", float(p), hi, f"period {p:.3f}ns above {hi:.3f}ns"))

        # 2. Duty cycle
        d_lo = t.duty_cycle_pct - t.duty_tolerance_pct
        d_hi = t.duty_cycle_pct + t.duty_tolerance_pct
        for d in samples.duty_cycles:
            if not d_lo <= d <= d_hi:
                violations.append(TimingViolation(
                    "duty_cycle", float(d), d_lo if d < d_lo else d_hi,
                    f"duty cycle {d:.2f}% outside [{d_lo:.2f}, {d_hi:.2f}]"))

        # 3. Setup / hold minimums, propagation / clock-to-out maximums
        violations += self._at_least("setup", samples.setup, t.min_setup_ns)
        violations += self._at_least("hold", samples.hold, t.min_hold_ns)
        violations += self._at_most("propagation", samples.propagation, t.max_propagation_ns)
        violations += self._at_most("clock_to_out", samples.clock_to_out, t.max_clock_to_out_ns)

        # 4. Reset pulse (hard resets only)
        if samples.reset_pulse_ns is not None and samples.reset_pulse_ns < t.min_reset_pulse_ns:
            violations.append(TimingViolation(
                "reset_pulse", samples.reset_pulse_ns, t.min_reset_pulse_ns,
                f"reset pulse {samples.reset_pulse_ns:.1f}ns shorter than {t.min_reset_pulse_ns:.1f}ns"))

        # 5. Jitter
        if samples.jitter_pct > t.jitter_pct:
            violations.append(TimingViolation(
                "jitter", samples.jitter_pct, t.jitter_pct,
                f"jitter {samples.jitter_pct:.2f}% exceeds {t.jitter_pct:.2f}%"))

        self._record(txn, samples, violations)
        return not violations, violations

    def summary(self) -> dict:
        def stat(values, fn):
            return float(fn(np.asarray(values))) if values else None

        return {
            "validated": self.validated,
            "failed": self.failed,
            "pass_rate": 100.0 * (self.validated - self.failed) / self.validated if self.validated else 100.0,
            "violations": dict(self.by_parameter),
            "mean_period_ns": stat(self.periods, np.mean),
            "mean_duty_pct": stat(self.duty_cycles, np.mean),
            "min_setup_ns": stat(self.setup_times, np.min),
            "min_hold_ns": stat(self.hold_times, np.min),
            "max_propagation_ns": stat(self.propagation, np.max),
            "min_reset_pulse_ns": stat(self.reset_pulses, np.min),
            "jitter_pct": self.jitter_pct(),
        }

    # ---- helpers ----

    @staticmethod
    def _at_least(name, values, bound):
        return [TimingViolation(name, float(v), bound, f"{name} {v:.3f}ns below minimum {bound:.3f}ns")
                for v in values if v < bound]

    @staticmethod
    def _at_most(name, values, bound):
        return [TimingViolation(name, float(v), bound, f"{name} {v:.3f}ns above maximum {bound:.3f}ns")
                for v in values if v > bound]

    def _record(self, txn, samples, violations):
        self.validated += 1
        if violations:
            self.failed += 1
            self.by_parameter.update(v.parameter for v in violations)
            logger.debug("timing_violation", txn_id=txn.id, count=len(violations),
                         first=violations[0].message)

        self.periods.extend(samples.periods.tolist())
        self.duty_cycles.extend(samples.duty_cycles.tolist())
        self.setup_times.extend(samples.setup.tolist())
        self.hold_times.extend(samples.hold.tolist())
        self.propagation.extend(samples.propagation.tolist())
        if samples.reset_pulse_ns is not None:
            self.reset_pulses.append(samples.reset_pulse_ns)
        self.jitter_history.append(samples.jitter_pct)

        # Known-injected clocks stay out of the jitter window
        if txn.fault is None:
            self._window.extend(samples.periods.tolist())
