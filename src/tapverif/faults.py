"""
TapVerif Error Injector
=======================
Mutates a fraction of transactions before they are driven.

Modes:
- random:     inject with probability rate/100, fault kind chosen uniformly
- systematic: inject on every round(100/rate)-th transaction, cycling
              through the configured fault kinds in order

Injection never raises. A fault kind that cannot apply to a transaction is a
no-op with a warning, and statistics only count successful injections.
"""

from __future__ import annotations

from collections import Counter, deque
from typing import Optional

import numpy as np
import structlog

from tapverif.config import InjectionConfig, ProtocolConfig, TimingConfig
from tapverif.tap import TapState, is_legal_edge
from tapverif.transaction import FaultKind, FaultRecord, OpKind, Transaction, mask

logger = structlog.get_logger(system="tapverif.faults")

INSTRUCTION_POISON = 0xAAAAAAAA
DATA_POISON = 0xDEADBEEF

TIMING_PARAMETERS = ("period", "duty", "drive_delay", "tdo_delay")


def _poison(word: int, width: int) -> int:
    """`word` repeated to cover `width` bits, then masked."""
    value, filled = 0, 0
    while filled < width:
        value |= word << filled
        filled += 32
    return value & mask(width)


class ErrorInjector:
    """
    Keeps its own numpy Generator so a seeded campaign is reproducible.
    """
    def __init__(self, config: InjectionConfig, protocol: ProtocolConfig, timing: TimingConfig):
        self.config = config
        self.protocol = protocol
        self.timing = timing
        self.rng = np.random.default_rng(config.seed)
        self.kinds = list(config.kinds)

        self.seen = 0
        self.total_injected = 0
        self.per_kind: Counter = Counter()
        self.skipped = 0
        self.history: deque[FaultRecord] = deque(maxlen=config.history)
        self._next_kind = 0

    @property
    def interval(self) -> Optional[int]:
        """Systematic mode: inject on every N-th transaction (None when rate is 0)."""
        if self.config.rate <= 0:
            return None
        return max(1, round(100.0 / self.config.rate))

    def maybe_inject(self, txn: Transaction, now: float = 0.0):
        """
        Returns (transaction, FaultRecord or None). When a fault is injected
        the returned transaction is a mutated copy; the input is untouched.
        """
        self.seen += 1
        if not self.config.enabled or not self.kinds:
            return txn, None

        kind = self._select()
        if kind is None:
            return txn, None

        faulty = txn.copy()
        mutate = getattr(self, f"_inject_{kind.value}", None)
        detail = mutate(faulty) if mutate is not None else None
        if detail is None:
            self.skipped += 1
            logger.warning("fault_not_applicable", kind=kind.value, txn_id=txn.id, op=txn.kind.value)
            return txn, None

        record = FaultRecord(kind=kind, transaction_id=txn.id, injected_at=now, detail=detail)
        faulty.fault = record
        self.total_injected += 1
        self.per_kind[kind.value] += 1
        self.history.append(record)
        logger.debug("fault_injected", kind=kind.value, txn_id=txn.id, detail=detail)
        return faulty, record

    def statistics(self) -> dict:
        return {
            "transactions_seen": self.seen,
            "total_injected": self.total_injected,
            "injection_rate_pct": 100.0 * self.total_injected / self.seen if self.seen else 0.0,
            "per_kind": dict(self.per_kind),
            "not_applicable": self.skipped,
            "mode": self.config.mode,
            "configured_rate_pct": self.config.rate,
        }

    # ---- selection ----

    def _select(self) -> Optional[FaultKind]:
        if self.config.mode == "random":
            if self.rng.random() >= self.config.rate / 100.0:
                return None
            return self.kinds[int(self.rng.integers(len(self.kinds)))]

        n = self.interval
        if n is None or self.seen % n != 0:
            return None
        kind = self.kinds[self._next_kind % len(self.kinds)]
        self._next_kind += 1
        return kind

    # ---- mutations ----
    # Each returns a short description, or None when the kind does not apply.

    def _shift_target(self, txn):
        """(field, width) of the register this transaction shifts last."""
        if txn.has_dr_phase and txn.bit_length:
            return "data_in", txn.bit_length
        if txn.has_ir_phase and txn.instruction_width:
            return "instruction", txn.instruction_width
        return None, 0

    def _inject_bit_flip(self, txn):
        field, width = self._shift_target(txn)
        if field is None:
            return None
        bit = int(self.rng.integers(width))
        setattr(txn, field, getattr(txn, field) ^ (1 << bit))
        return f"{field} bit {bit} flipped"

    def _stuck(self, txn, level):
        field, width = self._shift_target(txn)
        if field is None:
            return None
        start = int(self.rng.integers(width))
        txn.stuck_at = (start, level)
        return f"TDI stuck at {level} from bit {start}"

    def _inject_stuck_at_0(self, txn):
        return self._stuck(txn, 0)

    def _inject_stuck_at_1(self, txn):
        return self._stuck(txn, 1)

    def _inject_timing_violation(self, txn):
        t = self.timing
        which = TIMING_PARAMETERS[int(self.rng.integers(len(TIMING_PARAMETERS)))]
        if which == "period":
            scale = float(self.rng.choice([0.5, 1.5]))
            txn.perturbation["period_scale"] = scale
            return f"clock period scaled x{scale}"
        if which == "duty":
            offset = t.duty_tolerance_pct + 15.0
            duty = t.duty_cycle_pct + offset if t.duty_cycle_pct + offset < 95.0 else t.duty_cycle_pct - offset
            duty = min(max(duty, 5.0), 95.0)
            txn.perturbation["duty_pct"] = duty
            return f"duty cycle forced to {duty:.1f}%"
        if which == "drive_delay":
            low_phase = t.clock_period_ns * (1 - t.duty_cycle_pct / 100.0)
            delay = max(low_phase - t.min_setup_ns / 2.0, 0.0)
            txn.perturbation["drive_delay_ns"] = delay
            return f"TMS/TDI drive delayed {delay:.1f}ns"
        delay = t.max_propagation_ns * 2.0
        txn.perturbation["tdo_delay_ns"] = delay
        return f"TDO delayed {delay:.1f}ns"

    def _inject_protocol_violation(self, txn):
        if txn.has_ir_phase and txn.instruction_width is not None:
            txn.instruction_width = self.protocol.max_ir_width + 1
            return f"instruction width set to {txn.instruction_width}"
        if txn.has_dr_phase and txn.bit_length is not None:
            txn.bit_length += 1
            return f"data length stretched to {txn.bit_length}"
        return None

    def _inject_instruction_corruption(self, txn):
        if not txn.has_ir_phase:
            return None
        txn.instruction = INSTRUCTION_POISON & mask(txn.instruction_width)
        return f"instruction corrupted to {txn.instruction:#x}"

    def _inject_data_corruption(self, txn):
        if not txn.has_dr_phase or not txn.bit_length:
            return None
        txn.data_in = _poison(DATA_POISON, txn.bit_length)
        return f"data corrupted to {txn.data_in:#x}"

    def _inject_state_machine_error(self, txn):
        # A state no single clock could reach from where transactions start
        start = self.protocol.tap_end_state
        choices = [s for s in TapState if s != start and not is_legal_edge(start, s)]
        state = choices[int(self.rng.integers(len(choices)))]
        txn.forced_state = state
        return f"TAP state forced to {state.name}"

    def _inject_clock_glitch(self, txn):
        if txn.kind == OpKind.RESET and txn.hard_reset:
            return None
        txn.perturbation["glitch_cycle"] = 1
        return "clock cycle 1 truncated"

    def _inject_reset_anomaly(self, txn):
        if txn.kind == OpKind.RESET:
            if txn.hard_reset:
                txn.reset_pulse_ns = 0.0
                return "TRST pulse collapsed to 0ns"
            txn.reset_cycles = 2
            return "soft reset shortened to 2 cycles"
        txn.perturbation["spurious_reset_cycle"] = 2
        return "spurious reset at cycle 2"
