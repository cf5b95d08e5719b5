"""
TapVerif Simulated Target
=========================
A behavioural IEEE 1149.1 device behind the SignalInterface contract.

The device runs its own TAP FSM and register file (IR, BYPASS, IDCODE,
boundary, debug and scratch registers) and keeps a nanosecond time base:

    |<------- low ------->|<------ high ------>|
    drive               rise                  fall -> TDO valid after tdo_delay

TMS/TDI are sampled on the rising edge; UPDATE and TDO changes happen on
the falling edge, as the standard requires.
"""

from __future__ import annotations

import contextlib
from typing import Iterator, Optional

import numpy as np
import structlog

from tapverif.config import ProtocolConfig, TargetConfig, TimingConfig
from tapverif.signals.base import ClockEdge, SignalInterface
from tapverif.tap import IR_CAPTURE_PATTERN, TAPController, TapState
from tapverif.transaction import mask

logger = structlog.get_logger(system="tapverif.sim")

S = TapState

PERTURBATIONS = frozenset({
    "period_scale", "duty_pct", "drive_delay_ns", "tdo_delay_ns",
    "glitch_cycle", "spurious_reset_cycle",
})


class SimulatedTarget(SignalInterface):
    def __init__(self, protocol: ProtocolConfig, timing: TimingConfig,
                 target: Optional[TargetConfig] = None, pins: int = 0):
        target = target or TargetConfig()
        self.protocol = protocol

        # Clock and pin timing
        self.period_ns = timing.clock_period_ns
        self.duty_pct = timing.duty_cycle_pct
        self.tdo_delay_ns = target.tdo_delay_ns
        self.drive_delay_ns = target.drive_delay_ns
        self.clock_jitter_ns = target.clock_jitter_ns
        self._rng = np.random.default_rng(target.seed)

        self._now = 0.0
        self._drive_time = 0.0
        self._perturb: dict = {}
        self._perturb_cycle = 0
        self.cycles = 0

        # Lines
        self.tms = 1
        self.tdi = 0
        self.tdo = 0
        self.trst_n = 1
        self._sampled = (1, 0)   # TMS/TDI seen at the previous rising edge

        # Device
        self.tap = TAPController()
        self.ir_width = protocol.ir_width
        self.ir = 0
        self.ir_shift = 0
        self.dr_shift = 0
        self.dr_len = 1
        self.pins = pins & mask(protocol.boundary_length)   # boundary inputs seen by SAMPLE
        self.boundary = 0                                   # boundary update register
        self.scratch: dict[str, int] = {}
        self.memory: dict[int, int] = {}                    # debug-port address space
        self._debug_read = 0
        self._reset_logic()

    @property
    def name(self) -> str:
        return "sim"

    # ---- SignalInterface ----

    def set_mode_select(self, bit: int) -> None:
        self.tms = int(bit) & 1
        self._touch()

    def set_data_in(self, bit: int) -> None:
        self.tdi = int(bit) & 1
        self._touch()

    def get_data_out(self) -> int:
        return self.tdo

    def assert_reset(self) -> None:
        # TRST is asynchronous: the FSM drops to Test-Logic-Reset immediately
        self.trst_n = 0
        self.tap.force(S.TEST_LOGIC_RESET)
        self._reset_logic()

    def deassert_reset(self) -> None:
        self.trst_n = 1

    def now(self) -> float:
        return self._now

    def advance_clock(self) -> ClockEdge:
        period = self.period_ns * self._perturb.get("period_scale", 1.0)
        if self.clock_jitter_ns:
            period += float(self._rng.normal(0.0, self.clock_jitter_ns))
        if self._perturb.get("glitch_cycle") == self._perturb_cycle:
            period *= 0.1
        duty = self._perturb.get("duty_pct", self.duty_pct) / 100.0

        start = self._now
        rise = start + period * (1.0 - duty)
        fall = rise + period * duty
        tdo_valid = fall + self._perturb.get("tdo_delay_ns", self.tdo_delay_ns)
        drive = self._drive_time

        # A change that lands after the rising edge misses it
        if drive <= rise:
            tms, tdi = self.tms, self.tdi
        else:
            tms, tdi = self._sampled
        self._sampled = (tms, tdi)

        if self.trst_n:
            self._on_rise(tms, tdi)
            if self._perturb.get("spurious_reset_cycle") == self._perturb_cycle:
                self.tap.force(S.TEST_LOGIC_RESET)
            self._on_fall()

        self._now = fall
        self.cycles += 1
        self._perturb_cycle += 1
        return ClockEdge(drive=drive, rise=rise, fall=fall, tdo_valid=tdo_valid)

    @contextlib.contextmanager
    def perturbed(self, **params) -> Iterator[None]:
        unknown = set(params) - PERTURBATIONS
        if unknown:
            logger.warning("perturbation_unknown", params=sorted(unknown))
        saved, saved_cycle = self._perturb, self._perturb_cycle
        self._perturb = {k: v for k, v in params.items() if k in PERTURBATIONS}
        self._perturb_cycle = 0
        try:
            yield
        finally:
            self._perturb, self._perturb_cycle = saved, saved_cycle

    # ---- device internals ----

    def _touch(self):
        delay = self._perturb.get("drive_delay_ns", self.drive_delay_ns)
        self._drive_time = self._now + delay

    def _reset_logic(self):
        self.ir = self._code("IDCODE", self._code("BYPASS", mask(self.ir_width)))
        self.tdo = 0

    def _code(self, name, default=None):
        spec = self.protocol.instructions.get(name)
        return spec.code if spec is not None else default

    @property
    def instruction_name(self) -> Optional[str]:
        return self.protocol.name_of(self.ir)

    @property
    def state(self) -> TapState:
        return self.tap.current_state()

    def _selected(self):
        """(register kind, length) selected by the current instruction."""
        name = self.instruction_name
        if name is None:
            # Unused opcodes select BYPASS
            return "bypass", 1
        spec = self.protocol.instructions[name]
        return spec.register, self.protocol.register_length(name)

    def _capture_dr(self):
        kind, length = self._selected()
        self.dr_len = length
        if kind == "bypass":
            value = 0
        elif kind == "idcode":
            value = self.protocol.idcode
        elif kind == "boundary":
            value = self.pins
        elif kind == "debug":
            value = (self._debug_read & mask(self.protocol.debug_data_bits)) << 1
        else:
            value = self.scratch.get(self.instruction_name, 0)
        self.dr_shift = value & mask(length)

    def _update_dr(self):
        kind, _ = self._selected()
        if kind == "boundary":
            self.boundary = self.dr_shift
        elif kind == "debug":
            write = self.dr_shift & 1
            data = (self.dr_shift >> 1) & mask(self.protocol.debug_data_bits)
            address = self.dr_shift >> (1 + self.protocol.debug_data_bits)
            if write:
                self.memory[address] = data
            else:
                self._debug_read = self.memory.get(address, 0)
        elif kind in ("scratch", "user"):
            self.scratch[self.instruction_name] = self.dr_shift

    def _on_rise(self, tms, tdi):
        state = self.tap.current_state()
        if state == S.CAPTURE_IR:
            self.ir_shift = IR_CAPTURE_PATTERN
        elif state == S.SHIFT_IR:
            self.ir_shift = (self.ir_shift >> 1) | (tdi << (self.ir_width - 1))
        elif state == S.CAPTURE_DR:
            self._capture_dr()
        elif state == S.SHIFT_DR:
            self.dr_shift = (self.dr_shift >> 1) | (tdi << (self.dr_len - 1))
        self.tap.step(tms)

    def _on_fall(self):
        state = self.tap.current_state()
        if state == S.UPDATE_IR:
            self.ir = self.ir_shift
        elif state == S.UPDATE_DR:
            self._update_dr()
        elif state == S.TEST_LOGIC_RESET:
            self._reset_logic()

        if state in (S.SHIFT_IR, S.EXIT1_IR):
            self.tdo = self.ir_shift & 1
        elif state in (S.SHIFT_DR, S.EXIT1_DR):
            self.tdo = self.dr_shift & 1
