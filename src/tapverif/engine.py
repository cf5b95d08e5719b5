"""
TapVerif Transaction Engine
===========================
Turns abstract operations into TMS/TDI sequences on a SignalInterface.

Dispatch is table driven:
- _PLANNERS maps each Operation type to a function building the pending
  Transaction (instruction codes, widths, data words).
- PHASES maps each OpKind to the phase functions (IR shift, DR shift, reset)
  that drive it. Phase functions only talk to a _Wire, which clocks the
  interface and the engine's TAP model in lock step, so the same functions
  also run "dry" to predict cycle counts.

Per-transaction problems are reported through Transaction.status; the only
exception raised to callers is UnsupportedOperation.
"""

from __future__ import annotations

import math
import threading
from typing import Callable, Optional

import structlog

from tapverif.config import ProtocolConfig
from tapverif.signals.base import SignalInterface
from tapverif.tap import TAPController, TapState, route
from tapverif.transaction import (
    BoundaryScan, ClockRecord, ComplianceProbe, DataScan, DebugAccess,
    InstructionLoad, OpKind, Operation, Reset, ResetRecord, ScanMode,
    Transaction, TransactionStatus, bits_to_int, int_to_bits, mask,
)

logger = structlog.get_logger(system="tapverif.engine")

S = TapState


class UnsupportedOperation(TypeError):
    """The engine has no driver for this kind of operation."""


class _PhaseError(Exception):
    """Aborts the current transaction with status ERROR."""


# ─── Wire: one clock at a time ─────────────────────────────────────


class _Wire:
    """
    Clocks the signal interface and the TAP model together and records the
    path and per-clock timing into the transaction. With interface=None it
    only counts cycles.
    """
    def __init__(self, engine: "TransactionEngine", txn: Transaction,
                 controller: TAPController, interface: Optional[SignalInterface]):
        self.engine = engine
        self.txn = txn
        self.controller = controller
        self.interface = interface
        self.cycles = 0
        self.active_instruction = engine.active_instruction

    @property
    def state(self) -> TapState:
        return self.controller.current_state()

    def clock(self, tms: int, tdi: int = 0, shift: bool = False) -> int:
        state = self.controller.step(tms)
        self.cycles += 1
        if self.interface is None:
            return 0

        itf = self.interface
        itf.set_mode_select(tms)
        itf.set_data_in(tdi)
        tdo = itf.get_data_out()
        edge = itf.advance_clock()
        self.txn.path.append(state)
        self.txn.clocks.append(ClockRecord(
            index=len(self.txn.clocks), tms=tms, tdi=tdi, tdo=tdo,
            drive_time=edge.drive, rise=edge.rise, fall=edge.fall,
            tdo_valid=edge.tdo_valid, state=state, shift=shift,
        ))
        return tdo

    def goto(self, dst: TapState, via_pause: bool = False):
        for tms in route(self.state, dst, via_pause=via_pause):
            self.clock(tms)

    def shift(self, value: int, width: int, stuck=None) -> int:
        """Shift `width` bits LSB first, leaving through EXIT1 on the last bit."""
        out = []
        for i, bit in enumerate(int_to_bits(value, width)):
            if stuck is not None and i >= stuck[0]:
                bit = stuck[1]
            out.append(self.clock(1 if i == width - 1 else 0, bit, shift=True))
        return bits_to_int(out)

    def sample_tdo(self) -> Optional[int]:
        return None if self.interface is None else self.interface.get_data_out()

    def force(self, state: TapState):
        self.controller.force(state)
        if self.interface is not None:
            self.txn.path.append(state)

    def hard_reset(self, cycles: int):
        itf = self.interface
        if itf is not None:
            t0 = itf.now()
            itf.assert_reset()
        # TRST is asynchronous; the path restarts at Test-Logic-Reset
        self.controller.force(S.TEST_LOGIC_RESET)
        if itf is not None:
            self.txn.path[:] = [S.TEST_LOGIC_RESET]
        for _ in range(cycles):
            self.clock(1)
        if itf is not None:
            itf.deassert_reset()
            self.txn.reset = ResetRecord(True, cycles, t0, itf.now())


# ─── Phases ────────────────────────────────────────────────────────


def _ir_phase(wire: _Wire, txn: Transaction):
    stuck = None if txn.has_dr_phase else txn.stuck_at
    wire.goto(S.CAPTURE_IR)
    wire.goto(S.SHIFT_IR)
    captured = wire.shift(txn.instruction, txn.instruction_width, stuck=stuck)
    txn.ir_captured = captured
    if txn.kind == OpKind.INSTRUCTION_LOAD:
        txn.data_out = captured
        txn.tdo_final = wire.sample_tdo()
    wire.goto(S.UPDATE_IR, via_pause=txn.via_pause and txn.kind == OpKind.INSTRUCTION_LOAD)
    wire.active_instruction = txn.instruction


def _dr_phase(wire: _Wire, txn: Transaction):
    if txn.scan_mode == ScanMode.CAPTURE_ONLY:
        wire.goto(S.CAPTURE_DR)
        wire.goto(S.UPDATE_DR)
        return

    if txn.scan_mode == ScanMode.SHIFT_ONLY:
        if wire.state != S.PAUSE_DR:
            raise _PhaseError(f"shift-only scan needs a scan parked in PAUSE_DR (state is {wire.state.name})")
    else:
        wire.goto(S.CAPTURE_DR)
    wire.goto(S.SHIFT_DR)

    txn.data_out = wire.shift(txn.data_in, txn.bit_length, stuck=txn.stuck_at)
    txn.tdo_final = wire.sample_tdo()
    if txn.park_in_pause:
        wire.goto(S.PAUSE_DR)
    else:
        wire.goto(S.UPDATE_DR, via_pause=txn.via_pause)


def _reset_phase(wire: _Wire, txn: Transaction):
    if txn.hard_reset and wire.engine.interface.has_reset_line:
        cycles = math.ceil(txn.reset_pulse_ns / wire.engine.clock_period_ns)
        wire.hard_reset(cycles)
    else:
        if txn.hard_reset and wire.interface is not None:
            # No TRST wired: only TMS clocking can bring the device to reset
            logger.warning("trst_unavailable", txn_id=txn.id, interface=wire.interface.name,
                           cycles=txn.reset_cycles)
        t0 = wire.interface.now() if wire.interface is not None else 0.0
        for _ in range(txn.reset_cycles):
            wire.clock(1)
        if wire.interface is not None:
            txn.reset = ResetRecord(False, txn.reset_cycles, t0, wire.interface.now())
        if wire.state != S.TEST_LOGIC_RESET:
            # The model now assumes the device reached reset
            wire.force(S.TEST_LOGIC_RESET)
    wire.active_instruction = wire.engine.reset_instruction


PHASES: dict[OpKind, tuple[Callable[[_Wire, Transaction], None], ...]] = {
    OpKind.INSTRUCTION_LOAD: (_ir_phase,),
    OpKind.DATA_SCAN:        (_dr_phase,),
    OpKind.RESET:            (_reset_phase,),
    OpKind.DEBUG:            (_ir_phase, _dr_phase),
    OpKind.BOUNDARY_SCAN:    (_ir_phase, _dr_phase),
    OpKind.COMPLIANCE_PROBE: (_ir_phase, _dr_phase),
}


# ─── Planners ──────────────────────────────────────────────────────


def _plan_instruction_load(engine, op: InstructionLoad) -> Transaction:
    txn = Transaction(kind=op.kind, op=op)
    txn.instruction = op.code
    txn.instruction_width = op.width
    txn.instruction_name = op.name or engine.protocol.name_of(op.code)
    txn.via_pause = op.via_pause
    return txn


def _plan_data_scan(engine, op: DataScan) -> Transaction:
    txn = Transaction(kind=op.kind, op=op)
    txn.instruction = engine.active_instruction
    txn.instruction_width = engine.protocol.ir_width
    txn.instruction_name = engine.protocol.name_of(engine.active_instruction)
    txn.data_in = op.data & mask(op.bit_length)
    txn.bit_length = op.bit_length
    txn.scan_mode = op.mode
    txn.via_pause = op.via_pause
    txn.park_in_pause = op.park_in_pause
    return txn


def _plan_reset(engine, op: Reset) -> Transaction:
    txn = Transaction(kind=op.kind, op=op)
    txn.hard_reset = op.hard
    txn.reset_cycles = op.cycles if op.cycles is not None else engine.protocol.soft_reset_cycles
    txn.reset_pulse_ns = op.pulse_ns if op.pulse_ns is not None else engine.protocol.reset_pulse_ns
    return txn


def _with_instruction(engine, op, name: str, data: int, length: int) -> Transaction:
    protocol = engine.protocol
    txn = Transaction(kind=op.kind, op=op)
    txn.instruction = protocol.code_of(name)
    txn.instruction_width = protocol.ir_width
    txn.instruction_name = name.upper()
    txn.data_in = data & mask(length)
    txn.bit_length = length
    return txn


def _plan_debug(engine, op: DebugAccess) -> Transaction:
    p = engine.protocol
    word = (op.address & mask(p.debug_address_bits)) << (p.debug_data_bits + 1)
    word |= (op.data & mask(p.debug_data_bits)) << 1
    word |= 1 if op.write else 0
    return _with_instruction(engine, op, "DEBUG", word, p.debug_length)


def _plan_boundary_scan(engine, op: BoundaryScan) -> Transaction:
    return _with_instruction(engine, op, op.instruction, op.pattern, engine.protocol.boundary_length)


def _plan_compliance_probe(engine, op: ComplianceProbe) -> Transaction:
    return _with_instruction(engine, op, op.instruction, 0, engine.protocol.register_length(op.instruction))


_PLANNERS = {
    InstructionLoad: _plan_instruction_load,
    DataScan:        _plan_data_scan,
    Reset:           _plan_reset,
    DebugAccess:     _plan_debug,
    BoundaryScan:    _plan_boundary_scan,
    ComplianceProbe: _plan_compliance_probe,
}


# ─── Engine ────────────────────────────────────────────────────────


class TransactionEngine:
    """
    Sequential driver: one transaction on the wire at a time.

    The wire lock is re-entrant so a caller (the environment) can hold it
    across predict -> drive -> publish.
    """
    def __init__(self, interface: SignalInterface, protocol: ProtocolConfig,
                 clock_period_ns: float = 100.0):
        self.interface = interface
        self.protocol = protocol
        self.clock_period_ns = clock_period_ns
        self.controller = TAPController()
        self.wire_lock = threading.RLock()
        # Device IR content as far as the engine knows (devices power up in reset)
        self.active_instruction: Optional[int] = self.reset_instruction
        self.completed = 0

    @property
    def reset_instruction(self) -> int:
        spec = self.protocol.instructions.get("IDCODE") or self.protocol.instructions["BYPASS"]
        return spec.code

    def current_state(self) -> TapState:
        return self.controller.current_state()

    # ---- public API ----

    def plan(self, op: Operation) -> Transaction:
        """Pending transaction for `op`."""
        planner = _PLANNERS.get(type(op))
        if planner is None:
            raise UnsupportedOperation(f"No driver for operation {type(op).__name__}")
        try:
            return planner(self, op)
        except KeyError as e:
            # Unregistered instruction name: an operational failure, not a crash
            txn = Transaction(kind=op.kind, op=op)
            txn.start_state = txn.end_state = self.current_state()
            txn.start_time = txn.end_time = self.interface.now()
            return txn.complete(TransactionStatus.ERROR, error=str(e.args[0]))

    def execute(self, op: Operation) -> Transaction:
        return self.drive(self.plan(op))

    def drive(self, txn: Transaction) -> Transaction:
        """Drive a pending transaction to completion. Always returns it."""
        if txn.is_complete:
            return txn

        with self.wire_lock:
            txn.start_state = self.current_state()
            txn.start_time = self.interface.now()
            txn.path.append(txn.start_state)

            status, error = TransactionStatus.SUCCESS, self._check_limits(txn)
            if error is None:
                wire = _Wire(self, txn, self.controller, self.interface)
                try:
                    self._run(wire, txn)
                    self.active_instruction = wire.active_instruction
                except _PhaseError as e:
                    error = str(e)
                except (OSError, RuntimeError, ValueError) as e:
                    # Interface trouble (USB errors, disconnected dongle...)
                    logger.error("interface_error", txn_id=txn.id, error=str(e))
                    error = f"signal interface error: {e}"
            if error is not None:
                status = TransactionStatus.ERROR

            txn.end_state = self.current_state()
            txn.end_time = self.interface.now()
            txn.complete(status, error)
            self.completed += 1

        logger.debug("transaction_complete", txn_id=txn.id, kind=txn.kind.value,
                     status=txn.status.value, cycles=len(txn.clocks),
                     end_state=txn.end_state.name, error=txn.error)
        return txn

    def predict_cycles(self, txn: Transaction) -> int:
        """TCK cycles `txn` would take from the current state, without driving."""
        if txn.is_complete or self._check_limits(txn) is not None:
            return 0
        dry = _Wire(self, txn, TAPController(self.current_state()), interface=None)
        try:
            self._run(dry, txn, dry_run=True)
        except _PhaseError:
            pass
        return dry.cycles

    # ---- internals ----

    def _run(self, wire: _Wire, txn: Transaction, dry_run: bool = False):
        if txn.forced_state is not None and not dry_run:
            logger.debug("state_forced", txn_id=txn.id, state=txn.forced_state.name)
            wire.force(txn.forced_state)

        perturbation = {} if dry_run else txn.perturbation
        if perturbation:
            with self.interface.perturbed(**perturbation):
                self._phases(wire, txn)
        else:
            self._phases(wire, txn)

    def _phases(self, wire: _Wire, txn: Transaction):
        for phase in PHASES[txn.kind]:
            phase(wire, txn)
        if txn.kind != OpKind.RESET and not txn.park_in_pause:
            wire.goto(self.protocol.tap_end_state)

    def _check_limits(self, txn: Transaction) -> Optional[str]:
        p = self.protocol
        if txn.has_ir_phase:
            if not 1 <= txn.instruction_width <= p.max_ir_width:
                return f"instruction width {txn.instruction_width} outside 1..{p.max_ir_width}"
        if txn.has_dr_phase and txn.scan_mode != ScanMode.CAPTURE_ONLY:
            if not 1 <= txn.bit_length <= p.max_dr_width:
                return f"data length {txn.bit_length} outside 1..{p.max_dr_width}"
        if txn.kind == OpKind.RESET and not txn.hard_reset and txn.reset_cycles < 0:
            return f"negative soft reset cycle count {txn.reset_cycles}"
        return None
