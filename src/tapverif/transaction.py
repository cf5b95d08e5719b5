"""
TapVerif Transactions
=====================
Operation requests (a closed set of tagged variants), the Transaction record
the engine fills in while driving them, and the small immutable records
attached to it (per-clock timing, reset pulses, injected faults).
"""

from __future__ import annotations

import copy
import enum
import itertools
from dataclasses import dataclass, field
from typing import ClassVar, NamedTuple, Optional, Union

from tapverif.tap import TapState


class OpKind(str, enum.Enum):
    INSTRUCTION_LOAD = "instruction_load"
    DATA_SCAN = "data_scan"
    RESET = "reset"
    DEBUG = "debug"
    BOUNDARY_SCAN = "boundary_scan"
    COMPLIANCE_PROBE = "compliance_probe"


class ScanMode(str, enum.Enum):
    NORMAL = "normal"
    CAPTURE_ONLY = "capture_only"   # Capture-DR then straight to Update-DR, nothing shifted
    SHIFT_ONLY = "shift_only"       # Resume a scan parked in Pause-DR, skipping Capture-DR


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


class FaultKind(str, enum.Enum):
    BIT_FLIP = "bit_flip"
    STUCK_AT_0 = "stuck_at_0"
    STUCK_AT_1 = "stuck_at_1"
    TIMING_VIOLATION = "timing_violation"
    PROTOCOL_VIOLATION = "protocol_violation"
    INSTRUCTION_CORRUPTION = "instruction_corruption"
    DATA_CORRUPTION = "data_corruption"
    STATE_MACHINE_ERROR = "state_machine_error"
    CLOCK_GLITCH = "clock_glitch"
    RESET_ANOMALY = "reset_anomaly"


# --- Operations ---

@dataclass(frozen=True)
class InstructionLoad:
    code: int
    width: int
    name: Optional[str] = None
    via_pause: bool = False
    kind: ClassVar[OpKind] = OpKind.INSTRUCTION_LOAD


@dataclass(frozen=True)
class DataScan:
    data: int
    bit_length: int
    mode: ScanMode = ScanMode.NORMAL
    via_pause: bool = False
    park_in_pause: bool = False
    kind: ClassVar[OpKind] = OpKind.DATA_SCAN


@dataclass(frozen=True)
class Reset:
    hard: bool = False
    cycles: Optional[int] = None      # soft reset: TMS=1 clocks (config default when None)
    pulse_ns: Optional[float] = None  # hard reset: TRST low time (config default when None)
    kind: ClassVar[OpKind] = OpKind.RESET


@dataclass(frozen=True)
class DebugAccess:
    address: int
    data: int = 0
    write: bool = False
    kind: ClassVar[OpKind] = OpKind.DEBUG


@dataclass(frozen=True)
class BoundaryScan:
    pattern: int
    instruction: str = "EXTEST"
    kind: ClassVar[OpKind] = OpKind.BOUNDARY_SCAN


@dataclass(frozen=True)
class ComplianceProbe:
    instruction: str
    kind: ClassVar[OpKind] = OpKind.COMPLIANCE_PROBE


Operation = Union[InstructionLoad, DataScan, Reset, DebugAccess, BoundaryScan, ComplianceProbe]


# --- Records ---

class ClockRecord(NamedTuple):
    """One TCK cycle as seen from the driver side."""
    index: int          # edge count since the start of the transaction
    tms: int
    tdi: int
    tdo: int            # sampled before the rising edge
    drive_time: float   # last TMS/TDI change before the rising edge
    rise: float
    fall: float
    tdo_valid: float
    state: TapState     # state entered on this edge
    shift: bool         # True when this clock shifted a register bit


class ResetRecord(NamedTuple):
    hard: bool
    cycles: int
    assert_time: float
    deassert_time: float

    @property
    def pulse_ns(self) -> float:
        return self.deassert_time - self.assert_time


@dataclass(frozen=True)
class FaultRecord:
    kind: FaultKind
    transaction_id: int
    injected_at: float
    detail: str = ""


@dataclass(frozen=True)
class Payload:
    """Comparison key used by the scoreboard. data_out=None is a wildcard."""
    kind: OpKind
    instruction: Optional[int]
    instruction_width: Optional[int]
    data_in: Optional[int]
    bit_length: Optional[int]
    data_out: Optional[int]

    def matches(self, expected: "Payload") -> bool:
        if expected.data_out is not None and expected.data_out != self.data_out:
            return False
        return (self.kind, self.instruction, self.instruction_width, self.data_in, self.bit_length) == \
               (expected.kind, expected.instruction, expected.instruction_width, expected.data_in, expected.bit_length)


class TransactionSealed(AttributeError):
    """Raised when a completed transaction is modified."""


_ids = itertools.count(1)


@dataclass
class Transaction:
    """
    One request/response cycle on the TAP.

    Created pending from an Operation, mutated only by the injector (before
    driving) and the engine (while driving), sealed by complete().
    """
    kind: OpKind
    op: Optional[Operation] = None
    id: int = field(default_factory=lambda: next(_ids))

    # IR phase
    instruction: Optional[int] = None
    instruction_width: Optional[int] = None
    instruction_name: Optional[str] = None

    # DR phase
    data_in: Optional[int] = None
    bit_length: Optional[int] = None
    scan_mode: ScanMode = ScanMode.NORMAL
    via_pause: bool = False
    park_in_pause: bool = False

    # Reset phase
    hard_reset: bool = False
    reset_cycles: Optional[int] = None
    reset_pulse_ns: Optional[float] = None

    # Response
    data_out: Optional[int] = None
    ir_captured: Optional[int] = None
    tdo_final: Optional[int] = None
    start_state: Optional[TapState] = None
    end_state: Optional[TapState] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    status: TransactionStatus = TransactionStatus.PENDING
    error: Optional[str] = None
    path: list = field(default_factory=list)
    clocks: list = field(default_factory=list)
    reset: Optional[ResetRecord] = None

    # Fault hooks, set by the error injector
    fault: Optional[FaultRecord] = None
    perturbation: dict = field(default_factory=dict)
    stuck_at: Optional[tuple] = None          # (first bit index, forced level)
    forced_state: Optional[TapState] = None

    _sealed: bool = field(default=False, repr=False, compare=False)

    def __setattr__(self, name, value):
        if getattr(self, "_sealed", False):
            raise TransactionSealed(f"Transaction {self.id} is complete; cannot set '{name}'")
        object.__setattr__(self, name, value)

    # ---- lifecycle ----

    @property
    def is_complete(self) -> bool:
        return self._sealed

    def complete(self, status: TransactionStatus, error: Optional[str] = None) -> "Transaction":
        self.status = status
        if error is not None:
            self.error = error
        # Freeze the mutable members too
        self.path = tuple(self.path)
        self.clocks = tuple(self.clocks)
        self.perturbation = dict(self.perturbation)
        object.__setattr__(self, "_sealed", True)
        return self

    def copy(self) -> "Transaction":
        """Unsealed copy with independent mutable members, same id."""
        dup = copy.copy(self)
        object.__setattr__(dup, "_sealed", False)
        dup.path = list(self.path)
        dup.clocks = list(self.clocks)
        dup.perturbation = dict(self.perturbation)
        return dup

    # ---- views ----

    @property
    def ok(self) -> bool:
        return self.status == TransactionStatus.SUCCESS

    @property
    def has_ir_phase(self) -> bool:
        return self.instruction is not None and self.kind != OpKind.DATA_SCAN

    @property
    def has_dr_phase(self) -> bool:
        return self.bit_length is not None and self.kind not in (OpKind.INSTRUCTION_LOAD, OpKind.RESET)

    @property
    def duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def payload(self) -> Payload:
        return Payload(
            kind=self.kind,
            instruction=self.instruction,
            instruction_width=self.instruction_width,
            data_in=self.data_in,
            bit_length=self.bit_length,
            data_out=self.data_out,
        )

    @classmethod
    def expected(cls, op: Operation, template: "Transaction", data_out: Optional[int], end_time: float) -> "Transaction":
        """
        Builds a completed expected transaction mirroring `template`'s request
        fields. Used by scenarios feeding the scoreboard's expected stream.
        """
        txn = cls(kind=template.kind, op=op)
        txn.instruction = template.instruction
        txn.instruction_width = template.instruction_width
        txn.instruction_name = template.instruction_name
        txn.data_in = template.data_in
        txn.bit_length = template.bit_length
        txn.data_out = data_out
        txn.end_time = end_time
        return txn.complete(TransactionStatus.SUCCESS)


def mask(width: int) -> int:
    return (1 << width) - 1 if width > 0 else 0


def int_to_bits(value: int, width: int) -> list[int]:
    """LSB first."""
    return [(value >> i) & 1 for i in range(width)]


def bits_to_int(bits) -> int:
    """LSB first."""
    out = 0
    for i, b in enumerate(bits):
        out |= (int(b) & 1) << i
    return out
