"""
TapVerif Protocol Compliance Checker
====================================
Validates a completed transaction and the state path it took against the
active standard profile.

Rules run in a fixed order. Every violation is counted; the first one is the
reported `violation`.
"""

from __future__ import annotations

import enum
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog

from tapverif.config import (
    BOUNDARY_INSTRUCTIONS, MANDATORY_INSTRUCTIONS, ProtocolConfig, Standard, Strictness,
)
from tapverif.tap import IR_CAPTURE_PATTERN, TapState, is_legal_edge
from tapverif.transaction import Transaction

logger = structlog.get_logger(system="tapverif.compliance")


class ViolationKind(str, enum.Enum):
    INSTRUCTION_WIDTH = "instruction_width"
    UNSUPPORTED_INSTRUCTION = "unsupported_instruction"
    DATA_WIDTH = "data_width"
    ILLEGAL_TRANSITION = "illegal_transition"
    STANDARD = "standard"


@dataclass(frozen=True)
class ComplianceViolation:
    kind: ViolationKind
    message: str


@dataclass(frozen=True)
class ComplianceResult:
    compliant: bool
    violation_count: int
    violation: Optional[ComplianceViolation] = None
    violations: tuple[ComplianceViolation, ...] = field(default_factory=tuple)


class ProtocolChecker:
    def __init__(self, protocol: ProtocolConfig, pin_count: Optional[int] = None):
        """
        protocol: the standard profile to check against.
        pin_count: pins the signal interface actually uses (defaults to the
                   profile's pin_count).
        """
        self.protocol = protocol
        self.pin_count = pin_count if pin_count is not None else protocol.pin_count

        # Rolling counters for reporting
        self.checks = 0
        self.non_compliant = 0
        self.by_kind: Counter = Counter()

    def check(self, txn: Transaction, path_taken: Optional[Sequence[TapState]] = None) -> ComplianceResult:
        if path_taken is None:
            path_taken = txn.path

        found: list[ComplianceViolation] = []
        for rule in (self._instruction_width, self._supported_instruction,
                     self._data_width, self._transitions, self._standard):
            found.extend(rule(txn, path_taken))

        self.checks += 1
        if found:
            self.non_compliant += 1
            self.by_kind.update(v.kind.value for v in found)
            logger.debug("non_compliant", txn_id=txn.id, kind=txn.kind.value,
                         first=found[0].kind.value, count=len(found))

        return ComplianceResult(
            compliant=not found,
            violation_count=len(found),
            violation=found[0] if found else None,
            violations=tuple(found),
        )

    def summary(self) -> dict:
        return {
            "checks": self.checks,
            "non_compliant": self.non_compliant,
            "compliance_rate": 100.0 * (self.checks - self.non_compliant) / self.checks if self.checks else 100.0,
            "violations": dict(self.by_kind),
            "standard": self.protocol.standard.value,
            "strictness": self.protocol.strictness.value,
        }

    # ---- rules ----

    def _instruction_width(self, txn, path):
        if txn.has_ir_phase and txn.instruction_width is not None \
                and txn.instruction_width > self.protocol.max_ir_width:
            yield ComplianceViolation(
                ViolationKind.INSTRUCTION_WIDTH,
                f"instruction width {txn.instruction_width} exceeds maximum {self.protocol.max_ir_width}",
            )

    def _supported_instruction(self, txn, path):
        if self.protocol.strictness != Strictness.STRICT or not txn.has_ir_phase:
            return
        name = self._name(txn)
        if name is None or (name not in MANDATORY_INSTRUCTIONS and name not in self.protocol.instructions):
            yield ComplianceViolation(
                ViolationKind.UNSUPPORTED_INSTRUCTION,
                f"instruction {txn.instruction:#x} is neither mandatory nor registered",
            )

    def _data_width(self, txn, path):
        if not txn.has_dr_phase:
            return
        name = self._name(txn)
        if name is None:
            return
        required = self._required_length(name)
        if required is not None and txn.bit_length != required:
            yield ComplianceViolation(
                ViolationKind.DATA_WIDTH,
                f"{name} data width {txn.bit_length} != {required}",
            )

    def _transitions(self, txn, path):
        for src, dst in zip(path, path[1:]):
            if not is_legal_edge(src, dst):
                yield ComplianceViolation(
                    ViolationKind.ILLEGAL_TRANSITION,
                    f"no TAP edge {TapState(src).name} -> {TapState(dst).name}",
                )

    def _standard(self, txn, path):
        p = self.protocol
        if p.standard == Standard.IEEE_1149_7:
            if self.pin_count > 2:
                yield ComplianceViolation(
                    ViolationKind.STANDARD,
                    f"1149.7 reduced-pin operation allows at most 2 pins, interface uses {self.pin_count}",
                )
        elif p.standard == Standard.IEEE_1149_4:
            if "PROBE" not in p.instructions:
                yield ComplianceViolation(ViolationKind.STANDARD, "1149.4 profile requires a PROBE instruction")
        elif p.standard == Standard.IEEE_1149_6:
            if "AC_EXTEST" not in p.instructions:
                yield ComplianceViolation(ViolationKind.STANDARD, "1149.6 profile requires an AC_EXTEST instruction")
        elif p.standard == Standard.IEEE_1149_1:
            if p.strictness != Strictness.RELAXED and txn.has_ir_phase and txn.ok \
                    and txn.ir_captured is not None and txn.ir_captured & 0b11 != IR_CAPTURE_PATTERN:
                yield ComplianceViolation(
                    ViolationKind.STANDARD,
                    f"IR capture {txn.ir_captured:#x} does not end in 01",
                )

    # ---- helpers ----

    def _name(self, txn: Transaction) -> Optional[str]:
        # The code is authoritative; the name may predate a corrupted code
        return self.protocol.name_of(txn.instruction)

    def _required_length(self, name: str) -> Optional[int]:
        if name == "BYPASS":
            return 1
        if name == "IDCODE":
            return 32
        if name in BOUNDARY_INSTRUCTIONS:
            return self.protocol.boundary_length
        spec = self.protocol.instructions.get(name)
        if spec is None:
            return None
        return self.protocol.register_length(name)
