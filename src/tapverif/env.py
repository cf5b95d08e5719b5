"""
TapVerif Verification Environment
=================================
Builds every component from one VerifConfig and runs operations through
the full pipeline:

    plan -> inject -> drive -> check -> validate -> publish -> fault tally

Publishing is synchronous and happens under the engine's wire lock, so every
observer sees every transaction in completion order.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from tapverif.compliance import ComplianceResult, ProtocolChecker
from tapverif.config import VerifConfig
from tapverif.engine import TransactionEngine
from tapverif.faults import ErrorInjector
from tapverif.scoreboard import Scoreboard
from tapverif.signals.base import SignalInterface
from tapverif.signals.sim import SimulatedTarget
from tapverif.timing import TimingSample, TimingValidator, TimingViolation
from tapverif.transaction import DataScan, FaultRecord, Operation, Reset, Transaction

logger = structlog.get_logger(system="tapverif.env")

NO_EXPECTATION = object()


@dataclass
class TransactionResult:
    """Everything the pipeline learned about one driven transaction."""
    transaction: Transaction
    compliance: ComplianceResult
    timing_ok: bool
    timing_violations: tuple[TimingViolation, ...]
    samples: TimingSample
    fault: Optional[FaultRecord] = None
    expected: Optional[Transaction] = None
    recovery: bool = False          # housekeeping traffic issued after a fault
    matched: Optional[bool] = None  # set once an expectation is registered

    @property
    def passed(self) -> bool:
        return self.transaction.ok and self.compliance.compliant and self.timing_ok


class VerificationEnv:
    def __init__(self, config: VerifConfig, interface: Optional[SignalInterface] = None):
        self.config = config
        self.interface = interface or SimulatedTarget(config.protocol, config.timing, config.target)

        self.engine = TransactionEngine(self.interface, config.protocol, config.timing.clock_period_ns)
        self.checker = ProtocolChecker(config.protocol, pin_count=self.interface.pin_count)
        self.timing = TimingValidator(config.timing)
        self.injector = ErrorInjector(config.injection, config.protocol, config.timing)
        self.scoreboard = Scoreboard(config.scoreboard)

        self._observers: list[Callable[[TransactionResult], None]] = []
        self.subscribe(self._to_scoreboard)

        # Tallies
        self.status = Counter()
        self.passed = 0
        self.faults_injected = 0
        self.faults_detected = 0
        self.recoveries_attempted = 0
        self.recoveries = 0
        self.bits_shifted = 0
        self.tck_cycles = 0
        self.busy_ns = 0.0

    # ---- observers ----

    def subscribe(self, callback: Callable[[TransactionResult], None]):
        self._observers.append(callback)

    def _to_scoreboard(self, result: TransactionResult):
        if not result.recovery:
            self.scoreboard.observe(result.transaction)

    # ---- execution ----

    def execute(self, op: Operation, expect_out=NO_EXPECTATION) -> TransactionResult:
        """
        Run `op` through the pipeline. With expect_out given (an int, or None
        for "any data"), an expected transaction with a predicted end time is
        registered on the scoreboard.
        """
        with self.engine.wire_lock:
            txn = self.engine.plan(op)

            expected = None
            if expect_out is not NO_EXPECTATION:
                cycles = self.engine.predict_cycles(txn)
                end = self.interface.now() + cycles * self.config.timing.clock_period_ns
                expected = Transaction.expected(op, txn, expect_out, end)

            fault = None
            if not txn.is_complete:
                txn, fault = self.injector.maybe_inject(txn, now=self.interface.now())
                self.engine.drive(txn)

            result = self._analyse(txn, fault, expected)
            self._publish(result)
            if expected is not None:
                self.scoreboard.expect(expected)
                result.matched = self.scoreboard.is_matched(txn)
            self._tally(result)

            if fault is not None and self.config.recover_after_fault:
                self._recover(result)
        return result

    def reset(self, hard: bool = False) -> TransactionResult:
        return self.execute(Reset(hard=hard))

    def _analyse(self, txn, fault, expected, recovery=False) -> TransactionResult:
        compliance = self.checker.check(txn, txn.path)
        samples = self.timing.derive_samples(txn)
        timing_ok, violations = self.timing.validate(txn, samples)
        return TransactionResult(
            transaction=txn, compliance=compliance, timing_ok=timing_ok,
            timing_violations=tuple(violations), samples=samples, fault=fault,
            expected=expected, recovery=recovery,
        )

    def _publish(self, result: TransactionResult):
        for callback in self._observers:
            callback(result)

    def _tally(self, result: TransactionResult):
        txn = result.transaction
        self.status[txn.status.value] += 1
        if result.passed:
            self.passed += 1
        self.bits_shifted += sum(1 for c in txn.clocks if c.shift)
        self.tck_cycles += len(txn.clocks)
        if txn.duration is not None:
            self.busy_ns += txn.duration

        if result.fault is not None:
            self.faults_injected += 1
            detected = not result.passed or result.matched is False
            if detected:
                self.faults_detected += 1
            logger.info("fault_outcome", txn_id=txn.id, kind=result.fault.kind.value, detected=detected,
                        compliant=result.compliance.compliant, timing_ok=result.timing_ok,
                        status=txn.status.value, matched=result.matched)

    def _recover(self, faulty: TransactionResult):
        """
        Soft reset, then read the reset-default register back. The recovery
        counts only when the device returns the value a freshly reset part
        must return.
        """
        self.recoveries_attempted += 1
        reset = self._housekeeping(Reset())
        op, expected = self._identity_readback()
        readback = self._housekeeping(op)

        if reset.ok and readback.ok and readback.data_out == expected:
            self.recoveries += 1
        else:
            logger.warning("recovery_failed", txn_id=faulty.transaction.id,
                           error=reset.error or readback.error,
                           readback=readback.data_out, expected=expected)

    def _housekeeping(self, op: Operation) -> Transaction:
        txn = self.engine.execute(op)
        self._publish(self._analyse(txn, None, None, recovery=True))
        return txn

    def _identity_readback(self) -> tuple[DataScan, int]:
        # Reset selects IDCODE, or BYPASS on parts without one
        p = self.config.protocol
        if "IDCODE" in p.instructions:
            return DataScan(data=0, bit_length=32), p.idcode
        # BYPASS captures 0, then echoes the first bit shifted in
        return DataScan(data=0b01, bit_length=2), 0b10

    # ---- reporting ----

    def summary(self) -> dict:
        """Aggregate report. Always completes, whatever the transactions did."""
        total = sum(self.status.values())
        period = self.config.timing.clock_period_ns
        return {
            "transactions": total,
            "passed": self.passed,
            "status": dict(self.status),
            "compliance": self.checker.summary(),
            "timing": self.timing.summary(),
            "injection": self.injector.statistics(),
            "scoreboard": self.scoreboard.summary(),
            "faults": {
                "injected": self.faults_injected,
                "detected": self.faults_detected,
                "recovery_attempts": self.recoveries_attempted,
                "recovered": self.recoveries,
                "detection_rate": 100.0 * self.faults_detected / self.faults_injected if self.faults_injected else 0.0,
                "recovery_rate": 100.0 * self.recoveries / self.recoveries_attempted if self.recoveries_attempted else 0.0,
            },
            "performance": {
                "bits_shifted": self.bits_shifted,
                "tck_cycles": self.tck_cycles,
                "simulated_time_ns": self.busy_ns,
                "throughput_bps": self.bits_shifted / (self.busy_ns * 1e-9) if self.busy_ns else 0.0,
                "mean_latency_ns": self.busy_ns / total if total else 0.0,
                "clock_period_ns": period,
            },
        }
