"""
Protocol Compliance Checker Verification
========================================
Rule-by-rule checks against hand-built transactions, plus an end-to-end
pass over engine-driven transactions.
"""

import pytest

from tapverif.compliance import ProtocolChecker, ViolationKind
from tapverif.config import InstructionDef, build_config
from tapverif.tap import IR_CAPTURE_PATTERN, TapState, route, walk
from tapverif.transaction import DataScan, OpKind

S = TapState
IDLE_PATH = (S.RUN_TEST_IDLE, S.RUN_TEST_IDLE)


def _dr_path():
    return tuple(walk(S.RUN_TEST_IDLE, route(S.RUN_TEST_IDLE, S.UPDATE_DR)))


def _checker(**protocol):
    return ProtocolChecker(build_config({"protocol": protocol}).protocol)


def test_bypass_width_must_be_one(make_txn):
    checker = _checker()
    bypass = checker.protocol.code_of("BYPASS")

    bad = make_txn(OpKind.DATA_SCAN, path=_dr_path(), instruction=bypass, instruction_width=4, bit_length=2)
    result = checker.check(bad)
    assert not result.compliant
    assert result.violation.kind == ViolationKind.DATA_WIDTH

    good = make_txn(OpKind.DATA_SCAN, path=_dr_path(), instruction=bypass, instruction_width=4, bit_length=1)
    assert checker.check(good).compliant


def test_idcode_and_boundary_widths(make_txn):
    checker = _checker()
    idcode = checker.protocol.code_of("IDCODE")
    extest = checker.protocol.code_of("EXTEST")

    assert checker.check(make_txn(OpKind.DATA_SCAN, path=_dr_path(), instruction=idcode, bit_length=32)).compliant
    result = checker.check(make_txn(OpKind.DATA_SCAN, path=_dr_path(), instruction=idcode, bit_length=16))
    assert result.violation.kind == ViolationKind.DATA_WIDTH

    result = checker.check(make_txn(OpKind.BOUNDARY_SCAN, path=_dr_path(), instruction=extest,
                                    instruction_width=4, bit_length=8, ir_captured=0b01))
    assert result.violation.kind == ViolationKind.DATA_WIDTH
    assert "16" in result.violation.message


def test_strict_mode_accepts_mandatory_idcode(make_txn):
    checker = _checker(strictness="strict")
    idcode = checker.protocol.code_of("IDCODE")
    txn = make_txn(OpKind.COMPLIANCE_PROBE, path=_dr_path(), instruction=idcode,
                   instruction_width=4, bit_length=32, ir_captured=0b0001)
    result = checker.check(txn)
    assert result.compliant
    assert all(v.kind != ViolationKind.UNSUPPORTED_INSTRUCTION for v in result.violations)


def test_strict_mode_rejects_unregistered_code(make_txn):
    unregistered = 0xC
    txn = make_txn(OpKind.INSTRUCTION_LOAD, path=IDLE_PATH, instruction=unregistered,
                   instruction_width=4, ir_captured=0b01)

    strict = _checker(strictness="strict").check(txn)
    assert strict.violation.kind == ViolationKind.UNSUPPORTED_INSTRUCTION

    # Only strict mode cares
    assert _checker(strictness="standard").check(txn).compliant


def test_instruction_width_is_reported_first(make_txn):
    checker = _checker()
    txn = make_txn(OpKind.INSTRUCTION_LOAD, path=(S.RUN_TEST_IDLE, S.SHIFT_DR),
                   instruction=1, instruction_width=40, ir_captured=0b01)
    result = checker.check(txn)
    assert result.violation.kind == ViolationKind.INSTRUCTION_WIDTH
    assert result.violation_count == 2
    assert {v.kind for v in result.violations} == {ViolationKind.INSTRUCTION_WIDTH, ViolationKind.ILLEGAL_TRANSITION}


def test_illegal_edge_in_caller_path(make_txn):
    checker = _checker()
    txn = make_txn(OpKind.RESET, path=(S.TEST_LOGIC_RESET,))
    result = checker.check(txn, path_taken=[S.RUN_TEST_IDLE, S.SHIFT_IR, S.EXIT1_IR])
    assert result.violation.kind == ViolationKind.ILLEGAL_TRANSITION
    assert "RUN_TEST_IDLE -> SHIFT_IR" in result.violation.message


@pytest.mark.parametrize("pins,compliant", [(5, False), (2, True)])
def test_reduced_pin_count_profile(make_txn, pins, compliant):
    config = build_config({"protocol": {"standard": "IEEE_1149_7"}})
    checker = ProtocolChecker(config.protocol, pin_count=pins)
    result = checker.check(make_txn(OpKind.RESET, path=(S.TEST_LOGIC_RESET,) * 3))
    assert result.compliant is compliant
    if not compliant:
        assert result.violation.kind == ViolationKind.STANDARD


def test_analog_and_ac_profiles_need_their_instructions(make_txn):
    txn = make_txn(OpKind.RESET, path=(S.TEST_LOGIC_RESET,))

    assert not _checker(standard="IEEE_1149_4").check(txn).compliant
    assert not _checker(standard="IEEE_1149_6").check(txn).compliant

    config = build_config({"protocol": {"standard": "IEEE_1149_4"}})
    config.protocol.instructions["PROBE"] = InstructionDef(code=0xA, register="user", length=8)
    assert ProtocolChecker(config.protocol).check(txn).compliant


def test_ir_capture_pattern(make_txn):
    txn = make_txn(OpKind.INSTRUCTION_LOAD, path=IDLE_PATH, instruction=1, instruction_width=4, ir_captured=0b10)
    result = _checker().check(txn)
    assert result.violation.kind == ViolationKind.STANDARD
    assert _checker(strictness="relaxed").check(txn).compliant

    # Only the two fixed LSBs matter; the rest is device specific
    txn = make_txn(OpKind.INSTRUCTION_LOAD, path=IDLE_PATH, instruction=1, instruction_width=4,
                   ir_captured=0b1100 | IR_CAPTURE_PATTERN)
    assert _checker().check(txn).compliant


def test_engine_transactions_are_compliant(engine, config, load):
    checker = ProtocolChecker(config.protocol)
    for op in (load(config.protocol, "IDCODE"), DataScan(data=0, bit_length=32),
               load(config.protocol, "BYPASS"), DataScan(data=1, bit_length=1)):
        txn = engine.execute(op)
        result = checker.check(txn, txn.path)
        assert result.compliant, result.violation


def test_summary_counters(make_txn):
    checker = _checker()
    bypass = checker.protocol.code_of("BYPASS")
    checker.check(make_txn(OpKind.DATA_SCAN, path=_dr_path(), instruction=bypass, bit_length=1))
    checker.check(make_txn(OpKind.DATA_SCAN, path=_dr_path(), instruction=bypass, bit_length=3))

    summary = checker.summary()
    assert summary["checks"] == 2
    assert summary["non_compliant"] == 1
    assert summary["violations"] == {"data_width": 1}
    assert summary["compliance_rate"] == pytest.approx(50.0)
