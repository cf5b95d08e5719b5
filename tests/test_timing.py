"""
Timing Validator Verification
=============================
Bound checks on hand-made samples, derivation from simulated clock records,
and the rolling jitter window.
"""

import math

import numpy as np
import pytest

from tapverif.config import TimingConfig
from tapverif.tap import TapState
from tapverif.timing import TimingSample, TimingValidator
from tapverif.transaction import ClockRecord, DataScan, FaultKind, FaultRecord, OpKind, Reset


def _nominal(**overrides):
    values = dict(periods=[100.0, 100.0], duty_cycles=[50.0, 50.0], setup=[50.0], hold=[50.0],
                  propagation=[55.0], clock_to_out=[5.0])
    values.update(overrides)
    return TimingSample.from_values(**values)


def test_period_bounds_are_inclusive(make_txn):
    validator = TimingValidator(TimingConfig())
    txn = make_txn(OpKind.DATA_SCAN)

    ok, violations = validator.validate(txn, _nominal(periods=[105.0, 95.0]))
    assert ok, violations

    ok, violations = validator.validate(txn, _nominal(periods=[math.nextafter(105.0, math.inf)]))
    assert not ok
    assert [v.parameter for v in violations] == ["period"]
    assert violations[0].bound == pytest.approx(105.0)

    ok, violations = validator.validate(txn, _nominal(periods=[math.nextafter(95.0, 0.0)]))
    assert not ok and violations[0].parameter == "period"


def test_derived_samples_from_simulated_scan(engine, config):
    validator = TimingValidator(config.timing)
    txn = engine.execute(DataScan(data=0, bit_length=32))
    samples = validator.derive_samples(txn)

    assert samples.periods == pytest.approx([100.0] * (len(txn.clocks) - 1))
    assert samples.duty_cycles == pytest.approx(50.0)
    assert samples.setup[1:] == pytest.approx(50.0)
    assert samples.hold == pytest.approx(50.0)
    assert samples.propagation == pytest.approx(55.0)
    assert samples.clock_to_out == pytest.approx(5.0)
    assert samples.reset_pulse_ns is None

    ok, violations = validator.validate(txn, samples)
    assert ok, violations


def test_duty_cycle_distortion_is_caught(engine, target, config):
    validator = TimingValidator(config.timing)
    with target.perturbed(duty_pct=70.0):
        txn = engine.execute(DataScan(data=0, bit_length=8))
    ok, violations = validator.validate(txn)
    assert not ok
    params = {v.parameter for v in violations}
    # A longer high phase also pushes TDO validity past the propagation bound
    assert params == {"duty_cycle", "propagation"}


def test_every_violation_is_reported(make_txn):
    validator = TimingValidator(TimingConfig())
    samples = _nominal(setup=[2.0], hold=[3.0], propagation=[80.0], clock_to_out=[20.0])
    ok, violations = validator.validate(make_txn(OpKind.DATA_SCAN), samples)
    assert not ok
    assert sorted(v.parameter for v in violations) == ["clock_to_out", "hold", "propagation", "setup"]
    assert validator.summary()["violations"]["setup"] == 1


def test_short_hard_reset_pulse(engine, config):
    validator = TimingValidator(config.timing)
    txn = engine.execute(Reset(hard=True, pulse_ns=0.0))
    ok, violations = validator.validate(txn)
    assert not ok
    assert [v.parameter for v in violations] == ["reset_pulse"]

    txn = engine.execute(Reset(hard=True))
    assert validator.validate(txn)[0]


def test_jitter_over_the_window(make_txn):
    validator = TimingValidator(TimingConfig())
    # Individually out of the period band as well, but jitter is what we look at
    samples = _nominal(periods=[80.0, 120.0, 80.0, 120.0])
    samples = TimingSample.from_values(
        periods=samples.periods, duty_cycles=samples.duty_cycles, setup=samples.setup,
        hold=samples.hold, propagation=samples.propagation, clock_to_out=samples.clock_to_out,
        jitter_pct=20.0,
    )
    ok, violations = validator.validate(make_txn(OpKind.DATA_SCAN), samples)
    assert not ok
    assert "jitter" in {v.parameter for v in violations}
    assert validator.jitter_pct() == pytest.approx(20.0)


def _clocked_txn(make_txn, periods):
    """DATA_SCAN whose clocks fall at the running sum of `periods`."""
    falls = np.concatenate([[100.0], 100.0 + np.cumsum(periods)])
    clocks = [
        ClockRecord(index=i, tms=0, tdi=0, tdo=0, drive_time=fall - 100.0, rise=fall - 50.0,
                    fall=fall, tdo_valid=fall + 5.0, state=TapState.SHIFT_DR, shift=True)
        for i, fall in enumerate(falls)
    ]
    return make_txn(OpKind.DATA_SCAN, clocks=clocks)


def test_jitter_uses_only_the_trailing_window(make_txn):
    validator = TimingValidator(TimingConfig())
    validator.validate(make_txn(OpKind.DATA_SCAN), _nominal(periods=[100.0] * 100))

    # Longer than the window on its own: only its last 100 periods count
    periods = [100.0] * 150 + [99.0, 101.0] * 50
    samples = validator.derive_samples(_clocked_txn(make_txn, periods))
    assert samples.periods.size == 250
    assert samples.jitter_pct == pytest.approx(1.0)


def test_jitter_window_spans_committed_and_new_periods(make_txn):
    validator = TimingValidator(TimingConfig(jitter_window=4))
    validator.validate(make_txn(OpKind.DATA_SCAN), _nominal(periods=[90.0, 110.0, 90.0, 110.0]))

    samples = validator.derive_samples(_clocked_txn(make_txn, [100.0, 100.0]))
    expected = np.array([90.0, 110.0, 100.0, 100.0])
    assert samples.jitter_pct == pytest.approx(expected.std() / expected.mean() * 100.0)


def test_faulted_periods_stay_out_of_the_window(make_txn):
    validator = TimingValidator(TimingConfig())
    faulted = make_txn(OpKind.DATA_SCAN, fault=FaultRecord(FaultKind.TIMING_VIOLATION, 1, 0.0))
    validator.validate(faulted, _nominal(periods=[50.0, 150.0]))
    assert validator.jitter_pct() == 0.0

    validator.validate(make_txn(OpKind.DATA_SCAN), _nominal())
    assert validator.jitter_pct() == 0.0


def test_histories_are_capped(make_txn):
    validator = TimingValidator(TimingConfig(history_window=5, jitter_window=3))
    for _ in range(4):
        validator.validate(make_txn(OpKind.DATA_SCAN), _nominal(periods=[100.0, 100.0, 100.0]))
    assert len(validator.periods) == 5
    assert len(validator._window) == 3
    assert validator.summary()["validated"] == 4
    assert validator.summary()["pass_rate"] == pytest.approx(100.0)
