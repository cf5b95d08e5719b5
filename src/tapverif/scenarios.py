"""
TapVerif Scenario Library
=========================
Ready-made scenarios for the ScenarioScheduler. Each is an
`async def scenario(ctx)` that drives operations through ctx and records
pass/fail checks with ctx.check().

Sequences that must not be interleaved with other scenarios (an IR load
followed by its DR scan, a parked scan and its resume) go through
ctx.execute_many() or ctx.exclusive().
"""

from __future__ import annotations

import numpy as np

from tapverif.tap import TapState
from tapverif.transaction import (
    BoundaryScan, ComplianceProbe, DataScan, InstructionLoad, Reset, ScanMode, mask,
)

SCENARIOS = {}


def scenario(name):
    def register(fn):
        SCENARIOS[name] = fn
        return fn
    return register


def _load(ctx, name):
    p = ctx.protocol
    return InstructionLoad(code=p.code_of(name), width=p.ir_width, name=name)


@scenario("basic")
async def basic(ctx):
    """Reset twice, read IDCODE, pass a bit through BYPASS."""
    p = ctx.protocol

    first, second = await ctx.execute_many([Reset(), Reset()])
    ctx.check(second.transaction.end_state == TapState.TEST_LOGIC_RESET, "double reset must end in TEST_LOGIC_RESET")

    load, scan = await ctx.execute_many([
        (_load(ctx, "IDCODE"), None),
        (DataScan(data=0, bit_length=32), p.idcode),
    ])
    ctx.check(load.transaction.ir_captured & 0b11 == 0b01, "IR capture must end in 01")
    ctx.check(scan.transaction.data_out is not None and scan.transaction.data_out & 1 == 1,
              "IDCODE least significant bit must be 1")
    ctx.check(scan.matched is True, "IDCODE scan did not match its expectation")

    _, bypass = await ctx.execute_many([
        (_load(ctx, "BYPASS"), None),
        (DataScan(data=1, bit_length=1), 0),
    ])
    ctx.check(bypass.transaction.tdo_final == 1, "BYPASS must pass TDI through after one shift")
    for result in ctx.results:
        ctx.check(result.passed, f"transaction {result.transaction.id} ({result.transaction.kind.value}) failed")


@scenario("boundary_scan")
async def boundary_scan(ctx):
    """SAMPLE/PRELOAD a pattern, then walk a single one across EXTEST."""
    length = ctx.protocol.boundary_length
    sample = await ctx.execute(BoundaryScan(pattern=0x5555 & mask(length), instruction="SAMPLE_PRELOAD"))
    ctx.check(sample.passed, "SAMPLE_PRELOAD scan failed")

    for bit in range(length):
        result = await ctx.execute(BoundaryScan(pattern=1 << bit), expect_out=None)
        ctx.check(result.passed, f"EXTEST walking-one bit {bit} failed")
        ctx.check(result.matched is True, f"EXTEST walking-one bit {bit} unmatched")


@scenario("pause_resume")
async def pause_resume(ctx):
    """Park a SCRATCH scan in PAUSE-DR, resume it, then read the register back."""
    p = ctx.protocol
    length = p.register_length("SCRATCH")
    first, second = 0xA5A5 & mask(length), 0x3C3C & mask(length)

    load, parked, resumed, readback = await ctx.execute_many([
        _load(ctx, "SCRATCH"),
        DataScan(data=first, bit_length=length, park_in_pause=True),
        (DataScan(data=second, bit_length=length, mode=ScanMode.SHIFT_ONLY), first),
        (DataScan(data=0, bit_length=length, via_pause=True), second),
    ])
    ctx.check(parked.transaction.end_state == TapState.PAUSE_DR, "scan did not park in PAUSE_DR")
    ctx.check(resumed.transaction.path[1] == TapState.EXIT2_DR, "resume did not go through EXIT2_DR")
    ctx.check(resumed.matched is True, "resumed scan did not shift out the parked data")
    ctx.check(TapState.PAUSE_DR in readback.transaction.path, "via_pause scan skipped PAUSE_DR")
    ctx.check(readback.matched is True, "SCRATCH did not hold the resumed data")
    for result in (load, parked, resumed, readback):
        ctx.check(result.passed, f"transaction {result.transaction.id} failed")


def _select_clean(ctx, name, attempts=10) -> bool:
    """Load `name`, retrying while the injector keeps hitting the load."""
    for _ in range(attempts):
        if ctx.cancelled:
            return False
        if ctx.run(_load(ctx, name)).fault is None:
            return True
    return ctx.check(False, f"could not load {name} without an injected fault")


def _injection_loop(ctx, count):
    length = ctx.protocol.register_length("SCRATCH")
    rng = np.random.default_rng(ctx.env.config.injection.seed)

    if not _select_clean(ctx, "SCRATCH"):
        return
    previous = None    # unknown until one clean write lands
    for _ in range(count):
        if ctx.cancelled:
            return
        word = int(rng.integers(0, 1 << length))
        result = ctx.run(DataScan(data=word, bit_length=length), expect_out=previous)
        if result.fault is not None:
            # Recovery may have reset the IR, and the register content is unknown
            if not _select_clean(ctx, "SCRATCH"):
                return
            previous = None
            continue
        ctx.check(result.passed, f"clean transaction {result.transaction.id} failed")
        ctx.check(result.matched is True, f"clean transaction {result.transaction.id} unmatched")
        previous = word


@scenario("error_injection")
async def error_injection(ctx, count=50):
    """
    Loop random words through SCRATCH with the injector active. Clean
    transactions must pass and match; faulted ones are tallied by the env.
    Runs with the TAP held exclusively.
    """
    await ctx.exclusive(_injection_loop, count)


@scenario("compliance")
async def compliance(ctx):
    """Probe every registered instruction with its declared register length."""
    for name in sorted(ctx.protocol.instructions):
        result = await ctx.execute(ComplianceProbe(instruction=name))
        ctx.check(result.compliance.compliant,
                  f"{name}: {result.compliance.violation.message if result.compliance.violation else ''}")
        ctx.check(result.transaction.ok, f"{name}: {result.transaction.error}")
