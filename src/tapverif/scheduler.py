"""
TapVerif Scenario Scheduler
===========================
Runs test scenarios concurrently with bounded parallelism.

- asyncio.Semaphore(max_concurrent) admits scenarios; the rest wait
- asyncio.wait_for applies the per-scenario timeout; a timed-out scenario is
  marked failed and its cancel event is set, so work still running in a
  worker thread stops before its next operation
- the synchronous environment runs in worker threads (asyncio.to_thread);
  the engine's wire lock keeps one transaction on the wire at a time
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import structlog

from tapverif.config import SchedulerConfig
from tapverif.env import NO_EXPECTATION, TransactionResult, VerificationEnv
from tapverif.transaction import Operation

logger = structlog.get_logger(system="tapverif.scheduler")

Scenario = Callable[["ScenarioContext"], Awaitable[None]]


class ScenarioCancelled(Exception):
    """The scenario timed out; no further operations may be driven for it."""


@dataclass
class ScenarioOutcome:
    name: str
    status: str = "passed"          # passed | failed | timeout | error
    duration_s: float = 0.0
    transactions: int = 0
    failures: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status == "passed"


class ScenarioContext:
    """Handle a scenario uses to drive the environment and record checks."""

    def __init__(self, env: VerificationEnv, name: str):
        self.env = env
        self.name = name
        self.results: list[TransactionResult] = []
        self.failures: list[str] = []
        # Set by the scheduler on timeout; worker threads poll it
        self.cancel_event = threading.Event()

    @property
    def protocol(self):
        return self.env.config.protocol

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def execute(self, op: Operation, expect_out=NO_EXPECTATION) -> TransactionResult:
        self._ensure_live()
        result = await asyncio.to_thread(self.env.execute, op, expect_out)
        self.results.append(result)
        return result

    def run(self, op: Operation, expect_out=NO_EXPECTATION) -> TransactionResult:
        """Synchronous execute, for code already running under exclusive()."""
        self._ensure_live()
        result = self.env.execute(op, expect_out)
        self.results.append(result)
        return result

    async def exclusive(self, fn, *args):
        """
        Run the synchronous fn(ctx, *args) in a worker thread while holding
        the wire lock, so no other scenario can touch the TAP in between.
        """
        def locked():
            with self.env.engine.wire_lock:
                return fn(self, *args)

        return await asyncio.to_thread(locked)

    async def execute_many(self, steps) -> list[TransactionResult]:
        """
        Run several operations back to back with nothing interleaved.
        steps: operations, or (operation, expect_out) pairs.
        """
        def run_all(ctx):
            out = []
            for step in steps:
                if ctx.cancelled:
                    break
                op, expect_out = step if isinstance(step, tuple) else (step, NO_EXPECTATION)
                out.append(ctx.run(op, expect_out))
            return out

        return await self.exclusive(run_all)

    def check(self, condition: bool, message: str) -> bool:
        if not condition:
            self.failures.append(message)
            logger.warning("scenario_check_failed", scenario=self.name, message=message)
        return bool(condition)

    def _ensure_live(self):
        if self.cancelled:
            raise ScenarioCancelled(f"scenario {self.name} was cancelled")


class ScenarioScheduler:
    def __init__(self, config: SchedulerConfig, env: VerificationEnv):
        self.config = config
        self.env = env
        self.in_flight = 0
        self.peak_in_flight = 0

    async def run(self, scenarios) -> list[ScenarioOutcome]:
        """
        scenarios: mapping or iterable of (name, async scenario function).
        Outcomes come back in submission order.
        """
        items = list(scenarios.items()) if isinstance(scenarios, dict) else list(scenarios)
        slots = asyncio.Semaphore(self.config.max_concurrent)
        return list(await asyncio.gather(*(self._run_one(slots, name, fn) for name, fn in items)))

    def run_sync(self, scenarios) -> list[ScenarioOutcome]:
        return asyncio.run(self.run(scenarios))

    async def _run_one(self, slots, name, fn: Scenario) -> ScenarioOutcome:
        async with slots:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            ctx = ScenarioContext(self.env, name)
            outcome = ScenarioOutcome(name)
            start = time.perf_counter()
            logger.info("scenario_started", scenario=name, in_flight=self.in_flight)
            try:
                await asyncio.wait_for(fn(ctx), timeout=self.config.scenario_timeout_s)
            except asyncio.TimeoutError:
                ctx.cancel_event.set()
                outcome.status = "timeout"
                outcome.error = f"timed out after {self.config.scenario_timeout_s}s"
                logger.warning("scenario_timeout", scenario=name, timeout_s=self.config.scenario_timeout_s)
            except Exception as e:
                # A broken scenario fails on its own; the run and its report go on
                outcome.status = "error"
                outcome.error = f"{type(e).__name__}: {e}"
                logger.exception("scenario_error", scenario=name)
            finally:
                self.in_flight -= 1

            outcome.duration_s = time.perf_counter() - start
            outcome.transactions = len(ctx.results)
            outcome.failures = list(ctx.failures)
            if outcome.status == "passed" and ctx.failures:
                outcome.status = "failed"
            logger.info("scenario_finished", scenario=name, status=outcome.status,
                        transactions=outcome.transactions, duration_s=round(outcome.duration_s, 4))
            return outcome
