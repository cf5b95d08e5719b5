"""
Shared fixtures: a default configuration, a simulated target, and an engine
or full environment built on top of them.
"""

import logging
import os

os.environ.setdefault("MPLBACKEND", "Agg")

import pytest
import structlog

from tapverif.config import InstructionDef, build_config
from tapverif.engine import TransactionEngine
from tapverif.env import VerificationEnv
from tapverif.signals.sim import SimulatedTarget
from tapverif.transaction import InstructionLoad, Transaction, TransactionStatus


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    # Keep developer TAPVERIF_* variables out of the tests
    for key in list(os.environ):
        if key.startswith("TAPVERIF_"):
            monkeypatch.delenv(key)


@pytest.fixture(autouse=True)
def _restore_logging():
    # The CLI installs a stderr handler bound to the capture of its own test
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def config():
    return build_config()


@pytest.fixture
def target(config):
    return SimulatedTarget(config.protocol, config.timing, config.target)


@pytest.fixture
def engine(config, target):
    return TransactionEngine(target, config.protocol, config.timing.clock_period_ns)


@pytest.fixture
def env(config):
    return VerificationEnv(config)


@pytest.fixture
def load():
    """load(protocol, "NAME") -> InstructionLoad for a registered instruction."""
    def make(protocol, name):
        return InstructionLoad(code=protocol.code_of(name), width=protocol.ir_width, name=name)
    return make


@pytest.fixture
def scratch_width():
    """Resize the SCRATCH register of a config in place."""
    def resize(config, width):
        config.protocol.instructions["SCRATCH"] = InstructionDef(code=0x9, register="scratch", length=width)
        return config
    return resize


@pytest.fixture
def make_txn():
    """Hand-built completed transaction, for checker/scoreboard tests."""
    def make(kind, path=(), status=TransactionStatus.SUCCESS, **fields):
        txn = Transaction(kind=kind)
        for name, value in fields.items():
            setattr(txn, name, value)
        txn.path = list(path)
        return txn.complete(status)
    return make
