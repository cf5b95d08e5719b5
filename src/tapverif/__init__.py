"""
TapVerif: JTAG (IEEE 1149.1) TAP protocol verification.
"""

from .tap import TapState, TAPController, route
from .transaction import (
    BoundaryScan, ComplianceProbe, DataScan, DebugAccess, FaultKind, InstructionLoad,
    OpKind, Reset, ScanMode, Transaction, TransactionSealed, TransactionStatus,
)
from .config import ConfigError, VerifConfig, build_config, load_config
from .engine import TransactionEngine, UnsupportedOperation
from .compliance import ProtocolChecker, ComplianceResult, ViolationKind
from .timing import TimingValidator, TimingSample, TimingViolation
from .faults import ErrorInjector
from .scoreboard import Scoreboard, MatchEvent, MatchOutcome
from .env import VerificationEnv, TransactionResult

__version__ = "0.1.0"
