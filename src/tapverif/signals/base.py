from __future__ import annotations

import contextlib
from abc import ABC, abstractmethod
from typing import Iterator, NamedTuple

import structlog

logger = structlog.get_logger(system="tapverif.signals")


class ClockEdge(NamedTuple):
    """Timestamps (ns, host time base) of one completed TCK cycle."""
    drive: float      # when the last TMS/TDI change actually reached the pins
    rise: float
    fall: float
    tdo_valid: float  # when TDO settled after the falling edge


class SignalInterface(ABC):
    """
    Abstract interface to the JTAG lines (TCK, TMS, TDI, TDO, TRST).
    The transaction engine depends only on this contract.

    Implementations own the time base: advance_clock() blocks until one full
    TCK cycle has elapsed and reports when its edges happened.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Returns the interface name (e.g., 'sim', 'ftdi')."""
        ...

    @abstractmethod
    def set_mode_select(self, bit: int) -> None: ...
    @abstractmethod
    def set_data_in(self, bit: int) -> None: ...
    @abstractmethod
    def get_data_out(self) -> int: ...

    @abstractmethod
    def assert_reset(self) -> None:
        """Drive TRST active (low)."""
    @abstractmethod
    def deassert_reset(self) -> None: ...

    @abstractmethod
    def advance_clock(self) -> ClockEdge:
        """One full TCK cycle: low phase, rising edge, high phase, falling edge."""

    @abstractmethod
    def now(self) -> float:
        """Current time in ns."""

    @property
    def pin_count(self) -> int:
        return 5

    @property
    def has_reset_line(self) -> bool:
        """False when TRST is not wired; hard resets then fall back to TMS."""
        return True

    @contextlib.contextmanager
    def perturbed(self, **params) -> Iterator[None]:
        """
        Temporarily distort clock/timing behaviour (fault injection).
        Interfaces that cannot do this leave the lines untouched.
        """
        if params:
            logger.warning("perturbation_unsupported", interface=self.name, params=sorted(params))
        yield
