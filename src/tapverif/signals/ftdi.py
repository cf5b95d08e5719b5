"""
TapVerif Silicon Bridge - Physical Hardware Interface
=====================================================
Bit-banged JTAG over an FTDI GPIO port (Olimex / FT2232 style dongles), so
the same transaction engine that drives the simulated target can drive real
silicon.

Pin map (MPSSE JTAG layout on ADBUS):
    AD0 = TCK, AD1 = TDI, AD2 = TDO (input), AD3 = TMS, AD4 = TRST_N
"""

from __future__ import annotations

import time

import structlog
from pyftdi.ftdi import Ftdi
from pyftdi.gpio import GpioAsyncController

from tapverif.signals.base import ClockEdge, SignalInterface

logger = structlog.get_logger(system="tapverif.ftdi")

TCK = 1 << 0
TDI = 1 << 1
TDO = 1 << 2
TMS = 1 << 3
TRST = 1 << 4

OUTPUTS = TCK | TDI | TMS | TRST


class FtdiSignalInterface(SignalInterface):
    """
    Driver for FTDI JTAG dongles in asynchronous bit-bang mode.
    Every line change is one USB write, so this is slow but exact.
    """
    def __init__(self, url='ftdi://ftdi:2232h/1', frequency=100_000, use_trst=True):
        """
        url: FTDI device URL.
        frequency: bit-bang rate; one TCK cycle takes two writes.
        """
        self.url = url
        self.frequency = frequency
        self.use_trst = use_trst
        self.gpio = None
        self._out = TMS | TRST   # TCK low, TMS high, TRST released
        self._t0 = time.perf_counter_ns()
        self._drive = 0.0

    @property
    def name(self) -> str:
        return "ftdi"

    @property
    def pin_count(self) -> int:
        return 5 if self.use_trst else 4

    @property
    def has_reset_line(self) -> bool:
        return self.use_trst

    def connect(self):
        """Open the dongle and park the lines."""
        gpio = GpioAsyncController()
        gpio.configure(self.url, direction=OUTPUTS, frequency=self.frequency)
        self.gpio = gpio
        self._write()
        logger.info("ftdi_connected", url=self.url, frequency=self.frequency)

    def disconnect(self):
        if self.gpio is not None:
            self.gpio.close()
        self.gpio = None

    def enumerate_devices(self):
        """
        List all connected FTDI devices.
        Useful for finding the correct URL.
        """
        devices = Ftdi.list_devices()
        return [f"ftdi://{desc.vid:#06x}:{desc.pid:#06x}:{desc.sn}/{interfaces}" for desc, interfaces in devices]

    # ---- SignalInterface ----

    def now(self) -> float:
        return float(time.perf_counter_ns() - self._t0)

    def set_mode_select(self, bit: int) -> None:
        self._set(TMS, bit)

    def set_data_in(self, bit: int) -> None:
        self._set(TDI, bit)

    def get_data_out(self) -> int:
        self._require()
        return 1 if self.gpio.read() & TDO else 0

    def assert_reset(self) -> None:
        if self.use_trst:
            self._set(TRST, 0)

    def deassert_reset(self) -> None:
        if self.use_trst:
            self._set(TRST, 1)

    def advance_clock(self) -> ClockEdge:
        self._require()
        self._out |= TCK
        self._write()
        rise = self.now()
        self._out &= ~TCK
        self._write()
        fall = self.now()
        # TDO is read back on demand; the write round trip bounds its settle time
        return ClockEdge(drive=self._drive, rise=rise, fall=fall, tdo_valid=self.now())

    # ---- helpers ----

    def _require(self):
        if self.gpio is None:
            raise RuntimeError("Not connected to hardware")

    def _set(self, line, bit):
        if bit:
            self._out |= line
        else:
            self._out &= ~line
        self._write()
        self._drive = self.now()

    def _write(self):
        self._require()
        self.gpio.write(self._out & OUTPUTS)
