"""
TapVerif Waveform Monitor
=========================
A recording proxy around any SignalInterface. Every line change and clock
edge is stored with its timestamp so a run can be plotted (matplotlib) or
dumped as a VCD file for GTKWave / Verdi.
"""

from __future__ import annotations

import contextlib
import datetime
from typing import Iterator

import matplotlib.pyplot as plt
import numpy as np
import structlog

from tapverif.signals.base import ClockEdge, SignalInterface

logger = structlog.get_logger(system="tapverif.monitor")

SIGNALS = ("tck", "tms", "tdi", "tdo", "trst_n")


class WaveformMonitor(SignalInterface):
    """
    Forwards every call to `inner` and samples the JTAG lines.
    history[name] is a list of (time_ns, level) changes.
    """
    def __init__(self, inner: SignalInterface):
        self.inner = inner
        self.history = {name: [] for name in SIGNALS}
        self._level = {name: None for name in SIGNALS}
        self.cycles = 0
        self._pending_tms = None
        self._pending_tdi = None
        t0 = inner.now()
        for name, level in (("tck", 0), ("tms", 1), ("tdi", 0), ("tdo", inner.get_data_out()), ("trst_n", 1)):
            self._record(name, t0, level)

    @property
    def name(self) -> str:
        return f"monitor({self.inner.name})"

    @property
    def pin_count(self) -> int:
        return self.inner.pin_count

    @property
    def has_reset_line(self) -> bool:
        return self.inner.has_reset_line

    # ---- SignalInterface ----

    def set_mode_select(self, bit: int) -> None:
        self.inner.set_mode_select(bit)
        self._pending_tms = int(bit) & 1

    def set_data_in(self, bit: int) -> None:
        self.inner.set_data_in(bit)
        self._pending_tdi = int(bit) & 1

    def get_data_out(self) -> int:
        return self.inner.get_data_out()

    def assert_reset(self) -> None:
        self.inner.assert_reset()
        self._record("trst_n", self.inner.now(), 0)

    def deassert_reset(self) -> None:
        self.inner.deassert_reset()
        self._record("trst_n", self.inner.now(), 1)

    def advance_clock(self) -> ClockEdge:
        edge = self.inner.advance_clock()
        # Line changes are only timestamped once the clock reports drive time
        if self._pending_tms is not None:
            self._record("tms", edge.drive, self._pending_tms)
        if self._pending_tdi is not None:
            self._record("tdi", edge.drive, self._pending_tdi)
        self._record("tck", edge.rise, 1)
        self._record("tck", edge.fall, 0)
        self._record("tdo", edge.tdo_valid, self.inner.get_data_out())
        self.cycles += 1
        return edge

    def now(self) -> float:
        return self.inner.now()

    @contextlib.contextmanager
    def perturbed(self, **params) -> Iterator[None]:
        with self.inner.perturbed(**params):
            yield

    # ---- recording ----

    def _record(self, name, t, level):
        if self._level[name] == level:
            return
        self._level[name] = level
        self.history[name].append((float(t), int(level)))

    def clear(self):
        """Drop the history but keep the current levels as the new start."""
        t0 = self.inner.now()
        for name in SIGNALS:
            level = self._level[name]
            self.history[name] = [(t0, level)] if level is not None else []

    # ---- output ----

    def plot(self, filename=None, show=True):
        """
        Digital waveform plot, one row per line.
        filename: save the figure there (PNG/SVG/PDF by extension).
        """
        fig, axes = plt.subplots(len(SIGNALS), 1, figsize=(12, 1.5 * len(SIGNALS)), sharex=True)
        end = self.inner.now()

        for ax, name in zip(axes, SIGNALS):
            changes = self.history[name]
            if not changes:
                continue
            times = np.array([t for t, _ in changes] + [max(end, changes[-1][0])])
            levels = np.array([v for _, v in changes] + [changes[-1][1]])
            ax.step(times, levels, where='post', color='#00AA00', linewidth=1.5)
            ax.set_yticks([0, 1])
            ax.set_ylim(-0.2, 1.2)
            ax.set_ylabel(name.upper(), rotation=0, ha='right', fontsize=10)
            ax.grid(axis='x', linestyle='--', alpha=0.5)

        axes[-1].set_xlabel("Time (ns)", fontsize=10)
        fig.suptitle(f"JTAG Waveform ({self.cycles} TCK cycles)", fontsize=14, fontweight='bold')
        plt.tight_layout(rect=[0, 0.03, 1, 0.95])
        if filename:
            fig.savefig(filename)
            logger.info("waveform_plotted", filename=str(filename))
        if show:
            plt.show()
        plt.close(fig)

    def export_vcd(self, filename="wave.vcd"):
        """
        Exports the recorded history as a VCD (Value Change Dump) file with a
        1ns timescale. Timestamps are rounded to whole nanoseconds.
        """
        symbols = {name: chr(33 + i) for i, name in enumerate(SIGNALS)}

        # Merge all changes into one time-ordered list
        changes = sorted(
            ((int(round(t)), order, name, level)
             for order, name in enumerate(SIGNALS)
             for t, level in self.history[name]),
            key=lambda change: change[:2],
        )

        with open(filename, "w") as f:
            date_str = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            f.write(f"$date\n  {date_str}\n$end\n")
            f.write("$version\n  TapVerif JTAG Monitor\n$end\n")
            f.write("$timescale\n  1ns\n$end\n")
            f.write("$scope module jtag $end\n")
            for name in SIGNALS:
                f.write(f"$var wire 1 {symbols[name]} {name} $end\n")
            f.write("$upscope $end\n")
            f.write("$enddefinitions $end\n")

            current = None
            for t, _, name, level in changes:
                if t != current:
                    f.write(f"#{t}\n")
                    current = t
                f.write(f"{level}{symbols[name]}\n")

        logger.info("vcd_exported", filename=str(filename), changes=len(changes))
        return len(changes)
