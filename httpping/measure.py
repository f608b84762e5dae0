"""Sentinel-aware durations and named-span timers.

A :class:`Measure` is a signed duration in nanoseconds.  A handful of values
at the very bottom of the 64-bit range are reserved as sentinels meaning
"this span was never recorded", which lets optional spans (TLS on a plaintext
connection, DNS on a reused socket) flow through sums and averages without
being mistaken for a zero-length phase.

Timers are fed by lifecycle hooks which may fire more than once for the same
probe (retried dials, HTTP/2 connection init followed by the first request).
``start()`` therefore keeps the earliest timestamp and ``stop()`` the latest.
"""

from __future__ import annotations

import enum
import math
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

NANOSECOND = 1
MICROSECOND = 1_000 * NANOSECOND
MILLISECOND = 1_000 * MICROSECOND
SECOND = 1_000 * MILLISECOND

_INVALID = -(1 << 63) + 10


@dataclass(frozen=True, order=True)
class Measure:
    """A duration in nanoseconds, possibly one of the reserved sentinels."""

    nanos: int = 0

    def is_valid(self) -> bool:
        """True unless the value is one of the reserved sentinels.

        A valid measure may still be negative: it is the difference between
        two timestamps, nothing more.
        """
        return self.nanos > _INVALID

    def is_success(self) -> bool:
        """True if the measure is valid and non-negative."""
        return self.nanos >= 0

    def sum_if_valid(self, other: Measure) -> Measure:
        """Add *other* to this measure, ignoring whichever side is invalid.

        Both valid gives the arithmetic sum, exactly one valid gives that one,
        neither valid gives an invalid sentinel back.
        """
        if self.is_valid():
            if other.is_valid():
                return Measure(self.nanos + other.nanos)
            return self
        return other

    def divide(self, n: int) -> Measure:
        """Integer division (truncating toward zero); sentinels pass through."""
        if not self.is_valid():
            return self
        quotient = abs(self.nanos) // abs(n)
        if (self.nanos < 0) != (n < 0):
            quotient = -quotient
        return Measure(quotient)

    def to_float(self, unit: int = MILLISECOND) -> float:
        """Express the measure in *unit*; NaN for sentinels."""
        if not self.is_valid():
            return math.nan
        return self.nanos / unit

    def __add__(self, other: Measure) -> Measure:
        return Measure(self.nanos + other.nanos)

    def __sub__(self, other: Measure) -> Measure:
        return Measure(self.nanos - other.nanos)

    @classmethod
    def from_seconds(cls, seconds: float) -> Measure:
        return cls(int(round(seconds * SECOND)))


MEASURE_NOT_STARTED = Measure(_INVALID)
MEASURE_NOT_STOPPED = Measure(_INVALID - 1)
MEASURE_NOT_INITIALIZED = Measure(_INVALID - 2)


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------

class TimerType(enum.Enum):
    """The spans recorded for one probe."""

    TOTAL = "total"
    CONN = "conn"
    DNS = "dns"
    TCP = "tcp"
    TLS = "tls"
    QUIC = "quic"
    REQ = "req"
    WAIT = "wait"
    RESP = "resp"
    REQ_AND_WAIT = "req_and_wait"


class Timer:
    """A start/stop span, idempotent under duplicate or out-of-order firing."""

    __slots__ = ("start_time", "stop_time")

    def __init__(self) -> None:
        self.start_time: float = math.inf
        self.stop_time: float = -math.inf

    def start(self) -> None:
        ts = time.perf_counter_ns()
        if ts < self.start_time:
            self.start_time = ts

    def start_force(self) -> None:
        self.start_time = time.perf_counter_ns()

    def stop(self) -> None:
        ts = time.perf_counter_ns()
        if ts > self.stop_time:
            self.stop_time = ts

    @property
    def started(self) -> bool:
        return self.start_time != math.inf

    @property
    def stopped(self) -> bool:
        return self.stop_time != -math.inf

    def duration(self) -> int:
        """Nanoseconds between start and stop; only meaningful once both fired."""
        return int(self.stop_time - self.start_time)

    def measure(self) -> Measure:
        if not self.started and not self.stopped:
            return MEASURE_NOT_INITIALIZED
        if not self.started:
            return MEASURE_NOT_STARTED
        if not self.stopped:
            return MEASURE_NOT_STOPPED
        return Measure(self.duration())


class MeasuresCollection:
    """Read-only mapping of span kind to :class:`Measure`."""

    def __init__(self, measures: Mapping[TimerType, Measure] | None = None) -> None:
        self._measures = MappingProxyType(dict(measures or {}))

    def get(self, timer_type: TimerType) -> Measure:
        return self._measures.get(timer_type, MEASURE_NOT_INITIALIZED)

    def items(self):
        return self._measures.items()

    def __contains__(self, timer_type: object) -> bool:
        return timer_type in self._measures

    def __len__(self) -> int:
        return len(self._measures)

    def __repr__(self) -> str:
        inner = ", ".join(
            f"{k.value}={v.to_float(MILLISECOND):.3f}ms" for k, v in self._measures.items()
        )
        return f"MeasuresCollection({inner})"


class TimerRegistry:
    """Lazily-created timers for one probe.  Never shared between probes."""

    def __init__(self) -> None:
        self._timers: dict[TimerType, Timer] = {}

    def get(self, timer_type: TimerType) -> Timer:
        timer = self._timers.get(timer_type)
        if timer is None:
            timer = self._timers[timer_type] = Timer()
        return timer

    def measure(self) -> MeasuresCollection:
        return MeasuresCollection({k: t.measure() for k, t in self._timers.items()})
