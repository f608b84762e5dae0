"""Throughput window: request rate and average latency between two samples."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from httpping.measure import MILLISECOND, Measure


@dataclass(frozen=True)
class ThroughputSample:
    """What happened in the window between two calls to ``sample()``."""

    elapsed: float  # seconds
    count: int
    summed_latency: Measure = field(default_factory=Measure)

    @property
    def rate(self) -> float:
        """Completed requests per second."""
        if self.elapsed <= 0:
            return 0.0
        return self.count / self.elapsed

    def average_latency(self, unit: int = MILLISECOND) -> float:
        if self.count == 0:
            return float("nan")
        return self.summed_latency.to_float(unit) / self.count

    def __add__(self, other: ThroughputSample) -> ThroughputSample:
        return ThroughputSample(
            elapsed=self.elapsed + other.elapsed,
            count=self.count + other.count,
            summed_latency=self.summed_latency + other.summed_latency,
        )

    def __sub__(self, other: ThroughputSample) -> ThroughputSample:
        return ThroughputSample(
            elapsed=self.elapsed - other.elapsed,
            count=self.count - other.count,
            summed_latency=self.summed_latency - other.summed_latency,
        )

    def __str__(self) -> str:
        return f"{self.rate:.1f}"


class ThroughputWindow:
    """Accumulates request count and latency until the next ``sample()``.

    Meant to be sampled periodically by an external ticker; the window only
    remembers when it was last sampled.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._ts = clock()
        self._count = 0
        self._latency = Measure(0)

    def count(self, latency: Measure) -> None:
        self._count += 1
        self._latency = self._latency.sum_if_valid(latency)

    def sample(self) -> ThroughputSample:
        # No await between read and reset: atomic with respect to the loop.
        now = self._clock()
        result = ThroughputSample(
            elapsed=now - self._ts,
            count=self._count,
            summed_latency=self._latency,
        )
        self._ts = now
        self._count = 0
        self._latency = Measure(0)
        return result
