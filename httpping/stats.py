"""Statistical aggregation for latency measurements."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from httpping.measure import MEASURE_NOT_INITIALIZED, MILLISECOND, Measure


@dataclass(frozen=True)
class PingStats:
    """min / average / max / population stddev over successful latencies."""

    min: Measure = MEASURE_NOT_INITIALIZED
    average: Measure = MEASURE_NOT_INITIALIZED
    max: Measure = MEASURE_NOT_INITIALIZED
    stddev: Measure = MEASURE_NOT_INITIALIZED

    @classmethod
    def from_latencies(cls, measures: Iterable[Measure]) -> PingStats:
        successes = [m for m in measures if m.is_success()]
        if not successes:
            return cls()

        n = len(successes)
        average = sum(m.nanos for m in successes) / n
        variance = sum((m.nanos - average) ** 2 for m in successes) / n

        return cls(
            min=min(successes),
            average=Measure(int(average)),
            max=max(successes),
            stddev=Measure(int(math.sqrt(variance))),
        )

    def __str__(self) -> str:
        def ms(m: Measure) -> float:
            return m.to_float(MILLISECOND)

        return (
            "round-trip min/avg/max/stddev = "
            f"{ms(self.min):.3f}/{ms(self.average):.3f}/{ms(self.max):.3f}/{ms(self.stddev):.3f} ms"
        )


# ---------------------------------------------------------------------------
# Weighted observations (per-phase summaries)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Observation:
    value: float
    weight: float = 1.0


@dataclass
class LatencyStats:
    """Aggregated statistics for a timing phase."""

    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    median: float = 0.0
    p95: float = 0.0
    stdev: float = 0.0


def compute_stats(observations: Sequence[Observation]) -> LatencyStats:
    """Compute a weighted statistical summary of *observations*.

    NaN values (phases that were not recorded for a given probe) are
    skipped.  Median and p95 ignore the weights.
    """
    obs = [o for o in observations if not math.isnan(o.value)]
    total_weight = sum(o.weight for o in obs)
    if not obs or total_weight <= 0:
        return LatencyStats()

    avg = sum(o.value * o.weight for o in obs) / total_weight
    variance = sum(o.weight * (o.value - avg) ** 2 for o in obs) / total_weight

    sorted_vals = sorted(o.value for o in obs)
    return LatencyStats(
        min=sorted_vals[0],
        max=sorted_vals[-1],
        avg=round(avg, 3),
        median=round(_percentile(sorted_vals, 50), 3),
        p95=round(_percentile(sorted_vals, 95), 3),
        stdev=round(math.sqrt(variance), 3),
    )


def _percentile(sorted_vals: list[float], pct: float) -> float:
    """Compute the given percentile from pre-sorted values."""
    n = len(sorted_vals)
    if n == 1:
        return sorted_vals[0]
    k = (pct / 100) * (n - 1)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_vals[int(k)]
    return sorted_vals[f] * (c - k) + sorted_vals[c] * (k - f)
