"""
tests/test_measure.py
Sentinel-aware durations and span timers.
Run: pytest tests/test_measure.py -v
"""

import math

import pytest

from httpping.measure import (
    MEASURE_NOT_INITIALIZED,
    MEASURE_NOT_STARTED,
    MEASURE_NOT_STOPPED,
    MILLISECOND,
    SECOND,
    Measure,
    MeasuresCollection,
    Timer,
    TimerRegistry,
    TimerType,
)


# ── Measure ───────────────────────────────────────────────────────────────────

class TestMeasure:

    def test_sentinels_are_invalid(self):
        for sentinel in (MEASURE_NOT_STARTED, MEASURE_NOT_STOPPED, MEASURE_NOT_INITIALIZED):
            assert not sentinel.is_valid()
            assert not sentinel.is_success()

    def test_negative_is_valid_but_not_success(self):
        m = Measure(-5)
        assert m.is_valid()
        assert not m.is_success()

    def test_sum_if_valid_both_valid(self):
        assert Measure(3).sum_if_valid(Measure(4)) == Measure(7)

    def test_sum_if_valid_one_side_invalid(self):
        assert Measure(3).sum_if_valid(MEASURE_NOT_STARTED) == Measure(3)
        assert MEASURE_NOT_STARTED.sum_if_valid(Measure(4)) == Measure(4)

    def test_sum_if_valid_neither_valid(self):
        assert not MEASURE_NOT_STARTED.sum_if_valid(MEASURE_NOT_STOPPED).is_valid()

    def test_divide_truncates_toward_zero(self):
        assert Measure(7).divide(2) == Measure(3)
        assert Measure(-7).divide(2) == Measure(-3)

    def test_divide_keeps_sentinel(self):
        assert MEASURE_NOT_INITIALIZED.divide(3) == MEASURE_NOT_INITIALIZED

    def test_to_float(self):
        assert Measure(1_500_000).to_float(MILLISECOND) == pytest.approx(1.5)
        assert math.isnan(MEASURE_NOT_STOPPED.to_float(MILLISECOND))

    def test_ordering(self):
        assert Measure(1) < Measure(2)
        assert min([Measure(5), Measure(2), Measure(9)]) == Measure(2)

    def test_from_seconds(self):
        assert Measure.from_seconds(2) == Measure(2 * SECOND)


# ── Timer ─────────────────────────────────────────────────────────────────────

class TestTimer:

    def test_untouched_timer_is_not_initialized(self):
        assert Timer().measure() == MEASURE_NOT_INITIALIZED

    def test_only_started(self):
        t = Timer()
        t.start()
        assert t.measure() == MEASURE_NOT_STOPPED

    def test_only_stopped(self):
        t = Timer()
        t.stop()
        assert t.measure() == MEASURE_NOT_STARTED

    def test_start_keeps_earliest(self):
        t = Timer()
        t.start()
        first = t.start_time
        t.start()
        assert t.start_time == first

    def test_stop_keeps_latest(self):
        t = Timer()
        t.start()
        t.stop()
        first = t.stop_time
        t.stop()
        assert t.stop_time >= first

    def test_start_force_overwrites(self):
        t = Timer()
        t.start_time = 0
        t.start_force()
        assert t.start_time > 0

    def test_duration_non_negative(self):
        t = Timer()
        t.start()
        t.stop()
        m = t.measure()
        assert m.is_success()

    def test_out_of_order_start_after_stop(self):
        t = Timer()
        t.stop()
        t.start()
        # start happened later than stop: valid, but negative
        assert t.measure().is_valid()
        assert t.measure().nanos <= 0


# ── Registry ──────────────────────────────────────────────────────────────────

class TestTimerRegistry:

    def test_lazy_creation_returns_same_timer(self):
        reg = TimerRegistry()
        assert reg.get(TimerType.DNS) is reg.get(TimerType.DNS)

    def test_untouched_kind_is_not_initialized(self):
        reg = TimerRegistry()
        reg.get(TimerType.TOTAL).start()
        reg.get(TimerType.TOTAL).stop()
        measures = reg.measure()
        assert measures.get(TimerType.TOTAL).is_success()
        assert measures.get(TimerType.TLS) == MEASURE_NOT_INITIALIZED
        assert TimerType.TLS not in measures

    def test_collection_is_read_only(self):
        coll = MeasuresCollection({TimerType.TOTAL: Measure(1)})
        with pytest.raises(TypeError):
            coll._measures[TimerType.TOTAL] = Measure(2)
        assert len(coll) == 1
