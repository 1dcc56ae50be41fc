"""
Unit tests for fetch window planning and incremental range computation
"""

import math
import random
import pytest
from datetime import datetime, timedelta
from ingestion.windows import (
    FetchWindow,
    chunk_width,
    estimate_items,
    is_up_to_date,
    next_fetch_start,
    plan_windows,
    shrink_width,
)
from models.base import Granularity


class TestChunkWidth:
    """Window width from provider limit and density"""

    def test_hourly_width_with_safety_margin(self):
        width = chunk_width(300, timedelta(hours=1), 0.967)
        assert width == timedelta(hours=290)

    def test_daily_and_hourly_use_same_item_count(self):
        hourly = chunk_width(300, Granularity.H1.min_spacing(), 0.95)
        daily = chunk_width(300, Granularity.D1.min_spacing(), 0.95)
        assert hourly / Granularity.H1.min_spacing() == daily / Granularity.D1.min_spacing() == 285

    def test_small_limits_clamp_to_at_least_one_item(self):
        assert chunk_width(1, timedelta(days=1), 0.5) == timedelta(days=1)
        assert chunk_width(1, 1, 0.1) == 1

    @pytest.mark.parametrize("limit", [1, 2, 7, 99, 100, 290, 300, 1000])
    @pytest.mark.parametrize("safety", [0.5, 0.9, 0.95, 0.967, 1.0])
    def test_never_exceeds_hard_limit(self, limit, safety):
        spacing = timedelta(hours=1)
        width = chunk_width(limit, spacing, safety)
        assert math.ceil(width / spacing) <= limit

    @pytest.mark.parametrize("safety", [0, -0.1, 1.01])
    def test_rejects_invalid_safety_factor(self, safety):
        with pytest.raises(ValueError):
            chunk_width(100, timedelta(days=1), safety)

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            chunk_width(0, timedelta(days=1))


class TestPlanWindows:
    """Partitioning of a requested range"""

    def test_partitions_range_exactly(self):
        start = datetime(2024, 1, 1)
        end = datetime(2024, 1, 26)
        windows = plan_windows(start, end, timedelta(days=10), timedelta(days=1))

        assert windows == [
            FetchWindow(datetime(2024, 1, 1), datetime(2024, 1, 11), 10),
            FetchWindow(datetime(2024, 1, 11), datetime(2024, 1, 21), 10),
            FetchWindow(datetime(2024, 1, 21), datetime(2024, 1, 26), 5),
        ]

    def test_empty_range_has_no_windows(self):
        day = datetime(2024, 1, 1)
        assert plan_windows(day, day, timedelta(days=1), timedelta(days=1)) == []
        assert plan_windows(day, day - timedelta(days=3), timedelta(days=1), timedelta(days=1)) == []

    def test_integer_sequence_axis(self):
        windows = plan_windows(100, 351, 100, 1)
        assert [(w.start, w.end, w.estimated_item_count) for w in windows] == [
            (100, 200, 100),
            (200, 300, 100),
            (300, 351, 51),
        ]

    def test_width_reaching_past_datetime_max_is_clipped(self):
        start = datetime(1990, 1, 1)
        end = datetime(2024, 6, 1)
        width = chunk_width(10_000_000, timedelta(days=1), 1.0)

        windows = plan_windows(start, end, width, timedelta(days=1))

        assert windows == [FetchWindow(start, end, (end - start).days)]

    def test_rejects_non_positive_width(self):
        with pytest.raises(ValueError):
            plan_windows(datetime(2024, 1, 1), datetime(2024, 2, 1), timedelta(0), timedelta(days=1))

    def test_random_ranges_are_covered_without_gaps_or_overlaps(self):
        rng = random.Random(20240111)
        granularities = list(Granularity)

        for _ in range(300):
            granularity = rng.choice(granularities)
            spacing = granularity.min_spacing()
            start = datetime(2010, 1, 1) + timedelta(minutes=rng.randint(0, 5_000_000))
            end = start + timedelta(minutes=rng.randint(1, 3_000_000))
            limit = rng.randint(1, 1000)
            safety = rng.uniform(0.5, 1.0)

            width = chunk_width(limit, spacing, safety)
            windows = plan_windows(start, end, width, spacing)

            assert windows[0].start == start
            assert windows[-1].end == end
            for previous, current in zip(windows, windows[1:]):
                assert previous.end == current.start
                assert previous.start < previous.end
            for window in windows:
                assert window.estimated_item_count <= limit

    def test_random_integer_ranges_are_covered(self):
        rng = random.Random(7)

        for _ in range(300):
            start = rng.randint(-10_000, 10_000)
            end = start + rng.randint(1, 50_000)
            limit = rng.randint(1, 500)

            windows = plan_windows(start, end, chunk_width(limit, 1, 0.9), 1)

            covered = [(w.start, w.end) for w in windows]
            assert covered[0][0] == start
            assert covered[-1][1] == end
            assert all(a[1] == b[0] for a, b in zip(covered, covered[1:]))
            assert sum(w.estimated_item_count for w in windows) == end - start


class TestEstimateItems:

    def test_rounds_partial_units_up(self):
        assert estimate_items(datetime(2024, 1, 1), datetime(2024, 1, 2, 1), timedelta(days=1)) == 2

    def test_empty_range(self):
        assert estimate_items(5, 5, 1) == 0


class TestShrinkWidth:
    """Next smaller width after a provider refusal"""

    def test_steps_down_ladder(self):
        ladder = (timedelta(days=7), timedelta(days=3), timedelta(days=1))
        hour = timedelta(hours=1)

        assert shrink_width(timedelta(hours=290), hour, ladder) == timedelta(days=7)
        assert shrink_width(timedelta(days=7), hour, ladder) == timedelta(days=3)
        assert shrink_width(timedelta(days=3), hour, ladder) == timedelta(days=1)
        assert shrink_width(timedelta(days=1), hour, ladder) is None

    def test_halves_without_ladder(self):
        day = timedelta(days=1)
        assert shrink_width(timedelta(days=10), day) == timedelta(days=5)
        assert shrink_width(timedelta(days=2), day) == day
        assert shrink_width(timedelta(days=1), day) is None

    def test_halves_integer_widths(self):
        assert shrink_width(100, 1) == 50
        assert shrink_width(1, 1) is None

    def test_ladder_step_below_spacing_is_not_used(self):
        ladder = (timedelta(days=100), timedelta(days=50), timedelta(days=1))
        assert shrink_width(timedelta(days=50), timedelta(weeks=1), ladder) is None


class TestIncrementalStart:
    """Start of the next fetch from stored state"""

    def test_day_after_latest_stored_observation(self):
        floor = datetime(2016, 6, 1)
        start = next_fetch_start(datetime(2024, 1, 10), Granularity.D1, floor)
        assert start == datetime(2024, 1, 11)

    def test_floor_without_stored_data(self):
        floor = datetime(2016, 6, 1)
        assert next_fetch_start(None, Granularity.D1, floor) == floor

    def test_hour_after_latest_hourly_observation(self):
        start = next_fetch_start(datetime(2024, 1, 10, 23), Granularity.H1, datetime(2016, 6, 1))
        assert start == datetime(2024, 1, 11, 0)

    def test_calendar_month_step(self):
        start = next_fetch_start(datetime(2024, 1, 31), Granularity.MN1, datetime(2000, 1, 1))
        assert start == datetime(2024, 2, 29)


class TestUpToDate:
    """Whether a new observation can exist yet"""

    def test_nothing_stored_is_never_up_to_date(self):
        assert not is_up_to_date(None, Granularity.D1, datetime(2024, 1, 15))

    def test_daily_accepts_yesterday(self):
        now = datetime(2024, 1, 15, 12)
        assert is_up_to_date(datetime(2024, 1, 14), Granularity.D1, now)
        assert is_up_to_date(datetime(2024, 1, 15), Granularity.D1, now)
        assert not is_up_to_date(datetime(2024, 1, 13), Granularity.D1, now)

    def test_hourly_needs_current_hour(self):
        now = datetime(2024, 1, 15, 10, 30)
        assert is_up_to_date(datetime(2024, 1, 15, 10), Granularity.H1, now)
        assert not is_up_to_date(datetime(2024, 1, 15, 9), Granularity.H1, now)

    def test_weekly_needs_current_week(self):
        now = datetime(2024, 1, 17)  # Wednesday
        assert is_up_to_date(datetime(2024, 1, 15), Granularity.W1, now)
        assert not is_up_to_date(datetime(2024, 1, 8), Granularity.W1, now)

    def test_monthly_needs_previous_closed_month(self):
        now = datetime(2024, 3, 15)
        assert is_up_to_date(datetime(2024, 2, 1), Granularity.MN1, now)
        assert not is_up_to_date(datetime(2024, 1, 1), Granularity.MN1, now)

    def test_quarterly_and_yearly(self):
        now = datetime(2024, 5, 20)
        assert is_up_to_date(datetime(2024, 1, 1), Granularity.Q, now)
        assert not is_up_to_date(datetime(2023, 10, 1), Granularity.Q, now)
        assert is_up_to_date(datetime(2023, 1, 1), Granularity.Y, now)
        assert not is_up_to_date(datetime(2022, 1, 1), Granularity.Y, now)
