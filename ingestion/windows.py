"""
Fetch window planning and incremental range computation.

A fetch window is a half-open sub-range [start, end) of the requested
range, sized so that the estimated number of items stays within a
provider's per-request limit. The helpers work on any ordered axis
where ``start + width`` is defined: datetimes with timedelta widths, or
integer sequence ids with integer widths.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence

import pandas as pd

from models.base import Granularity


@dataclass(frozen=True)
class FetchWindow:
    """Half-open sub-range [start, end) with its estimated item count"""

    start: Any
    end: Any
    estimated_item_count: int

    def __str__(self) -> str:
        return f"[{_fmt(self.start)}, {_fmt(self.end)}) ~{self.estimated_item_count} items"


def _fmt(value: Any) -> str:
    return value.isoformat() if isinstance(value, datetime) else str(value)


def estimate_items(start: Any, end: Any, spacing: Any) -> int:
    """Upper estimate of the items between start and end for a given spacing"""
    if end <= start:
        return 0
    return math.ceil((end - start) / spacing)


def chunk_width(limit: int, spacing: Any, safety_factor: float = 0.95) -> Any:
    """
    Widest window whose estimated item count stays within ``limit``.

    The target count is ``floor(limit * safety_factor)``, clamped to
    ``[1, limit]``, so the hard limit is never exceeded.
    """
    if limit < 1:
        raise ValueError(f"limit must be at least 1, got {limit}")
    if not 0 < safety_factor <= 1:
        raise ValueError(f"safety_factor must be in (0, 1], got {safety_factor}")

    target = min(limit, max(1, math.floor(limit * safety_factor)))
    return spacing * target


def next_window(cursor: Any, end: Any, width: Any, spacing: Any) -> FetchWindow:
    """Window starting at ``cursor``, clipped to ``end``"""
    # Clip before adding: wide windows can run past the largest datetime
    window_end = end if end - cursor <= width else cursor + width
    return FetchWindow(cursor, window_end, estimate_items(cursor, window_end, spacing))


def plan_windows(start: Any, end: Any, width: Any, spacing: Any) -> List[FetchWindow]:
    """
    Partition [start, end) into consecutive windows of at most ``width``.

    Windows are increasing, non-overlapping and leave no gaps.
    """
    if not width > width * 0:
        raise ValueError(f"width must be positive, got {width}")

    windows = []
    cursor = start
    while cursor < end:
        window = next_window(cursor, end, width, spacing)
        windows.append(window)
        cursor = window.end
    return windows


def shrink_width(width: Any, spacing: Any, ladder: Sequence[Any] = ()) -> Optional[Any]:
    """
    Next smaller window width after a provider refused ``width``.

    Steps down the provider's ladder of known-good sizes when one is
    given, otherwise halves. Returns None when no width holding at
    least one item is left.
    """
    smaller = [size for size in sorted(ladder, reverse=True) if size < width]
    if ladder:
        candidate = smaller[0] if smaller else None
    else:
        candidate = width / 2 if isinstance(width, timedelta) else width // 2

    if candidate is None or candidate < spacing:
        return None
    return candidate


def next_fetch_start(
    latest: Optional[datetime],
    granularity: Granularity,
    floor: datetime
) -> datetime:
    """
    Start of the next fetch range.

    One granularity unit after the latest stored observation, or the
    historical floor when nothing is stored yet.
    """
    if latest is None:
        return floor
    return (pd.Timestamp(latest) + granularity.step()).to_pydatetime()


def is_up_to_date(latest: Optional[datetime], granularity: Granularity, now: datetime) -> bool:
    """
    Whether no new observation is expected yet.

    Periods that only publish after they close (months, quarters,
    years) are up to date when the previous period is stored.
    """
    if latest is None:
        return False

    current = pd.Timestamp(now)
    latest = pd.Timestamp(latest)

    if granularity == Granularity.M1:
        return latest >= current.floor("min")
    if granularity == Granularity.H1:
        return latest >= current.floor("h")
    if granularity == Granularity.D1:
        return latest.normalize() >= current.normalize() - pd.Timedelta(days=1)
    if granularity == Granularity.W1:
        return latest >= current.normalize() - pd.Timedelta(days=current.dayofweek)
    if granularity == Granularity.MN1:
        month_start = current.normalize().replace(day=1)
        return latest >= month_start - pd.DateOffset(months=1)
    if granularity == Granularity.Q:
        quarter_start = current.normalize().replace(month=3 * ((current.month - 1) // 3) + 1, day=1)
        return latest >= quarter_start - pd.DateOffset(months=3)
    if granularity == Granularity.Y:
        year_start = current.normalize().replace(month=1, day=1)
        return latest >= year_start - pd.DateOffset(years=1)
    return False
