"""
Source adapter contract.

An adapter is a value, not a subclass: a name, a ``fetch`` coroutine
that pulls one bounded window, a ``parse`` function that turns the raw
payload into candidate dicts, and the provider's limits. The fetcher and
the runner only ever see this contract.

Candidate shape produced by ``parse``:
    {symbol, timestamp, open?, high?, low?, close?, adjusted?, volume?, value?}
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from models.base import Granularity, SeriesKind


class _NoData:
    """Sentinel returned by ``fetch`` when a window holds no data"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_DATA"

    def __bool__(self) -> bool:
        return False


NO_DATA = _NoData()


@dataclass(frozen=True)
class SeriesSpec:
    """Read-only view of a series handed to adapters"""

    symbol: str
    granularity: Granularity
    kind: SeriesKind
    source_id: str
    since: Optional[date] = None

    @classmethod
    def from_model(cls, series) -> "SeriesSpec":
        return cls(
            symbol=series.symbol,
            granularity=Granularity(series.granularity),
            kind=SeriesKind(series.kind),
            source_id=series.source_id,
            since=series.since,
        )


@dataclass(frozen=True)
class ProviderLimits:
    """
    Provider metadata used for chunk sizing and pacing.

    Attributes:
        max_items_per_request: Hard per-request item limit
        granularities: Supported granularities
        history_start: Earliest date the provider has data for
        safety_factor: Share of the hard limit targeted per window
        request_delay: Seconds slept between consecutive sub-requests
        request_timeout: Read timeout of one sub-request, in seconds
        shrink_ladder: Known-good window widths per granularity, tried
            in descending order when the provider refuses a window
    """

    max_items_per_request: int
    granularities: FrozenSet[Granularity]
    history_start: datetime
    safety_factor: float = 0.95
    request_delay: float = 0.5
    request_timeout: float = 30.0
    shrink_ladder: Mapping[Granularity, Tuple[timedelta, ...]] = field(default_factory=dict)

    def supports(self, granularity: Granularity) -> bool:
        return granularity in self.granularities

    def ladder_for(self, granularity: Granularity) -> Tuple[timedelta, ...]:
        return tuple(self.shrink_ladder.get(granularity, ()))

    def floor_for(self, series: SeriesSpec) -> datetime:
        """Historical floor, honouring a per-series override"""
        if series.since is not None:
            return datetime(series.since.year, series.since.month, series.since.day)
        return self.history_start


FetchFn = Callable[[SeriesSpec, Any], Awaitable[Any]]
ParseFn = Callable[[SeriesSpec, Any], List[Dict[str, Any]]]


@dataclass(frozen=True)
class SourceAdapter:
    """
    One provider behind the fetch/parse contract.

    ``fetch(series, window)`` returns a raw payload or ``NO_DATA`` and
    raises the ``core.exceptions`` fetch taxonomy on failure.
    ``parse(series, payload)`` returns candidate dicts.
    """

    name: str
    fetch: FetchFn
    parse: ParseFn
    limits: ProviderLimits
