"""
FRED series observations adapter (univariate series).

The series ``source_id`` is the FRED series id, e.g. ``DGS10``. Missing
observations are published as ``"."`` and are skipped.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List
import httpx
from core.config import Settings
from core.exceptions import ConfigurationError
from ingestion.adapters import NO_DATA, ProviderLimits, SeriesSpec, SourceAdapter
from ingestion.extractors.http import get_json
from ingestion.windows import FetchWindow
from models.base import Granularity
import logging

logger = logging.getLogger(__name__)

BASE_URL = "https://api.stlouisfed.org/fred"

MISSING_VALUE = "."

LIMITS = ProviderLimits(
    max_items_per_request=100000,
    granularities=frozenset({
        Granularity.D1,
        Granularity.W1,
        Granularity.MN1,
        Granularity.Q,
        Granularity.Y,
    }),
    history_start=datetime(1900, 1, 1),
    request_delay=0.5,
    request_timeout=30.0,
)


def build(settings: Settings, client: httpx.AsyncClient, base_url: str = BASE_URL) -> SourceAdapter:
    """FRED adapter; the API key is checked when the first window is fetched"""
    api_key = settings.FRED_API_KEY

    async def fetch(series: SeriesSpec, window: FetchWindow) -> Any:
        if not api_key:
            raise ConfigurationError(
                "FRED API key is required",
                context={"setting": "FRED_API_KEY", "symbol": series.symbol}
            )

        first = window.start.date()
        # Observation dates are inclusive; the window end is not
        last = (window.end - timedelta(microseconds=1)).date()
        if last < first:
            return NO_DATA

        data = await get_json(
            client,
            f"{base_url}/series/observations",
            params={
                "series_id": series.source_id,
                "api_key": api_key,
                "file_type": "json",
                "observation_start": first.isoformat(),
                "observation_end": last.isoformat(),
            },
            timeout=LIMITS.request_timeout,
        )
        if not isinstance(data, dict) or not data.get("observations"):
            return NO_DATA
        return data

    def parse(series: SeriesSpec, payload: Any) -> List[Dict[str, Any]]:
        records = []
        for observation in payload.get("observations", []):
            value = observation.get("value")
            if value is None or value == MISSING_VALUE:
                continue
            records.append({
                "symbol": series.symbol,
                "timestamp": observation.get("date"),
                "value": value,
            })
        return records

    return SourceAdapter(name="fred", fetch=fetch, parse=parse, limits=LIMITS)
