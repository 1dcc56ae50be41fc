"""
Coinbase Exchange candles adapter (aggregate series).

The public candles endpoint returns at most 300 buckets per request as
``[time, low, high, open, close, volume]`` rows, newest first. The
series ``source_id`` is the product id, e.g. ``BTC-USD``.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Tuple
import httpx
from core.config import Settings
from ingestion.adapters import NO_DATA, ProviderLimits, SeriesSpec, SourceAdapter
from ingestion.extractors.http import get_json
from ingestion.windows import FetchWindow
from models.base import Granularity
import logging

logger = logging.getLogger(__name__)

BASE_URL = "https://api.exchange.coinbase.com"

GRANULARITY_SECONDS = {
    Granularity.M1: 60,
    Granularity.H1: 3600,
    Granularity.D1: 86400,
}

LIMITS = ProviderLimits(
    max_items_per_request=300,
    granularities=frozenset(GRANULARITY_SECONDS),
    history_start=datetime(2016, 6, 1),
    safety_factor=0.967,  # 290 candles per window
    request_delay=0.5,
    request_timeout=30.0,
    shrink_ladder={
        Granularity.H1: (timedelta(days=7), timedelta(days=3), timedelta(days=1)),
        Granularity.D1: (timedelta(days=100), timedelta(days=50), timedelta(days=1)),
    },
)


# Position of each field in a candle row
CANDLE_COLUMNS = ("timestamp", "low", "high", "open", "close", "volume")


def _epoch(value: Any) -> Any:
    """Epoch seconds as int; anything else is kept for the loader to reject"""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return value


def _chronological(record: Dict[str, Any]) -> Tuple[int, int]:
    ts = record["timestamp"]
    if isinstance(ts, int) and not isinstance(ts, bool):
        return (0, ts)
    return (1, 0)


def _too_large(response: httpx.Response) -> bool:
    if response.status_code != 400:
        return False
    body = response.text.lower()
    return "granularity too small" in body or "exceeds 300" in body


def build(settings: Settings, client: httpx.AsyncClient, base_url: str = BASE_URL) -> SourceAdapter:
    """Coinbase adapter bound to a shared HTTP client"""

    async def fetch(series: SeriesSpec, window: FetchWindow) -> Any:
        seconds = GRANULARITY_SECONDS[series.granularity]
        # The endpoint's end bound is inclusive
        last = window.end - timedelta(seconds=1)
        params = {
            "start": window.start.isoformat(),
            "end": last.isoformat(),
            "granularity": seconds,
        }
        data = await get_json(
            client,
            f"{base_url}/products/{series.source_id}/candles",
            params=params,
            timeout=LIMITS.request_timeout,
            headers={"Accept": "application/json"},
            too_large=_too_large,
        )
        if not data:
            return NO_DATA
        return data

    def parse(series: SeriesSpec, payload: Any) -> List[Dict[str, Any]]:
        records = []
        for candle in payload:
            values = list(candle) if isinstance(candle, (list, tuple)) else []
            if len(values) < 5:
                # Passed on with what it has; the loader rejects it with its row
                logger.warning(f"Malformed candle for {series.symbol}: {candle!r}")
            record = {"symbol": series.symbol}
            for position, key in enumerate(CANDLE_COLUMNS):
                record[key] = values[position] if position < len(values) else None
            record["timestamp"] = _epoch(record["timestamp"])
            records.append(record)
        records.sort(key=_chronological)
        return records

    return SourceAdapter(name="coinbase", fetch=fetch, parse=parse, limits=LIMITS)
