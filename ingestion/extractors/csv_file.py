"""
Flat CSV file adapter (local path or URL), read with pandas.

Meant for daily history files such as CBOE's ``<SYMBOL>_History.csv``:
one header row, a date column and OHLC or single value columns. The
series ``source_id`` is the path or URL of the file. The whole file is
one request, so a fetch normally resolves to a single window.
"""

from datetime import datetime
from io import StringIO
from pathlib import Path
from typing import Any, Dict, List
import httpx
import pandas as pd
from core.config import Settings
from core.exceptions import ResourceNotFoundError
from ingestion.adapters import NO_DATA, ProviderLimits, SeriesSpec, SourceAdapter
from ingestion.extractors.http import get
from ingestion.windows import FetchWindow
from models.base import Granularity, SeriesKind
import logging

logger = logging.getLogger(__name__)

LIMITS = ProviderLimits(
    max_items_per_request=10_000_000,
    granularities=frozenset(Granularity),
    history_start=datetime(1990, 1, 1),
    safety_factor=1.0,
    request_delay=0.0,
    request_timeout=30.0,
)

# Source column (lowercased) -> candidate key
COLUMN_ALIASES = {
    "date": "timestamp",
    "datetime": "timestamp",
    "time": "timestamp",
    "timestamp": "timestamp",
    "open": "open",
    "high": "high",
    "low": "low",
    "close": "close",
    "adj close": "adjusted",
    "adj_close": "adjusted",
    "adjusted": "adjusted",
    "volume": "volume",
    "value": "value",
}


def _is_url(location: str) -> bool:
    return location.startswith("http://") or location.startswith("https://")


def read_frame(text: str) -> pd.DataFrame:
    """Parse CSV text into a frame with candidate column names"""
    df = pd.read_csv(StringIO(text), dtype=str, keep_default_na=False)
    df.columns = [str(c).strip().lower() for c in df.columns]
    return df.rename(columns={c: COLUMN_ALIASES[c] for c in df.columns if c in COLUMN_ALIASES})


def build(settings: Settings, client: httpx.AsyncClient) -> SourceAdapter:
    """CSV adapter; local files are read from disk, URLs through the shared client"""

    async def fetch(series: SeriesSpec, window: FetchWindow) -> Any:
        location = series.source_id
        if _is_url(location):
            response = await get(client, location, timeout=LIMITS.request_timeout)
            text = response.text
        else:
            path = Path(location)
            if not path.exists():
                raise ResourceNotFoundError(
                    f"Flat file not found: {location}",
                    context={"path": location, "symbol": series.symbol}
                )
            text = path.read_text()

        df = read_frame(text)
        if "timestamp" not in df.columns or df.empty:
            return NO_DATA

        stamps = pd.to_datetime(df["timestamp"], errors="coerce")
        df = df.assign(timestamp=[
            raw if pd.isna(stamp) else stamp.isoformat()
            for stamp, raw in zip(stamps, df["timestamp"])
        ])
        # Unparseable dates stay in so the loader rejects them with their row
        in_window = stamps.isna() | ((stamps >= window.start) & (stamps < window.end))
        df = df[in_window]
        if df.empty:
            return NO_DATA
        return df

    def parse(series: SeriesSpec, payload: Any) -> List[Dict[str, Any]]:
        df = payload
        if series.kind == SeriesKind.UNIVARIATE and "value" not in df.columns and "close" in df.columns:
            df = df.rename(columns={"close": "value"})

        keep = [c for c in df.columns if c in set(COLUMN_ALIASES.values())]
        records = df[keep].to_dict(orient="records")
        for record in records:
            record["symbol"] = series.symbol
        return records

    return SourceAdapter(name="csv_file", fetch=fetch, parse=parse, limits=LIMITS)
