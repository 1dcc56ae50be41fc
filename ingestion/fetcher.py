"""
Chunked fetch engine with retry and adaptive window sizing.

Decomposes a requested range into provider-sized windows and fetches
them strictly one at a time:

- Window width comes from the provider's per-request limit and the
  granularity's density, with a safety margin below the hard limit
- A "window too large" refusal shrinks the width and retries the same
  start; data is never dropped to fit a limit
- Rate limiting backs off linearly from a long base (15s/20s/25s)
- Other transient errors back off exponentially (2s/4s/8s)
- Non-retryable errors (authentication, configuration) are fatal at once
- A window that exhausts its attempts either fails the fetch or is
  recorded as a gap, depending on the configured policy
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from core.exceptions import (
    ChunkFetchError,
    ConfigurationError,
    NonRetryableError,
    RateLimitError,
    WindowTooLargeError,
)
from ingestion.adapters import NO_DATA, SeriesSpec, SourceAdapter
from ingestion.journal import RunJournal
from ingestion.windows import FetchWindow, chunk_width, next_window, shrink_width
import logging

logger = logging.getLogger(__name__)

FAIL = "fail"
SKIP = "skip"
CHUNK_FAILURE_POLICIES = (FAIL, SKIP)


@dataclass
class FetchResult:
    """Eagerly collected outcome of a fetch"""

    records: List[Dict[str, Any]] = field(default_factory=list)
    windows: List[FetchWindow] = field(default_factory=list)
    gaps: List[FetchWindow] = field(default_factory=list)


class ChunkedFetcher:
    """
    Fetch a range through a source adapter, one bounded window at a time.

    Attributes:
        max_attempts: Attempts per window for retryable errors (default: 3)
        backoff_base: Base of the exponential backoff in seconds (default: 2.0)
        rate_limit_backoff: First rate-limit backoff in seconds (default: 15.0)
        rate_limit_step: Added per further rate-limit attempt (default: 5.0)
        on_chunk_failure: "fail" to abort the fetch when a window exhausts
            its attempts, "skip" to record a gap and continue
    """

    def __init__(
        self,
        adapter: SourceAdapter,
        journal: Optional[RunJournal] = None,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        rate_limit_backoff: float = 15.0,
        rate_limit_step: float = 5.0,
        on_chunk_failure: str = FAIL,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        if max_attempts < 1:
            raise ConfigurationError(
                "max_attempts must be at least 1",
                context={"max_attempts": max_attempts}
            )
        if on_chunk_failure not in CHUNK_FAILURE_POLICIES:
            raise ConfigurationError(
                f"Unknown chunk failure policy: {on_chunk_failure}",
                context={"allowed": ", ".join(CHUNK_FAILURE_POLICIES)}
            )

        self.adapter = adapter
        self.journal = journal
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.rate_limit_backoff = rate_limit_backoff
        self.rate_limit_step = rate_limit_step
        self.on_chunk_failure = on_chunk_failure
        self.sleep = sleep

    async def fetch(self, series: SeriesSpec, start: datetime, end: datetime) -> FetchResult:
        """Fetch the whole range eagerly"""
        result = FetchResult()
        async for window, records in self.iter_chunks(series, start, end, gaps=result.gaps):
            result.windows.append(window)
            result.records.extend(records)
        return result

    async def iter_chunks(
        self,
        series: SeriesSpec,
        start: datetime,
        end: datetime,
        gaps: Optional[List[FetchWindow]] = None
    ) -> AsyncIterator[Tuple[FetchWindow, List[Dict[str, Any]]]]:
        """
        Yield ``(window, records)`` in increasing range order.

        The yielded windows partition [start, end) exactly. Records are
        deduplicated by identity key across windows, first occurrence wins.
        Skipped windows are yielded with no records and appended to ``gaps``.
        """
        limits = self.adapter.limits
        if not limits.supports(series.granularity):
            raise ConfigurationError(
                f"{self.adapter.name} does not support granularity {series.granularity.value}",
                context={"source": self.adapter.name, "symbol": series.symbol}
            )

        spacing = series.granularity.min_spacing()
        width = chunk_width(limits.max_items_per_request, spacing, limits.safety_factor)
        ladder = limits.ladder_for(series.granularity)
        seen: Set[Tuple[Any, ...]] = set()

        logger.info(
            f"Fetching {series.symbol} {series.granularity.value} from {self.adapter.name}: "
            f"[{start.isoformat()}, {end.isoformat()}) in windows of {width}"
        )

        cursor = start
        first = True
        while cursor < end:
            if not first and limits.request_delay:
                await self.sleep(limits.request_delay)
            first = False

            try:
                window, records, width = await self._fetch_window(series, cursor, end, width, spacing, ladder)
            except ChunkFetchError as e:
                if self.on_chunk_failure == FAIL:
                    raise
                window = e.window
                await self._log(
                    "warn",
                    f"Skipping window {window} after exhausted attempts; data gap left",
                    source=self.adapter.name,
                    window_start=window.start,
                    window_end=window.end,
                    error=str(e.original_exception or e.message),
                )
                if gaps is not None:
                    gaps.append(window)
                yield window, []
                cursor = window.end
                continue

            unique = []
            for record in records:
                key = self._identity(series, record)
                if key[-1] is None:
                    unique.append(record)
                    continue
                if key in seen:
                    continue
                seen.add(key)
                unique.append(record)

            if len(unique) < len(records):
                logger.debug(f"Dropped {len(records) - len(unique)} overlapping records in {window}")

            yield window, unique
            cursor = window.end

    async def _fetch_window(
        self,
        series: SeriesSpec,
        cursor: datetime,
        end: datetime,
        width: Any,
        spacing: Any,
        ladder: Tuple[Any, ...]
    ) -> Tuple[FetchWindow, List[Dict[str, Any]], Any]:
        """Fetch the window starting at ``cursor``; returns it with the width that worked"""
        attempt = 1

        while True:
            window = next_window(cursor, end, width, spacing)

            try:
                payload = await self.adapter.fetch(series, window)

            except NonRetryableError:
                raise

            except WindowTooLargeError as e:
                smaller = shrink_width(width, spacing, ladder)
                if smaller is None:
                    raise ChunkFetchError(
                        f"Provider refused window {window} and it cannot shrink further",
                        context={"source": self.adapter.name, "symbol": series.symbol},
                        original_exception=e,
                        window=window,
                    )
                await self._log(
                    "warn",
                    f"Window {window} too large; shrinking width {width} -> {smaller}",
                    source=self.adapter.name,
                    window_start=window.start,
                    window_end=window.end,
                )
                width = smaller
                continue

            except RateLimitError as e:
                delay = e.retry_after or self.rate_limit_backoff + self.rate_limit_step * (attempt - 1)
                last_error: Exception = e

            except Exception as e:
                delay = self.backoff_base * 2 ** (attempt - 1)
                last_error = e

            else:
                if payload is NO_DATA:
                    await self._log("info", f"No data for window {window}", source=self.adapter.name)
                    return window, [], width
                return window, self.adapter.parse(series, payload), width

            if attempt >= self.max_attempts:
                raise ChunkFetchError(
                    f"Window {window} failed after {attempt} attempts",
                    context={"source": self.adapter.name, "symbol": series.symbol, "attempts": attempt},
                    original_exception=last_error,
                    window=window,
                )

            await self._log(
                "warn",
                f"Attempt {attempt}/{self.max_attempts} for window {window} failed "
                f"({type(last_error).__name__}); retrying in {delay}s",
                source=self.adapter.name,
                window_start=window.start,
                window_end=window.end,
                attempt=attempt,
                backoff_seconds=delay,
                cause=str(last_error),
            )
            await self.sleep(delay)
            attempt += 1

    @staticmethod
    def _identity(series: SeriesSpec, record: Dict[str, Any]) -> Tuple[Any, ...]:
        symbol = str(record.get("symbol") or series.symbol).strip().upper()
        return (symbol, series.granularity, record.get("timestamp"))

    async def _log(self, level: str, message: str, **context: Any) -> None:
        if self.journal is not None:
            await getattr(self.journal, level)(message, **context)
        else:
            getattr(logger, "warning" if level == "warn" else level)(message)
