# ============================================================================
# File: ingestion/runner.py
# Description: Composes adapters, fetcher, loader and stage machine per run
# ============================================================================
"""
Pipeline Runner - creates runs and drives them through the stage machine.

Stage implementations for a flat-file pipeline:

- START: remove downloaded files past the retention period
- FETCH: stream provider windows into ``run_<id>.csv`` (written to a
  ``.part`` file and atomically renamed); an existing file is reused,
  so a crash after the download never downloads again
- TRANSFORM: nothing (candidates are normalized during IMPORT)
- IMPORT: reconcile the file's rows against the store
- POST_PROCESSING: delete the file
- FINISH: summary
"""

import asyncio
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx
import pandas as pd
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import Settings, settings as default_settings
from core.exceptions import ConfigurationError, StageError
from ingestion.adapters import SeriesSpec, SourceAdapter
from ingestion.extractors import build_adapter
from ingestion.fetcher import ChunkedFetcher
from ingestion.loaders.store import TimeSeriesStore
from ingestion.loaders.timeseries_loader import TimeSeriesLoader
from ingestion.stages import NO_COUNTS, PipelineExecutor, StageContext, StageCounts, StageHandlers
from ingestion.transformers.normalizer import RecordNormalizer
from ingestion.windows import is_up_to_date, next_fetch_start
from models.base import RunStatus, SeriesKind, Stage
from models.pipeline import Pipeline
from models.pipeline_run import ACTIVE_STATUSES, PipelineRun
import logging

logger = logging.getLogger(__name__)

# Column layout of the downloaded flat file, per series kind
FILE_COLUMNS = {
    SeriesKind.AGGREGATE: ["symbol", "timestamp", "open", "high", "low", "close", "adjusted", "volume"],
    SeriesKind.UNIVARIATE: ["symbol", "timestamp", "value"],
}

# Header line + 1-based numbering
ROW_OFFSET = 2


class SeriesStages:
    """
    Stage handlers of one run of one series.

    Every handler is safe to re-invoke from scratch.
    """

    def __init__(
        self,
        run_id: int,
        series: SeriesSpec,
        source: str,
        chain: str,
        runner: "PipelineRunner",
        client: httpx.AsyncClient
    ):
        self.run_id = run_id
        self.series = series
        self.chain = chain
        self.runner = runner
        self.client = client
        self.settings = runner.settings
        self.directory = (
            Path(self.settings.DOWNLOAD_DIR)
            / f"{source}_{series.symbol}_{series.granularity.value}"
        )
        self.file_path = self.directory / f"run_{run_id}.csv"
        self.part_path = self.directory / f"run_{run_id}.csv.part"

    def handlers(self) -> StageHandlers:
        return StageHandlers(
            fetch=self.fetch,
            import_=self.import_,
            start=self.start,
            transform=self.transform,
            post_processing=self.post_processing,
            finish=self.finish,
        )

    # ------------------------------------------------------------------
    # START
    # ------------------------------------------------------------------

    async def start(self, ctx: StageContext) -> StageCounts:
        self.directory.mkdir(parents=True, exist_ok=True)

        cutoff = time.time() - self.settings.FILE_RETENTION_DAYS * 86400
        removed = 0
        for path in self.directory.iterdir():
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1

        await ctx.journal.info(
            f"Prepared {self.directory}; removed {removed} files older than "
            f"{self.settings.FILE_RETENTION_DAYS} days",
            directory=str(self.directory),
            removed=removed,
        )
        return NO_COUNTS

    # ------------------------------------------------------------------
    # FETCH
    # ------------------------------------------------------------------

    async def fetch(self, ctx: StageContext) -> StageCounts:
        if self.file_path.exists():
            await ctx.journal.info(
                f"Reusing downloaded file {self.file_path.name}",
                path=str(self.file_path),
            )
            return NO_COUNTS

        adapter = self.runner.adapter_factory(self.chain, self.settings, self.client)
        series = self.series

        async with self.runner.session_factory() as session:
            store = TimeSeriesStore(session, series.kind)
            latest = await store.latest_timestamp(series.symbol, series.granularity)

        now = self.runner.clock()
        start = next_fetch_start(latest, series.granularity, adapter.limits.floor_for(series))
        columns = FILE_COLUMNS[series.kind]
        self.directory.mkdir(parents=True, exist_ok=True)

        if is_up_to_date(latest, series.granularity, now) or start >= now:
            pd.DataFrame(columns=columns).to_csv(self.part_path, index=False)
            os.replace(self.part_path, self.file_path)
            await ctx.journal.info(
                f"{series.symbol} {series.granularity.value} is up to date (latest {latest})",
                latest=latest,
            )
            return NO_COUNTS

        await ctx.journal.info(
            f"Fetching {series.symbol} {series.granularity.value} from {adapter.name}: "
            f"{start.isoformat()} to {now.isoformat()}",
            source=adapter.name,
            range_start=start,
            range_end=now,
            incremental=latest is not None,
        )

        fetcher = self._fetcher(adapter, ctx)
        gaps = []
        windows = 0
        written = 0

        with open(self.part_path, "w", newline="") as fh:
            pd.DataFrame(columns=columns).to_csv(fh, index=False)
            async for window, records in fetcher.iter_chunks(series, start, now, gaps=gaps):
                windows += 1
                if not records:
                    continue
                frame = pd.DataFrame.from_records(records, columns=columns)
                frame.to_csv(fh, header=False, index=False)
                written += len(records)

        os.replace(self.part_path, self.file_path)

        await ctx.journal.info(
            f"Fetched {written} records in {windows} windows",
            records=written,
            windows=windows,
            gaps=len(gaps),
        )
        if gaps:
            await ctx.journal.warn(
                f"{len(gaps)} windows were skipped; stored data has gaps",
                gaps=[str(g) for g in gaps],
            )
        return NO_COUNTS

    def _fetcher(self, adapter: SourceAdapter, ctx: StageContext) -> ChunkedFetcher:
        return ChunkedFetcher(
            adapter,
            journal=ctx.journal,
            max_attempts=self.settings.FETCH_MAX_ATTEMPTS,
            backoff_base=self.settings.FETCH_BACKOFF_BASE,
            rate_limit_backoff=self.settings.RATE_LIMIT_BACKOFF,
            rate_limit_step=self.settings.RATE_LIMIT_BACKOFF_STEP,
            on_chunk_failure=self.settings.FETCH_CHUNK_FAILURE_POLICY,
            sleep=self.runner.sleep,
        )

    # ------------------------------------------------------------------
    # TRANSFORM
    # ------------------------------------------------------------------

    async def transform(self, ctx: StageContext) -> StageCounts:
        await ctx.journal.info("TRANSFORM: records are normalized during IMPORT")
        return NO_COUNTS

    # ------------------------------------------------------------------
    # IMPORT
    # ------------------------------------------------------------------

    async def import_(self, ctx: StageContext) -> StageCounts:
        if not self.file_path.exists():
            raise StageError(
                f"No downloaded file to import: {self.file_path}",
                context={"path": str(self.file_path), "run_id": self.run_id}
            )

        df = pd.read_csv(self.file_path, dtype=str, keep_default_na=False)
        await ctx.journal.info(f"Importing {len(df)} rows from {self.file_path.name}", rows=len(df))

        candidates = (
            (index + ROW_OFFSET, row)
            for index, row in enumerate(df.to_dict(orient="records"))
        )

        series = self.series
        async with self.runner.session_factory() as session:
            loader = TimeSeriesLoader(
                TimeSeriesStore(session, series.kind),
                RecordNormalizer(series.kind, series.symbol, series.granularity),
                journal=ctx.journal,
                batch_size=self.settings.IMPORT_BATCH_SIZE,
                max_rejected=self.settings.MAX_REJECTED_RECORDS,
            )
            result = await loader.reconcile(candidates)

        await ctx.journal.info(
            f"Imported: inserted={result.inserted} updated={result.updated} "
            f"skipped={result.skipped} rejected={result.rejected}",
            **result.to_dict(),
        )
        return result.counts()

    # ------------------------------------------------------------------
    # POST_PROCESSING / FINISH
    # ------------------------------------------------------------------

    async def post_processing(self, ctx: StageContext) -> StageCounts:
        for path in (self.file_path, self.part_path):
            if path.exists():
                path.unlink()
        await ctx.journal.info(f"Removed {self.file_path.name}", path=str(self.file_path))
        return NO_COUNTS

    async def finish(self, ctx: StageContext) -> StageCounts:
        counters = ctx.counters
        await ctx.journal.info(
            f"Run finished: successful={counters.successful} failed={counters.failed} "
            f"skipped={counters.skipped}",
            successful=counters.successful,
            failed=counters.failed,
            skipped=counters.skipped,
        )
        return NO_COUNTS


class PipelineRunner:
    """
    Trigger surface of the engine.

    Responsibilities:
    - Create runs, at most one active run per series
    - Resolve pipeline, series and adapter for a run
    - Drive (or resume) the run through the stage machine
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings = default_settings,
        client: Optional[httpx.AsyncClient] = None,
        adapter_factory: Callable[[str, Settings, httpx.AsyncClient], SourceAdapter] = build_adapter,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.client = client
        self.adapter_factory = adapter_factory
        self.sleep = sleep
        self.clock = clock

    async def create_run(self, pipeline_id: int) -> PipelineRun:
        """
        Create a PENDING run at START.

        Raises:
            ConfigurationError: Unknown or inactive pipeline, or the series
                already has an active run
        """
        async with self.session_factory() as session:
            pipeline = await session.get(Pipeline, pipeline_id)
            if pipeline is None:
                raise ConfigurationError(f"Pipeline {pipeline_id} not found", context={"pipeline_id": pipeline_id})
            if not pipeline.active:
                raise ConfigurationError(f"Pipeline {pipeline_id} is inactive", context={"pipeline_id": pipeline_id})

            active = await session.execute(
                select(PipelineRun.id)
                .join(Pipeline, PipelineRun.pipeline_id == Pipeline.id)
                .where(
                    Pipeline.time_series_id == pipeline.time_series_id,
                    PipelineRun.status.in_(ACTIVE_STATUSES)
                )
                .limit(1)
            )
            active_id = active.scalar_one_or_none()
            if active_id is not None:
                raise ConfigurationError(
                    f"Series of pipeline {pipeline_id} already has active run {active_id}",
                    context={"pipeline_id": pipeline_id, "active_run_id": active_id}
                )

            run = PipelineRun(
                pipeline_id=pipeline_id,
                stage=Stage.START,
                status=RunStatus.PENDING,
                n_successful=0,
                n_failed=0,
                n_skipped=0,
            )
            session.add(run)
            await session.commit()
            await session.refresh(run)

        logger.info(f"Created run {run.id} for pipeline {pipeline_id}")
        return run

    async def run(self, run_id: int, force: bool = False) -> PipelineRun:
        """
        Execute a new run, or resume an interrupted one, until it halts.

        ``force`` takes over a run left WORKING by a crashed worker.
        """
        async with self.session_factory() as session:
            run = await session.get(PipelineRun, run_id)
            if run is None:
                raise ConfigurationError(f"Run {run_id} not found", context={"run_id": run_id})

            pipeline = await session.get(Pipeline, run.pipeline_id)
            series_model = pipeline.time_series
            series = SeriesSpec.from_model(series_model)

            logger.info(
                f"Running run {run.id}: {series.symbol} {series.granularity.value} "
                f"via {pipeline.chain} ({run.stage.value}/{run.status.value})"
            )

            async with self._http_client() as client:
                stages = SeriesStages(run.id, series, series_model.source, pipeline.chain, self, client)
                executor = PipelineExecutor(session, stages.handlers())
                run = await executor.resume(run, force=force)

            logger.info(
                f"Run {run.id} halted at {run.stage.value}/{run.status.value} "
                f"(successful={run.n_successful}, failed={run.n_failed}, skipped={run.n_skipped})"
            )
            return run

    async def run_pipeline(self, pipeline_id: int) -> PipelineRun:
        """Create a run for a pipeline and execute it"""
        run = await self.create_run(pipeline_id)
        return await self.run(run.id)

    @asynccontextmanager
    async def _http_client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient(follow_redirects=True) as client:
            yield client
