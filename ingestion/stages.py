# ============================================================================
# File: ingestion/stages.py
# Description: Resumable stage machine driving one pipeline run
# ============================================================================
"""
Pipeline stage machine.

A run walks a fixed, linear sequence of stages:

    START → FETCH → TRANSFORM → IMPORT → POST_PROCESSING → FINISH

Stage and status are committed after every transition, so a crashed or
interrupted run resumes exactly at the stage it was in. Handlers must be
safe to re-invoke from scratch.

Handlers receive a read-only StageContext and return StageCounts; the
machine alone folds the counts into the run and moves its state.
"""

import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ingestion.journal import RunJournal
from models.base import RunStatus, Stage
from models.pipeline_run import PipelineRun
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageCounts:
    """Record counts produced by one stage"""

    successful: int = 0
    failed: int = 0
    skipped: int = 0


NO_COUNTS = StageCounts()


@dataclass(frozen=True)
class StageContext:
    """Read-only view of the run handed to stage handlers"""

    run_id: int
    stage: Stage
    journal: RunJournal
    counters: StageCounts


Handler = Callable[[StageContext], Awaitable[Optional[StageCounts]]]


async def _noop(ctx: StageContext) -> StageCounts:
    await ctx.journal.info(f"{ctx.stage.value}: nothing to do")
    return NO_COUNTS


@dataclass(frozen=True)
class StageHandlers:
    """
    Per-stage handlers of one run.

    FETCH and IMPORT must be supplied; the others default to logged
    no-ops.
    """

    fetch: Handler
    import_: Handler
    start: Handler = _noop
    transform: Handler = _noop
    post_processing: Handler = _noop
    finish: Handler = _noop

    def for_stage(self, stage: Stage) -> Handler:
        return {
            Stage.START: self.start,
            Stage.FETCH: self.fetch,
            Stage.TRANSFORM: self.transform,
            Stage.IMPORT: self.import_,
            Stage.POST_PROCESSING: self.post_processing,
            Stage.FINISH: self.finish,
        }[stage]


def _should_stop(stage: Stage, status: RunStatus) -> bool:
    if status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.SCHEDULED_STOP):
        return True
    return stage == Stage.FINISH and status != RunStatus.PENDING


class PipelineExecutor:
    """
    Drives a PipelineRun forward until a stop condition holds.

    Stop conditions, checked at the top of every iteration:
    - status is COMPLETED, FAILED or SCHEDULED_STOP
    - stage is FINISH and status is not PENDING

    A handler exception fails the run. There is no retry at this layer;
    network retries belong to the chunked fetcher.
    """

    def __init__(self, session: AsyncSession, handlers: StageHandlers):
        self.session = session
        self.handlers = handlers

    async def execute(self, run: PipelineRun) -> PipelineRun:
        journal = RunJournal(self.session, run.id)

        while True:
            await self.session.refresh(run)
            stage, status = Stage(run.stage), RunStatus(run.status)

            if _should_stop(stage, status):
                logger.info(f"Run {run.id} halted at {stage.value}/{status.value}")
                break

            if status != RunStatus.PENDING:
                # WORKING here means another worker owns the run or a crash
                # left it behind; resume() is the way back in
                await journal.error(
                    f"Run found {status.value} at {stage.value}; refusing to execute",
                    stage=stage.value,
                    status=status.value,
                )
                break

            await self._run_stage(run, stage, journal)

        return run

    async def resume(self, run: PipelineRun, force: bool = False) -> PipelineRun:
        """
        Continue an interrupted run at the stage it was in.

        A SCHEDULED_STOP is reset to PENDING at the same stage. A WORKING
        run is only taken over with ``force``: the caller asserts that the
        worker which owned it is gone. Without it the run is refused like
        in ``execute``. Terminal runs are left alone.
        """
        await self.session.refresh(run)
        status = RunStatus(run.status)

        if status == RunStatus.SCHEDULED_STOP or (status == RunStatus.WORKING and force):
            journal = RunJournal(self.session, run.id)
            run.status = RunStatus.PENDING
            await self.session.commit()
            await journal.warn(
                f"Resuming run from {status.value} at {run.stage.value}",
                stage=run.stage.value,
                previous_status=status.value,
            )

        return await self.execute(run)

    async def _run_stage(self, run: PipelineRun, stage: Stage, journal: RunJournal) -> None:
        run.status = RunStatus.WORKING
        if run.started_at is None:
            run.started_at = datetime.utcnow()
        await self.session.commit()
        await journal.info(f"Entering {stage.value}", stage=stage.value)

        ctx = StageContext(
            run_id=run.id,
            stage=stage,
            journal=journal,
            counters=StageCounts(run.n_successful or 0, run.n_failed or 0, run.n_skipped or 0),
        )

        try:
            counts = await self.handlers.for_stage(stage)(ctx) or NO_COUNTS
        except Exception as e:
            await self._fail(run, stage, journal, e)
            return

        await self.session.refresh(run)
        stop_requested = run.status == RunStatus.SCHEDULED_STOP
        self._fold(run, counts)

        next_stage = stage.next()
        if next_stage is None:
            run.status = RunStatus.COMPLETED
            run.finished_at = datetime.utcnow()
        else:
            run.stage = next_stage
            run.status = RunStatus.SCHEDULED_STOP if stop_requested else RunStatus.PENDING
        await self.session.commit()

        await journal.info(
            f"Completed {stage.value}",
            stage=stage.value,
            successful=counts.successful,
            failed=counts.failed,
            skipped=counts.skipped,
        )
        if stop_requested:
            await journal.warn(
                f"Stop requested; halting before {next_stage.value if next_stage else 'completion'}",
                stage=stage.value,
            )

    async def _fail(self, run: PipelineRun, stage: Stage, journal: RunJournal, error: Exception) -> None:
        logger.error(f"Run {run.id} failed at {stage.value}: {error}")

        await self.session.rollback()
        await self.session.refresh(run)
        result = getattr(error, "result", None)
        if result is not None and hasattr(result, "counts"):
            self._fold(run, result.counts())

        run.status = RunStatus.FAILED
        run.error_message = str(error)
        run.finished_at = datetime.utcnow()
        await self.session.commit()

        await journal.error(
            f"{stage.value} failed: {error}",
            stage=stage.value,
            error_type=type(error).__name__,
            traceback="".join(traceback.format_exception(type(error), error, error.__traceback__)),
        )

    @staticmethod
    def _fold(run: PipelineRun, counts: StageCounts) -> None:
        run.n_successful = (run.n_successful or 0) + counts.successful
        run.n_failed = (run.n_failed or 0) + counts.failed
        run.n_skipped = (run.n_skipped or 0) + counts.skipped


async def request_stop(session: AsyncSession, run_id: int) -> bool:
    """
    Ask a run to stop at its next stage boundary.

    Conditional update PENDING|WORKING → SCHEDULED_STOP; returns whether
    the request was accepted.
    """
    result = await session.execute(
        update(PipelineRun)
        .where(
            PipelineRun.id == run_id,
            PipelineRun.status.in_([RunStatus.PENDING, RunStatus.WORKING]),
        )
        .values(status=RunStatus.SCHEDULED_STOP, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    accepted = result.rowcount == 1
    logger.info(f"Stop request for run {run_id}: {'accepted' if accepted else 'ignored'}")
    return accepted
