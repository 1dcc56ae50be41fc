"""
Unit tests for the pipeline stage machine
"""

import pytest
from sqlalchemy import select
from core.exceptions import FetchError, ReconciliationAborted
from ingestion.loaders.timeseries_loader import ReconcileResult
from ingestion.stages import PipelineExecutor, StageCounts, StageHandlers, request_stop
from models import PipelineRun, PipelineRunLog
from models.base import LogLevel, RunStatus, Stage


class Crash(BaseException):
    """Simulates the process dying mid-stage"""


class Recorder:
    """Stage handlers that record their invocation order"""

    def __init__(self, fetch_counts=StageCounts(), import_counts=StageCounts(), fail_at=None, error=None):
        self.calls = []
        self.fetch_counts = fetch_counts
        self.import_counts = import_counts
        self.fail_at = fail_at
        self.error = error or FetchError("provider down")

    def handler(self, stage, counts=None):
        async def _handle(ctx):
            self.calls.append(stage)
            assert ctx.stage == stage
            if self.fail_at == stage:
                raise self.error
            return counts
        return _handle

    def handlers(self, **overrides):
        handlers = dict(
            start=self.handler(Stage.START),
            fetch=self.handler(Stage.FETCH, self.fetch_counts),
            transform=self.handler(Stage.TRANSFORM),
            import_=self.handler(Stage.IMPORT, self.import_counts),
            post_processing=self.handler(Stage.POST_PROCESSING),
            finish=self.handler(Stage.FINISH),
        )
        handlers.update(overrides)
        return StageHandlers(**handlers)


async def load_run(session_factory, run_id):
    async with session_factory() as session:
        return await session.get(PipelineRun, run_id)


async def load_logs(session_factory, run_id):
    async with session_factory() as session:
        result = await session.execute(
            select(PipelineRunLog)
            .where(PipelineRunLog.pipeline_run_id == run_id)
            .order_by(PipelineRunLog.id)
        )
        return list(result.scalars().all())


class TestExecute:
    """Forward execution"""

    @pytest.mark.asyncio
    async def test_runs_every_stage_in_order(self, db_session, session_factory, make_pipeline, make_run):
        pipeline = await make_pipeline()
        run = await make_run(pipeline.id)
        recorder = Recorder(
            fetch_counts=StageCounts(successful=0),
            import_counts=StageCounts(successful=10, failed=1, skipped=2),
        )
        run = await db_session.get(PipelineRun, run.id)

        await PipelineExecutor(db_session, recorder.handlers()).execute(run)

        assert recorder.calls == list(Stage)
        stored = await load_run(session_factory, run.id)
        assert stored.stage == Stage.FINISH
        assert stored.status == RunStatus.COMPLETED
        assert (stored.n_successful, stored.n_failed, stored.n_skipped) == (10, 1, 2)
        assert stored.started_at is not None
        assert stored.finished_at is not None

    @pytest.mark.asyncio
    async def test_journal_records_every_transition(self, db_session, session_factory, make_pipeline, make_run):
        pipeline = await make_pipeline()
        run = await db_session.get(PipelineRun, (await make_run(pipeline.id)).id)

        await PipelineExecutor(db_session, Recorder().handlers()).execute(run)

        messages = [log.message for log in await load_logs(session_factory, run.id)]
        for stage in Stage:
            assert f"Entering {stage.value}" in messages
            assert f"Completed {stage.value}" in messages

    @pytest.mark.asyncio
    async def test_default_handlers_are_logged_noops(self, db_session, session_factory, make_pipeline, make_run):
        pipeline = await make_pipeline()
        run = await db_session.get(PipelineRun, (await make_run(pipeline.id)).id)
        recorder = Recorder()

        handlers = StageHandlers(fetch=recorder.handler(Stage.FETCH), import_=recorder.handler(Stage.IMPORT))
        await PipelineExecutor(db_session, handlers).execute(run)

        assert recorder.calls == [Stage.FETCH, Stage.IMPORT]
        assert (await load_run(session_factory, run.id)).status == RunStatus.COMPLETED
        messages = [log.message for log in await load_logs(session_factory, run.id)]
        assert "TRANSFORM: nothing to do" in messages

    @pytest.mark.asyncio
    async def test_terminal_runs_left_alone(self, db_session, session_factory, make_pipeline, make_run):
        pipeline = await make_pipeline()
        done = await make_run(pipeline.id, stage=Stage.FINISH, status=RunStatus.COMPLETED)
        failed = await make_run(pipeline.id, stage=Stage.IMPORT, status=RunStatus.FAILED)
        recorder = Recorder()
        executor = PipelineExecutor(db_session, recorder.handlers())

        for run_id in (done.id, failed.id):
            await executor.resume(await db_session.get(PipelineRun, run_id))

        assert recorder.calls == []
        assert (await load_run(session_factory, failed.id)).status == RunStatus.FAILED


class TestFailure:
    """Handler errors fail the run"""

    @pytest.mark.asyncio
    async def test_error_fails_run_at_stage(self, db_session, session_factory, make_pipeline, make_run):
        pipeline = await make_pipeline()
        run = await db_session.get(PipelineRun, (await make_run(pipeline.id)).id)
        recorder = Recorder(fail_at=Stage.FETCH)

        await PipelineExecutor(db_session, recorder.handlers()).execute(run)

        assert recorder.calls == [Stage.START, Stage.FETCH]
        stored = await load_run(session_factory, run.id)
        assert stored.stage == Stage.FETCH
        assert stored.status == RunStatus.FAILED
        assert "provider down" in stored.error_message

        errors = [log for log in await load_logs(session_factory, run.id) if log.level == LogLevel.ERROR]
        assert len(errors) == 1
        assert errors[0].context["error_type"] == "FetchError"
        assert "Traceback" in errors[0].context["traceback"]

    @pytest.mark.asyncio
    async def test_partial_counts_of_aborted_import_are_kept(self, db_session, session_factory, make_pipeline, make_run):
        pipeline = await make_pipeline()
        run = await db_session.get(PipelineRun, (await make_run(pipeline.id)).id)
        partial = ReconcileResult(inserted=5, rejected=101)
        recorder = Recorder(
            fail_at=Stage.IMPORT,
            error=ReconciliationAborted("too many rejected records", result=partial),
        )

        await PipelineExecutor(db_session, recorder.handlers()).execute(run)

        stored = await load_run(session_factory, run.id)
        assert stored.stage == Stage.IMPORT
        assert stored.status == RunStatus.FAILED
        assert (stored.n_successful, stored.n_failed) == (5, 101)

    @pytest.mark.asyncio
    async def test_crash_leaves_run_working_and_resume_continues(
        self, db_session, session_factory, make_pipeline, make_run
    ):
        pipeline = await make_pipeline()
        run = await db_session.get(PipelineRun, (await make_run(pipeline.id)).id)
        recorder = Recorder()
        crashed = []

        async def transform_once(ctx):
            if not crashed:
                crashed.append(ctx.stage)
                raise Crash()
            recorder.calls.append(ctx.stage)

        with pytest.raises(Crash):
            await PipelineExecutor(db_session, recorder.handlers(transform=transform_once)).execute(run)

        stored = await load_run(session_factory, run.id)
        assert (stored.stage, stored.status) == (Stage.TRANSFORM, RunStatus.WORKING)

        async with session_factory() as session:
            again = await session.get(PipelineRun, run.id)
            await PipelineExecutor(session, recorder.handlers(transform=transform_once)).resume(again, force=True)

        # FETCH is not re-run after the crash in TRANSFORM
        assert recorder.calls == [Stage.START, Stage.FETCH, Stage.TRANSFORM, Stage.IMPORT,
                                  Stage.POST_PROCESSING, Stage.FINISH]
        assert (await load_run(session_factory, run.id)).status == RunStatus.COMPLETED


class TestStaleWorking:

    @pytest.mark.asyncio
    async def test_execute_refuses_working_run(self, db_session, session_factory, make_pipeline, make_run):
        pipeline = await make_pipeline()
        stale = await make_run(pipeline.id, stage=Stage.IMPORT, status=RunStatus.WORKING)
        recorder = Recorder()

        await PipelineExecutor(db_session, recorder.handlers()).execute(await db_session.get(PipelineRun, stale.id))

        assert recorder.calls == []
        assert (await load_run(session_factory, stale.id)).status == RunStatus.WORKING
        levels = [log.level for log in await load_logs(session_factory, stale.id)]
        assert levels == [LogLevel.ERROR]

    @pytest.mark.asyncio
    async def test_resume_without_force_leaves_working_run_to_its_worker(
        self, db_session, session_factory, make_pipeline, make_run
    ):
        pipeline = await make_pipeline()
        live = await make_run(pipeline.id, stage=Stage.FETCH, status=RunStatus.WORKING)
        recorder = Recorder()

        await PipelineExecutor(db_session, recorder.handlers()).resume(await db_session.get(PipelineRun, live.id))

        assert recorder.calls == []
        assert (await load_run(session_factory, live.id)).status == RunStatus.WORKING
        levels = [log.level for log in await load_logs(session_factory, live.id)]
        assert levels == [LogLevel.ERROR]

    @pytest.mark.asyncio
    async def test_resume_restarts_at_recorded_stage(self, db_session, session_factory, make_pipeline, make_run):
        pipeline = await make_pipeline()
        stale = await make_run(pipeline.id, stage=Stage.IMPORT, status=RunStatus.WORKING, n_successful=3)
        recorder = Recorder(import_counts=StageCounts(successful=4))

        await PipelineExecutor(db_session, recorder.handlers()).resume(
            await db_session.get(PipelineRun, stale.id), force=True
        )

        assert recorder.calls == [Stage.IMPORT, Stage.POST_PROCESSING, Stage.FINISH]
        stored = await load_run(session_factory, stale.id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.n_successful == 7

        first = (await load_logs(session_factory, stale.id))[0]
        assert first.level == LogLevel.WARN
        assert first.message.startswith("Resuming run from WORKING at IMPORT")


class TestStopRequest:
    """Cooperative stop at stage boundaries"""

    @pytest.mark.asyncio
    async def test_stop_during_stage_halts_at_next_boundary(self, db_session, session_factory, make_pipeline, make_run):
        pipeline = await make_pipeline()
        run = await db_session.get(PipelineRun, (await make_run(pipeline.id)).id)
        recorder = Recorder()
        accepted = []

        async def fetch_and_get_stopped(ctx):
            recorder.calls.append(ctx.stage)
            async with session_factory() as operator:
                accepted.append(await request_stop(operator, ctx.run_id))
            return StageCounts(successful=2)

        executor = PipelineExecutor(db_session, recorder.handlers(fetch=fetch_and_get_stopped))
        await executor.execute(run)

        assert accepted == [True]
        assert recorder.calls == [Stage.START, Stage.FETCH]
        stored = await load_run(session_factory, run.id)
        assert (stored.stage, stored.status) == (Stage.TRANSFORM, RunStatus.SCHEDULED_STOP)
        assert stored.n_successful == 2

        await executor.resume(run)

        assert recorder.calls[2:] == [Stage.TRANSFORM, Stage.IMPORT, Stage.POST_PROCESSING, Stage.FINISH]
        assert (await load_run(session_factory, run.id)).status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_before_start_executes_nothing(self, db_session, session_factory, make_pipeline, make_run):
        pipeline = await make_pipeline()
        run = await make_run(pipeline.id)

        async with session_factory() as operator:
            assert await request_stop(operator, run.id)

        recorder = Recorder()
        await PipelineExecutor(db_session, recorder.handlers()).execute(await db_session.get(PipelineRun, run.id))

        assert recorder.calls == []
        stored = await load_run(session_factory, run.id)
        assert (stored.stage, stored.status) == (Stage.START, RunStatus.SCHEDULED_STOP)

    @pytest.mark.asyncio
    async def test_stop_rejected_for_finished_runs(self, db_session, make_pipeline, make_run):
        pipeline = await make_pipeline()
        done = await make_run(pipeline.id, stage=Stage.FINISH, status=RunStatus.COMPLETED)
        failed = await make_run(pipeline.id, stage=Stage.FETCH, status=RunStatus.FAILED)

        assert not await request_stop(db_session, done.id)
        assert not await request_stop(db_session, failed.id)

    @pytest.mark.asyncio
    async def test_stop_of_missing_run_rejected(self, db_session):
        assert not await request_stop(db_session, 9999)
