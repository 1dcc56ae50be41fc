import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import Settings, settings as default_settings
from core.database import async_session_maker
from core.exceptions import ConfigurationError
from ingestion.runner import PipelineRunner
from models.pipeline import Pipeline

logger = logging.getLogger(__name__)


class PipelineScheduler:
    """Periodically runs every active pipeline that has no active run"""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_maker,
        settings: Settings = default_settings,
        runner: PipelineRunner = None
    ):
        self.scheduler = AsyncIOScheduler()
        self.session_factory = session_factory
        self.settings = settings
        self.runner = runner or PipelineRunner(session_factory, settings)

    async def active_pipeline_ids(self):
        async with self.session_factory() as session:
            result = await session.execute(
                select(Pipeline.id).where(Pipeline.active.is_(True)).order_by(Pipeline.id)
            )
            return list(result.scalars().all())

    async def run_pipelines_job(self):
        """Job: one run per active pipeline; a failing pipeline never stops the others"""
        logger.info("Scheduler: Starting pipeline job")
        pipeline_ids = await self.active_pipeline_ids()

        outcomes = {}
        for pipeline_id in pipeline_ids:
            try:
                run = await self.runner.run_pipeline(pipeline_id)
                outcomes[pipeline_id] = run.status.value
            except ConfigurationError as e:
                # Typically an active run already exists for the series
                logger.info(f"Scheduler: Skipping pipeline {pipeline_id} - {e.message}")
                outcomes[pipeline_id] = "skipped"
            except Exception as e:
                logger.error(f"Scheduler: Pipeline {pipeline_id} failed - {e}")
                outcomes[pipeline_id] = "error"

        logger.info(f"Scheduler: Pipeline job finished {outcomes}")
        return outcomes

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_pipelines_job,
            trigger=IntervalTrigger(minutes=self.settings.SCHEDULER_INTERVAL_MINUTES),
            id="pipeline_job",
            replace_existing=True,
            max_instances=1
        )
        self.scheduler.start()
        logger.info("Pipeline Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Pipeline Scheduler stopped")
