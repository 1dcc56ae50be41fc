"""
Script to trigger or resume pipeline runs from the command line
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import engine, async_session_maker
from core.exceptions import ETLException
from core.logging import setup_logging
from ingestion.runner import PipelineRunner
from ingestion.scheduler import PipelineScheduler
from ingestion.stages import request_stop
from models.base import RunStatus

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run market data ingestion pipelines")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--pipeline", type=int, help="Create and execute a run for this pipeline id")
    group.add_argument("--resume", type=int, metavar="RUN_ID", help="Resume a stopped run, or a crashed one with --force")
    group.add_argument("--stop", type=int, metavar="RUN_ID", help="Request a cooperative stop of a run")
    group.add_argument("--all", action="store_true", help="Run every active pipeline once")
    parser.add_argument(
        "--force",
        action="store_true",
        help="With --resume: take over a run left WORKING by a crashed worker. "
             "Never use it on a run another worker is still executing"
    )
    args = parser.parse_args(argv)
    if args.force and not args.resume:
        parser.error("--force is only valid with --resume")
    return args


async def main(args) -> int:
    runner = PipelineRunner(async_session_maker, settings)

    try:
        if args.stop:
            async with async_session_maker() as session:
                accepted = await request_stop(session, args.stop)
            logger.info(f"Stop request for run {args.stop}: {'accepted' if accepted else 'ignored'}")
            return 0 if accepted else 1

        if args.all:
            outcomes = await PipelineScheduler(async_session_maker, settings, runner).run_pipelines_job()
            return 0 if all(o == RunStatus.COMPLETED.value for o in outcomes.values()) else 1

        if args.resume:
            run = await runner.run(args.resume, force=args.force)
        else:
            run = await runner.run_pipeline(args.pipeline)

        logger.info(
            f"Run {run.id}: {run.stage.value}/{run.status.value} "
            f"successful={run.n_successful} failed={run.n_failed} skipped={run.n_skipped}"
        )
        return 0 if run.status == RunStatus.COMPLETED else 1

    except ETLException as e:
        logger.error(f"Pipeline error: {e}")
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(main(parse_args())))
