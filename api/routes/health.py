"""
Health check endpoint with database and pipeline run status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, func, text
from api.dependencies import get_db
from schemas.runs import HealthCheckResponse
from models.base import RunStatus
from models.pipeline import Pipeline
from models.pipeline_run import PipelineRun
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Run counts per status
    - Latest completed and failed run times
    """
    request_id = getattr(request.state, "request_id", "-")

    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"[{request_id}] Database connection failed: {str(e)}")

    runs_by_status = {}
    active_pipelines = 0
    last_completed_at = None
    last_failed_at = None

    if db_connected:
        try:
            result = await db.execute(
                select(PipelineRun.status, func.count()).group_by(PipelineRun.status)
            )
            runs_by_status = {status.value: count for status, count in result.all()}

            active_pipelines = (await db.execute(
                select(func.count()).select_from(Pipeline).where(Pipeline.active.is_(True))
            )).scalar() or 0

            last_completed_at = (await db.execute(
                select(func.max(PipelineRun.finished_at)).where(PipelineRun.status == RunStatus.COMPLETED)
            )).scalar()

            last_failed_at = (await db.execute(
                select(func.max(PipelineRun.finished_at)).where(PipelineRun.status == RunStatus.FAILED)
            )).scalar()
        except SQLAlchemyError as e:
            logger.error(f"[{request_id}] Failed to summarise pipeline runs: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        runs_by_status=runs_by_status,
        active_pipelines=active_pipelines,
        last_completed_at=last_completed_at,
        last_failed_at=last_failed_at
    )
