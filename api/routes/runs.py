"""
Pipeline run status endpoints and the cooperative stop request
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from api.dependencies import get_db
from schemas.runs import (
    ErrorResponse,
    PipelineRunDetail,
    PipelineRunResponse,
    RunListResponse,
    StopRequestResponse,
)
from ingestion.stages import request_stop
from models.base import RunStatus
from models.pipeline_run import PipelineRun
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/runs", tags=["Runs"])


@router.get("", response_model=RunListResponse)
async def list_runs(
    request: Request,
    status: Optional[RunStatus] = Query(None, description="Filter by run status"),
    pipeline_id: Optional[int] = Query(None, ge=1, description="Filter by pipeline"),
    limit: int = Query(50, ge=1, le=500, description="Number of runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """
    Most recent runs, newest first.

    Filters:
    - status
    - pipeline_id
    """
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] GET /runs - status={status}, pipeline_id={pipeline_id}, limit={limit}")

    filters = []
    filters_applied = {}

    if status:
        filters.append(PipelineRun.status == status)
        filters_applied["status"] = status.value

    if pipeline_id:
        filters.append(PipelineRun.pipeline_id == pipeline_id)
        filters_applied["pipeline_id"] = pipeline_id

    total = (await db.execute(
        select(func.count()).select_from(PipelineRun).where(*filters)
    )).scalar() or 0

    result = await db.execute(
        select(PipelineRun)
        .where(*filters)
        .order_by(PipelineRun.created_at.desc(), PipelineRun.id.desc())
        .limit(limit)
    )
    runs = result.scalars().all()

    return RunListResponse(
        items=[PipelineRunResponse.model_validate(run) for run in runs],
        total=total,
        filters_applied=filters_applied
    )


@router.get("/{run_id}", response_model=PipelineRunDetail, responses={404: {"model": ErrorResponse}})
async def get_run(run_id: int, db: AsyncSession = Depends(get_db)):
    """Run state with its full audit log"""
    result = await db.execute(
        select(PipelineRun)
        .options(selectinload(PipelineRun.logs))
        .where(PipelineRun.id == run_id)
    )
    run = result.scalar_one_or_none()
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} does not exist")

    return PipelineRunDetail.model_validate(run)


@router.post("/{run_id}/stop", response_model=StopRequestResponse, responses={404: {"model": ErrorResponse}})
async def stop_run(run_id: int, db: AsyncSession = Depends(get_db)):
    """
    Request a cooperative stop.

    Honoured at the next stage boundary; only PENDING or WORKING runs
    accept the request.
    """
    run = await db.get(PipelineRun, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} does not exist")

    accepted = await request_stop(db, run_id)
    await db.refresh(run)

    return StopRequestResponse(run_id=run_id, accepted=accepted, status=run.status)
