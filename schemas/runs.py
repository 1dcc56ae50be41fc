"""
Pydantic schemas for operator-facing run status responses
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import Stage, RunStatus, LogLevel

# ============================================================================
# Run Schemas
# ============================================================================

class PipelineRunResponse(BaseModel):
    """Projection of one pipeline run"""
    id: int
    pipeline_id: int
    stage: Stage
    status: RunStatus
    n_successful: int = 0
    n_failed: int = 0
    n_skipped: int = 0
    total_processed: int = 0
    success_rate: float = Field(0.0, ge=0, le=100, description="Success rate percentage")
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "id": 42,
                "pipeline_id": 3,
                "stage": "IMPORT",
                "status": "WORKING",
                "n_successful": 2000,
                "n_failed": 0,
                "n_skipped": 0,
                "total_processed": 2000,
                "success_rate": 100.0,
                "started_at": "2024-01-15T10:00:00Z",
                "created_at": "2024-01-15T10:00:00Z"
            }
        }


class PipelineRunLogResponse(BaseModel):
    """One audit log entry of a run"""
    id: int
    level: LogLevel
    message: str
    context: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class PipelineRunDetail(PipelineRunResponse):
    """Run with its audit log, oldest entry first"""
    logs: List[PipelineRunLogResponse] = Field(default_factory=list)


class RunListResponse(BaseModel):
    """Recent runs, newest first"""
    items: List[PipelineRunResponse]
    total: int
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class StopRequestResponse(BaseModel):
    """Outcome of a cooperative stop request"""
    run_id: int
    accepted: bool
    status: RunStatus

    class Config:
        use_enum_values = True


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    runs_by_status: Dict[str, int] = Field(default_factory=dict)
    active_pipelines: int = 0
    last_completed_at: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def determine_status(self):
        """Unhealthy without a database; degraded when the latest outcome is a failure"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.last_failed_at and (
            self.last_completed_at is None or self.last_failed_at > self.last_completed_at
        ):
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "runs_by_status": {"COMPLETED": 12, "FAILED": 1, "PENDING": 0},
                "active_pipelines": 3,
                "last_completed_at": "2024-01-15T10:00:00Z",
                "last_failed_at": "2024-01-14T10:00:00Z"
            }
        }


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Resource not found",
                "detail": "Run 42 does not exist",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
