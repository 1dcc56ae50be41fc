"""
SQLAlchemy ORM models for database tables.

Models:
    base: Declarative base and shared enums (Stage, RunStatus, Granularity, ...)
    time_series: Series definitions (symbol, granularity, source, kind)
    pipeline: Ingestion job definitions (series + source adapter)
    pipeline_run: Durable run state (stage, status, counters)
    pipeline_run_log: Append-only audit log of a run
    observations: Aggregate (OHLC) and Univariate observations

Relationships:
    - TimeSeries → Pipeline (one-to-many)
    - Pipeline → PipelineRun (one-to-many)
    - PipelineRun → PipelineRunLog (one-to-many)

Importing this package registers every table on Base.metadata.
"""

from models.base import Base, Stage, RunStatus, LogLevel, SeriesKind, Granularity
from models.time_series import TimeSeries
from models.pipeline import Pipeline
from models.pipeline_run import PipelineRun
from models.pipeline_run_log import PipelineRunLog
from models.observations import Aggregate, Univariate, OBSERVATION_MODELS

__all__ = [
    "Base",
    "Stage",
    "RunStatus",
    "LogLevel",
    "SeriesKind",
    "Granularity",
    "TimeSeries",
    "Pipeline",
    "PipelineRun",
    "PipelineRunLog",
    "Aggregate",
    "Univariate",
    "OBSERVATION_MODELS",
]
