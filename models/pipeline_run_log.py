from sqlalchemy import Column, Enum, DateTime, Text, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, LogLevel, JSONType


class PipelineRunLog(Base):
    """
    Append-only audit trail of a pipeline run.

    Every stage transition, fetch retry, rejected record and error is
    written here so a FAILED run can be diagnosed without re-running it.
    """
    __tablename__ = "pipeline_run_logs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    pipeline_run_id = Column(BigInteger, ForeignKey("pipeline_runs.id"), nullable=False, index=True)

    level = Column(Enum(LogLevel), nullable=False, default=LogLevel.INFO)
    message = Column(Text, nullable=False)
    context = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    pipeline_run = relationship("PipelineRun", back_populates="logs")
