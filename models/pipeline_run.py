from sqlalchemy import Column, Integer, Enum, DateTime, Text, Index, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, Stage, RunStatus

TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED)
ACTIVE_STATUSES = (RunStatus.PENDING, RunStatus.WORKING, RunStatus.SCHEDULED_STOP)


class PipelineRun(Base):
    """
    One execution attempt of one pipeline.

    Purpose:
    - Durable stage/status so an interrupted run resumes where it stopped
    - Record counters (successful / failed / skipped), never decreasing
    - Anchor for the append-only audit log

    Lifecycle:
    - Created at START / PENDING
    - Advanced only by the stage machine
    - Terminal at COMPLETED or FAILED
    - SCHEDULED_STOP is an external request honoured at a stage boundary
    """
    __tablename__ = "pipeline_runs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    pipeline_id = Column(BigInteger, ForeignKey("pipelines.id"), nullable=False, index=True)

    stage = Column(Enum(Stage), nullable=False, default=Stage.START)
    status = Column(Enum(RunStatus), nullable=False, default=RunStatus.PENDING, index=True)

    # Counters
    n_successful = Column(Integer, nullable=False, default=0)
    n_failed = Column(Integer, nullable=False, default=0)
    n_skipped = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    pipeline = relationship("Pipeline", back_populates="runs")
    logs = relationship(
        "PipelineRunLog",
        back_populates="pipeline_run",
        cascade="all, delete-orphan",
        order_by="PipelineRunLog.id"
    )

    __table_args__ = (
        Index("idx_pipeline_run_status_stage", "status", "stage"),
    )

    @property
    def total_processed(self) -> int:
        return (self.n_successful or 0) + (self.n_failed or 0) + (self.n_skipped or 0)

    @property
    def success_rate(self) -> float:
        """Percentage of processed records that succeeded"""
        total = self.total_processed
        if total == 0:
            return 0.0
        return round((self.n_successful or 0) / total * 100, 2)

    @property
    def can_run(self) -> bool:
        return self.status == RunStatus.PENDING and self.stage == Stage.START

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
