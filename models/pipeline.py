from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK


class Pipeline(Base):
    """
    An ingestion job: one series fed by one source adapter.

    `chain` names the adapter in the extractor registry. Runs of an
    inactive pipeline are never created.
    """
    __tablename__ = "pipelines"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    time_series_id = Column(BigInteger, ForeignKey("time_series.id"), nullable=False, index=True)
    chain = Column(String(50), nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    time_series = relationship("TimeSeries", back_populates="pipelines", lazy="joined")
    runs = relationship("PipelineRun", back_populates="pipeline")
