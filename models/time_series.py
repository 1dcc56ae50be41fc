from sqlalchemy import Column, String, Enum, DateTime, Date, Index
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, Granularity, SeriesKind


class TimeSeries(Base):
    """
    Definition of one ingested series.

    Design:
    - `kind` is fixed at creation and selects the observation table
      (aggregates for OHLC bars, univariates for scalar values)
    - `source_id` is the provider-side identifier (product, series id, file)
    - `since` optionally overrides the adapter's historical floor date
    """
    __tablename__ = "time_series"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    symbol = Column(String(50), nullable=False, index=True)
    granularity = Column(Enum(Granularity), nullable=False)
    source = Column(String(50), nullable=False)
    source_id = Column(String(255), nullable=False)
    kind = Column(Enum(SeriesKind), nullable=False)
    description = Column(String(500), nullable=True)
    since = Column(Date, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    pipelines = relationship("Pipeline", back_populates="time_series")

    __table_args__ = (
        Index("idx_time_series_symbol_granularity", "symbol", "granularity"),
    )
