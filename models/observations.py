from sqlalchemy import Column, String, Enum, DateTime, Float, UniqueConstraint
from datetime import datetime
from models.base import Base, BigIntPK, Granularity, SeriesKind


class Aggregate(Base):
    """
    OHLC bar of an aggregate series.

    Identity key: (symbol, granularity, ts), enforced by a unique
    constraint so concurrent writers surface as IntegrityError.
    """
    __tablename__ = "aggregates"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    symbol = Column(String(50), nullable=False)
    granularity = Column(Enum(Granularity), nullable=False)
    ts = Column(DateTime, nullable=False)

    open = Column(Float, nullable=False)
    high = Column(Float, nullable=False)
    low = Column(Float, nullable=False)
    close = Column(Float, nullable=False)
    aclose = Column(Float, nullable=False)
    volume = Column(Float, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("symbol", "granularity", "ts", name="uq_aggregates_identity"),
    )


class Univariate(Base):
    """
    Scalar observation of a univariate series (economic data, indices).

    Identity key: (symbol, granularity, ts).
    """
    __tablename__ = "univariates"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    symbol = Column(String(50), nullable=False)
    granularity = Column(Enum(Granularity), nullable=False)
    ts = Column(DateTime, nullable=False)

    value = Column(Float, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("symbol", "granularity", "ts", name="uq_univariates_identity"),
    )


OBSERVATION_MODELS = {
    SeriesKind.AGGREGATE: Aggregate,
    SeriesKind.UNIVARIATE: Univariate,
}
