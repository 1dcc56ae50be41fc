from datetime import timedelta
from typing import Optional
from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum
import pandas as pd

Base = declarative_base()

# SQLite only autoincrements INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class Stage(str, enum.Enum):
    """Pipeline run stages, in execution order"""
    START = "START"
    FETCH = "FETCH"
    TRANSFORM = "TRANSFORM"
    IMPORT = "IMPORT"
    POST_PROCESSING = "POST_PROCESSING"
    FINISH = "FINISH"

    def next(self) -> Optional["Stage"]:
        """Following stage, or None at FINISH"""
        members = list(Stage)
        index = members.index(self)
        if index + 1 >= len(members):
            return None
        return members[index + 1]


class RunStatus(str, enum.Enum):
    """Pipeline run status"""
    PENDING = "PENDING"
    WORKING = "WORKING"
    SCHEDULED_STOP = "SCHEDULED_STOP"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LogLevel(str, enum.Enum):
    """Audit log levels"""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class SeriesKind(str, enum.Enum):
    """Shape of the observations of a series"""
    AGGREGATE = "aggregate"
    UNIVARIATE = "univariate"


class Granularity(str, enum.Enum):
    """Sampling interval of a series"""
    M1 = "M1"
    H1 = "H1"
    D1 = "D1"
    W1 = "W1"
    MN1 = "MN1"
    Q = "Q"
    Y = "Y"

    def step(self) -> pd.DateOffset:
        """Calendar offset of one unit"""
        return _STEPS[self]

    def min_spacing(self) -> timedelta:
        """Shortest possible distance between two consecutive observations"""
        return _MIN_SPACING[self]


_STEPS = {
    Granularity.M1: pd.DateOffset(minutes=1),
    Granularity.H1: pd.DateOffset(hours=1),
    Granularity.D1: pd.DateOffset(days=1),
    Granularity.W1: pd.DateOffset(weeks=1),
    Granularity.MN1: pd.DateOffset(months=1),
    Granularity.Q: pd.DateOffset(months=3),
    Granularity.Y: pd.DateOffset(years=1),
}

_MIN_SPACING = {
    Granularity.M1: timedelta(minutes=1),
    Granularity.H1: timedelta(hours=1),
    Granularity.D1: timedelta(days=1),
    Granularity.W1: timedelta(weeks=1),
    Granularity.MN1: timedelta(days=28),
    Granularity.Q: timedelta(days=89),
    Granularity.Y: timedelta(days=365),
}
