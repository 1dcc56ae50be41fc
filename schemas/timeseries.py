"""
Pydantic schemas for time-series observations with validation
"""

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator
from typing import Optional, Tuple
from datetime import datetime, date, timezone
import math
from models.base import Granularity


def _parse_timestamp(value):
    """Accept datetimes, dates, ISO strings and unix seconds/milliseconds; return naive UTC"""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("timestamp is required")

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit() and len(value.strip()) >= 10):
        seconds = float(value)
        if seconds > 9_999_999_999:  # milliseconds
            seconds = seconds / 1000
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_number(value, field_name: str, required: bool = True) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValueError(f"{field_name} is required")
        return None
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field_name} is not a number: {value!r}")
    if math.isnan(number) or math.isinf(number):
        if required:
            raise ValueError(f"{field_name} is not a finite number: {value!r}")
        return None
    return number


class ObservationPoint(BaseModel):
    """Fields shared by every observation: the identity key"""

    symbol: str = Field(..., min_length=1, max_length=50)
    granularity: Granularity
    ts: datetime

    @field_validator("symbol", mode="before")
    @classmethod
    def clean_symbol(cls, v):
        if v is None:
            raise ValueError("symbol is required")
        v = str(v).strip().upper()
        if not v:
            raise ValueError("symbol cannot be empty")
        return v

    @field_validator("ts", mode="before")
    @classmethod
    def parse_ts(cls, v):
        return _parse_timestamp(v)

    def identity(self) -> Tuple[str, Granularity, datetime]:
        return (self.symbol, self.granularity, self.ts)

    @classmethod
    def value_fields(cls) -> Tuple[str, ...]:
        raise NotImplementedError

    def value_dict(self) -> dict:
        return {name: getattr(self, name) for name in self.value_fields()}

    def to_row(self) -> dict:
        return {
            "symbol": self.symbol,
            "granularity": self.granularity,
            "ts": self.ts,
            **self.value_dict(),
        }


class AggregatePoint(ObservationPoint):
    """
    OHLC observation.

    Ensures:
    - open/high/low/close parse as finite numbers, strictly positive
    - low <= open, close <= high
    - adjusted close defaults to close when the provider has none
    """

    open: float
    high: float
    low: float
    close: float
    aclose: Optional[float] = None
    volume: Optional[float] = None

    @field_validator("open", "high", "low", "close", mode="before")
    @classmethod
    def parse_price(cls, v, info: ValidationInfo):
        return _parse_number(v, info.field_name)

    @field_validator("aclose", "volume", mode="before")
    @classmethod
    def parse_optional(cls, v, info: ValidationInfo):
        return _parse_number(v, info.field_name, required=False)

    @model_validator(mode="after")
    def check_ohlc(self):
        if self.aclose is None:
            self.aclose = self.close

        for name in ("open", "high", "low", "close", "aclose"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

        if self.high < self.low:
            raise ValueError(f"high {self.high} is below low {self.low}")
        for name in ("open", "close"):
            value = getattr(self, name)
            if not (self.low <= value <= self.high):
                raise ValueError(
                    f"{name} {value} outside low/high range [{self.low}, {self.high}]"
                )
        return self

    @classmethod
    def value_fields(cls) -> Tuple[str, ...]:
        return ("open", "high", "low", "close", "aclose", "volume")


class UnivariatePoint(ObservationPoint):
    """Single scalar observation"""

    value: float

    @field_validator("value", mode="before")
    @classmethod
    def parse_value(cls, v):
        return _parse_number(v, "value")

    @classmethod
    def value_fields(cls) -> Tuple[str, ...]:
        return ("value",)
