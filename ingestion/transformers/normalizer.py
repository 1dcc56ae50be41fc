
"""
Transform candidate records into validated time-series points with Pydantic
"""

from typing import Dict, Any, Type
from pydantic import ValidationError
from schemas.timeseries import AggregatePoint, ObservationPoint, UnivariatePoint
from models.base import Granularity, SeriesKind
from core.exceptions import RecordValidationError
import logging

logger = logging.getLogger(__name__)

POINT_SCHEMAS: Dict[SeriesKind, Type[ObservationPoint]] = {
    SeriesKind.AGGREGATE: AggregatePoint,
    SeriesKind.UNIVARIATE: UnivariatePoint,
}

# Candidate key -> point field
FIELD_ALIASES = {
    "timestamp": "ts",
    "adjusted": "aclose",
}


class RecordNormalizer:
    """
    Normalize candidate dicts of one series into validated points.

    Handles:
    - Key mapping (timestamp -> ts, adjusted -> aclose)
    - Series symbol and granularity defaults
    - Structural validation and the OHLC invariant (via the schema)
    """

    def __init__(self, kind: SeriesKind, symbol: str, granularity: Granularity):
        self.kind = SeriesKind(kind)
        self.symbol = symbol.strip().upper()
        self.granularity = Granularity(granularity)
        self.schema = POINT_SCHEMAS[self.kind]

    def normalize(self, candidate: Dict[str, Any]) -> ObservationPoint:
        """
        Validate one candidate.

        Raises:
            RecordValidationError: Missing or unparseable fields, a foreign
                symbol, or an OHLC violation
        """
        data = {}
        for key, value in candidate.items():
            target = FIELD_ALIASES.get(key, key)
            if target in data and data[target] not in (None, ""):
                continue
            data[target] = value

        symbol = data.get("symbol")
        if symbol in (None, ""):
            data["symbol"] = self.symbol
        elif str(symbol).strip().upper() != self.symbol:
            raise RecordValidationError(
                f"Record symbol {symbol!r} does not belong to series {self.symbol}",
                context={"reason": "symbol mismatch"}
            )
        data["granularity"] = self.granularity

        fields = set(self.schema.model_fields)
        try:
            return self.schema(**{k: v for k, v in data.items() if k in fields})
        except ValidationError as e:
            reason = self._describe(e)
            raise RecordValidationError(
                f"Invalid {self.kind.value} record: {reason}",
                context={"reason": reason},
                original_exception=e
            )

    @staticmethod
    def _describe(error: ValidationError) -> str:
        """One line per failing field, without pydantic's boilerplate"""
        parts = []
        for item in error.errors():
            location = ".".join(str(p) for p in item.get("loc", ()))
            message = item.get("msg", "invalid")
            if message.startswith("Value error, "):
                message = message[len("Value error, "):]
            parts.append(f"{location}: {message}" if location else message)
        return "; ".join(parts)
