"""
Time-series store: identity lookups and writes over SQLAlchemy
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession
from models.base import Granularity, SeriesKind
from models.observations import OBSERVATION_MODELS
import logging

logger = logging.getLogger(__name__)

# SQLSTATE unique_violation on PostgreSQL
UNIQUE_VIOLATION = "23505"


def is_unique_violation(exc: BaseException) -> bool:
    """Whether a storage error is an identity-key conflict (PostgreSQL or SQLite)"""
    orig = getattr(exc, "orig", exc)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code == UNIQUE_VIOLATION:
            return True

    message = str(orig).lower()
    return "unique" in message or "duplicate key" in message


class TimeSeriesStore:
    """
    Point lookups and writes on one observation table.

    The table is chosen by the series kind. Nothing is committed
    implicitly; the loader decides transaction boundaries.
    """

    def __init__(self, session: AsyncSession, kind: SeriesKind):
        self.session = session
        self.kind = SeriesKind(kind)
        self.model = OBSERVATION_MODELS[self.kind]

    async def get(self, symbol: str, granularity: Granularity, ts: datetime) -> Optional[Any]:
        result = await self.session.execute(
            select(self.model).where(
                self.model.symbol == symbol,
                self.model.granularity == granularity,
                self.model.ts == ts
            )
        )
        return result.scalar_one_or_none()

    async def latest_timestamp(self, symbol: str, granularity: Granularity) -> Optional[datetime]:
        """Timestamp of the most recent stored observation, if any"""
        result = await self.session.execute(
            select(func.max(self.model.ts)).where(
                self.model.symbol == symbol,
                self.model.granularity == granularity
            )
        )
        return result.scalar_one_or_none()

    async def count(self, symbol: str, granularity: Granularity) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(self.model).where(
                self.model.symbol == symbol,
                self.model.granularity == granularity
            )
        )
        return result.scalar_one()

    async def bulk_insert(self, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        now = datetime.utcnow()
        await self.session.execute(
            insert(self.model),
            [{**row, "created_at": now, "updated_at": now} for row in rows]
        )
        return len(rows)

    async def insert_one(self, row: Dict[str, Any]) -> None:
        self.session.add(self.model(**row))
        await self.session.flush()

    async def update(self, existing: Any, values: Dict[str, Any]) -> None:
        for name, value in values.items():
            setattr(existing, name, value)
        existing.updated_at = datetime.utcnow()

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
