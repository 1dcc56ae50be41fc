"""
Reconcile candidate records against stored observations.

For every candidate, in stream order:

1. Structural validation (and the OHLC invariant); failures are rejected
   and journaled with their source row
2. Identity lookup by (symbol, granularity, ts)
3. Classification: new → buffered for bulk insert, unchanged → skipped,
   changed → updated

Buffered work is committed every ``batch_size`` candidates and at the end
of the stream. A bulk insert that hits a uniqueness conflict (a
concurrent writer won the race) is replayed record by record.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from core.exceptions import RecordValidationError, ReconciliationAborted
from ingestion.journal import RunJournal
from ingestion.loaders.store import TimeSeriesStore, is_unique_violation
from ingestion.stages import StageCounts
from ingestion.transformers.normalizer import RecordNormalizer
from schemas.timeseries import ObservationPoint
import logging

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    """Reconciliation outcome of one candidate"""
    NEW = "new"
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    INVALID = "invalid"


@dataclass
class ReconcileResult:
    """Counters of one reconciliation"""

    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    rejected: int = 0
    error_details: List[Dict[str, Any]] = field(default_factory=list)

    def counts(self) -> StageCounts:
        return StageCounts(
            successful=self.inserted + self.updated,
            failed=self.rejected,
            skipped=self.skipped,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "rejected": self.rejected,
        }


def _same_value(stored: Optional[float], candidate: Optional[float]) -> bool:
    if stored is None and candidate is None:
        return True
    if stored is None or candidate is None:
        return False
    return float(stored) == float(candidate)


def classify(existing: Optional[Any], point: ObservationPoint) -> Outcome:
    """
    Compare a validated candidate with the stored row of the same identity.

    Value fields are compared for exact numeric equality; a missing
    value on both sides is equal, on one side is a change.
    """
    if existing is None:
        return Outcome.NEW
    for name, value in point.value_dict().items():
        if not _same_value(getattr(existing, name), value):
            return Outcome.CHANGED
    return Outcome.UNCHANGED


class TimeSeriesLoader:
    """
    Upsert engine for one series.

    Attributes:
        batch_size: Candidates per committed batch (default: 1000)
        max_rejected: Rejections tolerated before aborting (default: 100)
    """

    def __init__(
        self,
        store: TimeSeriesStore,
        normalizer: RecordNormalizer,
        journal: Optional[RunJournal] = None,
        batch_size: int = 1000,
        max_rejected: int = 100
    ):
        self.store = store
        self.normalizer = normalizer
        self.journal = journal
        self.batch_size = max(1, batch_size)
        self.max_rejected = max_rejected

    async def reconcile(self, candidates: Iterable[Tuple[Any, Dict[str, Any]]]) -> ReconcileResult:
        """
        Apply ``(row_ref, candidate)`` pairs to the store.

        Returns:
            ReconcileResult with inserted/updated/skipped/rejected counts

        Raises:
            ReconciliationAborted: Rejections exceeded ``max_rejected``;
                batches committed before the abort are kept and the
                partial result is attached
        """
        result = ReconcileResult()
        pending: Dict[Tuple[Any, ...], Tuple[Any, Dict[str, Any]]] = {}
        pending_updates = 0
        in_batch = 0

        for row_ref, candidate in candidates:
            in_batch += 1

            try:
                point = self.normalizer.normalize(candidate)
            except RecordValidationError as e:
                await self._reject(result, row_ref, e.context.get("reason", e.message))
                await self._check_breaker(result, pending, pending_updates)
            else:
                identity = point.identity()
                if identity in pending:
                    if classify(_RowView(pending[identity][1]), point) == Outcome.UNCHANGED:
                        result.skipped += 1
                        continue
                    # Same key again with other values: store the first, update with the second
                    pending_updates = await self._flush(result, pending, pending_updates)
                    in_batch = 1

                existing = await self.store.get(*identity)
                outcome = classify(existing, point)

                if outcome == Outcome.NEW:
                    pending[identity] = (row_ref, point.to_row())
                elif outcome == Outcome.CHANGED:
                    await self.store.update(existing, point.value_dict())
                    pending_updates += 1
                else:
                    result.skipped += 1

            if in_batch >= self.batch_size:
                pending_updates = await self._flush(result, pending, pending_updates)
                await self._check_breaker(result, pending, pending_updates)
                in_batch = 0

        await self._flush(result, pending, pending_updates)
        await self._check_breaker(result, pending, 0)

        logger.info(
            f"Reconciled {self.normalizer.symbol} {self.normalizer.granularity.value}: "
            f"inserted={result.inserted} updated={result.updated} "
            f"skipped={result.skipped} rejected={result.rejected}"
        )
        return result

    async def _flush(
        self,
        result: ReconcileResult,
        pending: Dict[Tuple[Any, ...], Tuple[Any, Dict[str, Any]]],
        pending_updates: int
    ) -> int:
        """Commit buffered updates, then bulk insert buffered rows. Returns the new update count (0)."""
        if pending_updates:
            await self.store.commit()
            result.updated += pending_updates

        if not pending:
            return 0

        entries = list(pending.values())
        pending.clear()

        try:
            await self.store.bulk_insert([row for _, row in entries])
            await self.store.commit()
            result.inserted += len(entries)
            return 0
        except IntegrityError as e:
            await self.store.rollback()
            logger.warning(
                f"Bulk insert of {len(entries)} rows conflicted ({e.orig}); "
                f"falling back to per-record inserts"
            )

        for row_ref, row in entries:
            try:
                await self.store.insert_one(row)
                await self.store.commit()
                result.inserted += 1
            except IntegrityError as e:
                await self.store.rollback()
                if is_unique_violation(e):
                    result.skipped += 1
                else:
                    await self._reject(result, row_ref, f"storage error: {e.orig}")
            except SQLAlchemyError as e:
                await self.store.rollback()
                await self._reject(result, row_ref, f"storage error: {e}")

        return 0

    async def _reject(self, result: ReconcileResult, row_ref: Any, reason: str) -> None:
        result.rejected += 1
        result.error_details.append({"row": row_ref, "reason": reason})
        message = f"Row {row_ref} rejected: {reason}"
        if self.journal is not None:
            await self.journal.warn(message, row=row_ref, reason=reason)
        else:
            logger.warning(message)

    async def _check_breaker(
        self,
        result: ReconcileResult,
        pending: Dict[Tuple[Any, ...], Tuple[Any, Dict[str, Any]]],
        pending_updates: int
    ) -> None:
        if result.rejected <= self.max_rejected:
            return

        await self._flush(result, pending, pending_updates)
        raise ReconciliationAborted(
            f"Aborting reconciliation after {result.rejected} rejected records "
            f"(limit {self.max_rejected})",
            result=result,
            context=result.to_dict()
        )


class _RowView:
    """Attribute access over a buffered row, for classify()"""

    def __init__(self, row: Dict[str, Any]):
        self._row = row

    def __getattr__(self, name: str) -> Any:
        try:
            return self._row[name]
        except KeyError:
            raise AttributeError(name)
