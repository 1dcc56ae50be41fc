"""
Run audit log.

Every stage transition, fetch retry, rejected record and error of a run
is appended to ``pipeline_run_logs`` and mirrored to the process log.
"""

from typing import Any, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from models.base import LogLevel
from models.pipeline_run_log import PipelineRunLog
import logging

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class RunJournal:
    """
    Append-only audit writer bound to one run.

    Entries are committed immediately so they survive a crash of the
    stage that wrote them. A failing write is logged and never raised:
    the journal must not turn a recoverable problem into a failed run.
    """

    def __init__(self, session: AsyncSession, run_id: int):
        self.session = session
        self.run_id = run_id

    async def info(self, message: str, **context: Any) -> None:
        await self.write(LogLevel.INFO, message, context)

    async def warn(self, message: str, **context: Any) -> None:
        await self.write(LogLevel.WARN, message, context)

    async def error(self, message: str, **context: Any) -> None:
        await self.write(LogLevel.ERROR, message, context)

    async def write(
        self,
        level: LogLevel,
        message: str,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        logger.log(_LOG_LEVELS[level], f"[run {self.run_id}] {message}")

        try:
            self.session.add(
                PipelineRunLog(
                    pipeline_run_id=self.run_id,
                    level=level,
                    message=message,
                    context=_jsonable(context) if context else None,
                )
            )
            await self.session.commit()
        except Exception as e:
            logger.error(f"Failed to write audit entry for run {self.run_id}: {e}")
            await self.session.rollback()


def _jsonable(context: Dict[str, Any]) -> Dict[str, Any]:
    """Stringify values the JSON column cannot store"""
    cleaned = {}
    for key, value in context.items():
        if value is None or isinstance(value, (bool, int, float, str)):
            cleaned[key] = value
        elif isinstance(value, (list, tuple)):
            cleaned[key] = [v if isinstance(v, (bool, int, float, str)) else str(v) for v in value]
        else:
            cleaned[key] = str(value)
    return cleaned
