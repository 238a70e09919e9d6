"""Append-only execution log of cron runs."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .logger import get_logger
from .models import CronStatus
from .persistence import Persistence


class ExecutionLog:
    """Best-effort writer for ``cron_logs``.

    A failed write is reported through the logger and swallowed: callers
    record after their state transitions and never depend on the outcome.
    """

    def __init__(self, persistence: Persistence, logger=None):
        self.persistence = persistence
        self.logger = logger or get_logger("execution_log")

    async def record(
        self,
        cron_kind: str,
        status: CronStatus | str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
        occurred_ts: Optional[int] = None,
    ) -> bool:
        """Append one entry. Returns ``False`` when the write failed."""
        entry = {
            "cron_kind": cron_kind,
            "status": CronStatus(status).value,
            "message": message,
            "details": details,
            "duration_ms": duration_ms,
            "occurred_ts": occurred_ts,
        }
        try:
            await self.persistence.insert_cron_log(entry)
        except Exception:
            self.logger.exception("Failed to record execution log entry for %s", cron_kind)
            return False
        return True
