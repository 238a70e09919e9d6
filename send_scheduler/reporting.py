"""Read-only views over the execution log and the scheduled-item queue."""

from __future__ import annotations

import math
import time
from typing import Any, Dict, Optional

from .persistence import Persistence

DAY_SECONDS = 24 * 3600
STATS_WINDOW_SECONDS = 7 * DAY_SECONDS
UPCOMING_HORIZON_SECONDS = DAY_SECONDS
UPCOMING_LIMIT = 50
MAX_PAGE_SIZE = 500


def _round_avg(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(float(value), 2)


class Reporting:
    """Shapes persistence queries into the payloads served to operators."""

    def __init__(self, persistence: Persistence):
        self.persistence = persistence

    async def cron_log_page(
        self,
        page: int = 1,
        limit: int = 50,
        cron_kind: Optional[str] = None,
        now_ts: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Page of log entries (newest first), pagination info and 7-day per-kind statistics."""
        page = max(1, int(page))
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        now = int(time.time()) if now_ts is None else int(now_ts)
        logs = await self.persistence.list_cron_logs(
            limit=limit, offset=(page - 1) * limit, cron_kind=cron_kind
        )
        total = await self.persistence.count_cron_logs(cron_kind=cron_kind)
        statistics = await self.persistence.cron_kind_statistics(now - STATS_WINDOW_SECONDS)
        for row in statistics:
            row["avg_duration_ms"] = _round_avg(row.get("avg_duration_ms"))
        return {
            "logs": logs,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
            "statistics": statistics,
        }

    async def cron_overview(self, now_ts: Optional[int] = None) -> Dict[str, Any]:
        """24-hour per-kind/status rollup, latest run per kind and 7-day totals."""
        now = int(time.time()) if now_ts is None else int(now_ts)
        recent = await self.persistence.cron_recent_runs(now - DAY_SECONDS)
        for row in recent:
            row["avg_duration_ms"] = _round_avg(row.get("avg_duration_ms"))
        latest = await self.persistence.cron_latest_per_kind()
        totals = await self.persistence.cron_totals(now - STATS_WINDOW_SECONDS)
        totals["avg_duration_ms"] = _round_avg(totals.get("avg_duration_ms"))
        return {
            "recent_runs": recent,
            "latest_runs": latest,
            "totals": totals,
            "period": "24h",
        }

    async def upcoming_items(self, now_ts: Optional[int] = None) -> Dict[str, Any]:
        """Items due in the next 24 hours, the 24-hour status breakdown and a per-instance view."""
        now = int(time.time()) if now_ts is None else int(now_ts)
        items = await self.persistence.list_upcoming_items(now, UPCOMING_HORIZON_SECONDS, UPCOMING_LIMIT)
        statistics = await self.persistence.item_statistics(now, DAY_SECONDS)
        by_instance = await self.persistence.upcoming_by_instance(now, UPCOMING_HORIZON_SECONDS)
        return {
            "items": items,
            "statistics": statistics,
            "by_instance": by_instance,
            "period": "next 24h",
        }
