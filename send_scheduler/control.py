"""Operator actions on scheduled items: reschedule, cancel and purge."""

from __future__ import annotations

import time
from typing import Any, Dict, Iterable, Optional

import aiosqlite

from .errors import ConflictError, NotFoundError, StoreError, ValidationError
from .logger import get_logger
from .models import TERMINAL_STATUSES, ItemStatus
from .persistence import Persistence

DEFAULT_ITEM_PURGE_DAYS = 7
DEFAULT_LOG_PURGE_DAYS = 30
# Bound on re-reads when a cancel races another transition.
CANCEL_MAX_ROUNDS = 3

_STORE_ERRORS = (aiosqlite.Error, OSError)


class OperatorControl:
    """Operator-facing mutations, each applied through one conditional transition.

    Every method either returns a result dict (``ok``, ``changed``,
    ``message``) or raises a :class:`~send_scheduler.errors.SchedulerError`
    subclass describing why nothing was changed.
    """

    def __init__(self, persistence: Persistence, logger=None):
        self.persistence = persistence
        self.logger = logger or get_logger("control")

    async def _load(self, item_id: Optional[str]) -> Dict[str, Any]:
        if not item_id:
            raise ValidationError("missing item_id")
        try:
            item = await self.persistence.get_item(item_id)
        except _STORE_ERRORS as exc:
            raise StoreError(f"Unable to read item '{item_id}': {exc}") from exc
        if item is None:
            raise NotFoundError(f"Item '{item_id}' not found")
        return item

    async def _transition(self, item: Dict[str, Any], to_status: ItemStatus, fields=None, now_ts=None) -> bool:
        item_id = item["id"]
        try:
            return await self.persistence.transition(
                item_id, item["status"], to_status, fields, expected_version=item["version"], now_ts=now_ts
            )
        except _STORE_ERRORS as exc:
            raise StoreError(f"Unable to update item '{item_id}': {exc}") from exc

    async def reschedule(self, item_id: Optional[str], new_ts: Optional[int], now_ts: Optional[int] = None) -> Dict[str, Any]:
        """Move an active item to ``new_ts``. Past times and terminal items are rejected."""
        if new_ts is None:
            raise ValidationError("missing new_time")
        now = int(time.time()) if now_ts is None else int(now_ts)
        if int(new_ts) < now:
            raise ValidationError("new_time is in the past")
        item = await self._load(item_id)
        status = ItemStatus(item["status"])
        if status.is_terminal:
            raise ConflictError(f"Item '{item_id}' is already {status.value} and cannot be rescheduled")
        applied = await self._transition(item, ItemStatus.RESCHEDULED, {"scheduled_ts": int(new_ts)}, now_ts=now)
        if not applied:
            raise ConflictError(f"Item '{item_id}' changed status concurrently; reschedule not applied")
        self.logger.info("Item %s rescheduled to %d", item_id, int(new_ts))
        return {"ok": True, "changed": True, "message": "Item rescheduled", "scheduled_ts": int(new_ts)}

    async def cancel(self, item_id: Optional[str], now_ts: Optional[int] = None) -> Dict[str, Any]:
        """Cancel an active item.

        Cancelling a terminal item, or losing every round of the race against
        concurrent transitions, is a reported no-op.
        """
        item = await self._load(item_id)
        for _ in range(CANCEL_MAX_ROUNDS):
            status = ItemStatus(item["status"])
            if status.is_terminal:
                return {"ok": True, "changed": False, "message": f"Item already terminal ({status.value})"}
            if await self._transition(item, ItemStatus.CANCELLED, now_ts=now_ts):
                self.logger.info("Item %s cancelled", item_id)
                return {"ok": True, "changed": True, "message": "Item cancelled"}
            item = await self._load(item_id)
        self.logger.info(
            "Cancel of item %s not applied: it kept changing during %d rounds", item_id, CANCEL_MAX_ROUNDS
        )
        return {"ok": True, "changed": False, "message": "Item changed concurrently; cancel not applied"}

    async def purge(
        self,
        older_than_days: int = DEFAULT_ITEM_PURGE_DAYS,
        statuses: Optional[Iterable[ItemStatus | str]] = None,
        now_ts: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Delete terminal items scheduled more than ``older_than_days`` ago."""
        days = self._validate_days(older_than_days)
        if statuses is None:
            wanted = set(TERMINAL_STATUSES)
        else:
            wanted = set()
            for value in statuses:
                try:
                    status = ItemStatus(value)
                except ValueError as exc:
                    raise ValidationError(f"unknown status '{value}'") from exc
                if not status.is_terminal:
                    raise ValidationError(f"status '{status.value}' is not terminal and cannot be purged")
                wanted.add(status)
            if not wanted:
                raise ValidationError("statuses must not be empty")
        now = int(time.time()) if now_ts is None else int(now_ts)
        threshold = now - days * 86400
        try:
            removed = await self.persistence.purge_items_older_than(threshold, wanted)
        except _STORE_ERRORS as exc:
            raise StoreError(f"Unable to purge items: {exc}") from exc
        self.logger.info("Purged %d item(s) older than %d day(s)", removed, days)
        return {"ok": True, "removed": removed, "message": f"{removed} old item(s) removed"}

    async def purge_logs(self, older_than_days: int = DEFAULT_LOG_PURGE_DAYS, now_ts: Optional[int] = None) -> Dict[str, Any]:
        """Delete execution log entries older than ``older_than_days``."""
        days = self._validate_days(older_than_days)
        now = int(time.time()) if now_ts is None else int(now_ts)
        try:
            removed = await self.persistence.purge_cron_logs_before(now - days * 86400)
        except _STORE_ERRORS as exc:
            raise StoreError(f"Unable to purge execution logs: {exc}") from exc
        return {"ok": True, "removed": removed, "message": f"{removed} log entries removed"}

    @staticmethod
    def _validate_days(value: Any) -> int:
        try:
            days = int(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError("days must be an integer") from exc
        if days < 0:
            raise ValidationError("days must not be negative")
        return days
