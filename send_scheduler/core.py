"""Core orchestration logic for the send scheduler."""

from __future__ import annotations

import asyncio
import math
import time
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, List, Optional, Sequence, Tuple

from zoneinfo import ZoneInfo

from .control import DEFAULT_ITEM_PURGE_DAYS, DEFAULT_LOG_PURGE_DAYS, OperatorControl
from .dispatch import DEFAULT_BATCH_SIZE, DEFAULT_CONCURRENCY, DEFAULT_DELIVERY_TIMEOUT, DispatchEngine, TickResult
from .errors import SchedulerError, ValidationError
from .execution_log import ExecutionLog
from .logger import get_logger
from .models import RETENTION_CRON_KIND, CronStatus
from .persistence import Persistence
from .prometheus import SendMetrics
from .reporting import Reporting
from .retry import DEFAULT_MAX_ATTEMPTS, RetryPolicy
from .transport import HttpTransport, InstanceRegistry

DEFAULT_TICK_INTERVAL = 60.0
DEFAULT_MAINTENANCE_INTERVAL = 3600.0


def parse_timestamp(value: Any, field: str, tz: tzinfo) -> int:
    """Accept epoch seconds or an ISO-8601 string; naive datetimes are read in ``tz``."""
    if value is None or value == "":
        raise ValidationError(f"missing {field}")
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValidationError(f"invalid {field}")
    try:
        if isinstance(value, str):
            text = value.strip()
            digits = text.lstrip("-")
            if digits.isascii() and digits.isdigit():
                ts = int(text)
            else:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=tz)
                ts = int(parsed.timestamp())
        else:
            ts = int(value)
    except (ValueError, OverflowError) as exc:
        raise ValidationError(f"invalid {field}: {value!r}") from exc
    # Anything datetime cannot represent would also overflow the INTEGER column.
    try:
        datetime.fromtimestamp(ts, timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise ValidationError(f"{field} out of range: {value!r}") from exc
    return ts


class AsyncSendCore:
    """Coordinate the dispatch trigger, operator commands, retention and reporting."""

    def __init__(
        self,
        *,
        db_path: str | None = "/data/send_scheduler.db",
        logger=None,
        metrics: SendMetrics | None = None,
        start_active: bool = True,
        timezone: str = "Europe/Rome",
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dispatch_concurrency: int = DEFAULT_CONCURRENCY,
        delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delays: Optional[Sequence[int]] = None,
        gateway_url: str | None = None,
        gateway_token: str | None = None,
        transport=None,
        registry=None,
        item_retention_days: int = 0,
        log_retention_days: int = 0,
        maintenance_interval: float = DEFAULT_MAINTENANCE_INTERVAL,
        max_enqueue_batch: int = 1000,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
    ):
        """Prepare the runtime collaborators and trigger state."""
        self.logger = logger or get_logger()
        self.persistence = Persistence(db_path or ":memory:")
        self.metrics = metrics or SendMetrics()
        self.timezone = ZoneInfo(timezone)
        self.execution_log = ExecutionLog(self.persistence, logger=self.logger)
        self.registry = registry or InstanceRegistry(self.persistence)
        self.transport = transport or HttpTransport(gateway_url, gateway_token)
        self.retry_policy = RetryPolicy(max_attempts=max_attempts, delays=retry_delays)
        self.engine = DispatchEngine(
            self.persistence,
            self.transport,
            self.registry,
            self.execution_log,
            retry_policy=self.retry_policy,
            batch_size=batch_size,
            concurrency=dispatch_concurrency,
            delivery_timeout=delivery_timeout,
            metrics=self.metrics,
            logger=self.logger,
            log_delivery_activity=log_delivery_activity,
        )
        self.control = OperatorControl(self.persistence, logger=self.logger)
        self.reporting = Reporting(self.persistence)

        self._test_mode = bool(test_mode)
        self._active = bool(start_active)
        self._tick_interval = math.inf if self._test_mode else max(0.05, float(tick_interval))
        self._maintenance_interval = max(1.0, float(maintenance_interval))
        self._item_retention_days = max(0, int(item_retention_days))
        self._log_retention_days = max(0, int(log_retention_days))
        self._max_enqueue_batch = max(1, int(max_enqueue_batch))

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_dispatch: Optional[asyncio.Task] = None
        self._task_maintenance: Optional[asyncio.Task] = None
        self.last_tick: Optional[TickResult] = None

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now_epoch() -> int:
        """Return the current UTC timestamp as seconds since epoch."""
        return int(datetime.now(timezone.utc).timestamp())

    def _parse_timestamp(self, value: Any, field: str) -> int:
        return parse_timestamp(value, field, self.timezone)

    async def init(self) -> None:
        """Initialise persistence."""
        await self.persistence.init_db()
        await self._refresh_queue_gauge()

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload if isinstance(payload, dict) else {}
        try:
            return await self._handle_command(cmd, payload)
        except SchedulerError as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}

    async def _handle_command(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "run now":
            self._wake_event.set()
            return {"ok": True}
        if cmd == "suspend":
            self._active = False
            return {"ok": True, "active": False}
        if cmd == "activate":
            self._active = True
            return {"ok": True, "active": True}
        if cmd == "addInstance":
            if not payload.get("id"):
                raise ValidationError("missing 'id'")
            await self.persistence.add_instance(payload)
            return {"ok": True}
        if cmd == "listInstances":
            return {"ok": True, "instances": await self.persistence.list_instances()}
        if cmd == "setInstanceStatus":
            instance_id = payload.get("id")
            status = payload.get("status")
            if not instance_id or not status:
                raise ValidationError("missing 'id' or 'status'")
            if not await self.persistence.set_instance_status(instance_id, str(status)):
                return {"ok": False, "error": f"Instance '{instance_id}' not found", "code": "not_found"}
            return {"ok": True}
        if cmd == "addRecipient":
            if not payload.get("id"):
                raise ValidationError("missing 'id'")
            await self.persistence.add_recipient(payload)
            return {"ok": True}
        if cmd == "addItems":
            return await self._handle_add_items(payload)
        if cmd == "listItems":
            active_only = bool(payload.get("active_only", False))
            return {"ok": True, "items": await self.persistence.list_items(active_only=active_only)}
        if cmd == "reschedule":
            new_time = payload.get("new_time")
            new_ts = None if new_time in (None, "") else self._parse_timestamp(new_time, "new_time")
            return await self.control.reschedule(payload.get("item_id"), new_ts, now_ts=self._utc_now_epoch())
        if cmd == "cancel":
            return await self.control.cancel(payload.get("item_id"))
        if cmd == "purgeItems":
            return await self.control.purge(
                payload.get("days", DEFAULT_ITEM_PURGE_DAYS),
                payload.get("statuses"),
            )
        if cmd == "listCronLogs":
            page = await self.reporting.cron_log_page(
                page=payload.get("page", 1),
                limit=payload.get("limit", 50),
                cron_kind=payload.get("cron_kind"),
            )
            return {"ok": True, **page}
        if cmd == "recordCronLog":
            return await self._handle_record_cron_log(payload)
        if cmd == "purgeCronLogs":
            return await self.control.purge_logs(payload.get("days", DEFAULT_LOG_PURGE_DAYS))
        if cmd == "cronStats":
            return {"ok": True, **await self.reporting.cron_overview()}
        if cmd == "upcomingItems":
            return {"ok": True, **await self.reporting.upcoming_items()}
        return {"ok": False, "error": "unknown command"}

    async def _handle_add_items(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        items = payload.get("items")
        if not isinstance(items, list):
            return {"ok": False, "error": "items must be a list", "code": ValidationError.code}
        if len(items) > self._max_enqueue_batch:
            return {
                "ok": False,
                "error": f"Cannot schedule more than {self._max_enqueue_batch} items at once",
                "code": ValidationError.code,
            }

        validated: List[Dict[str, Any]] = []
        rejected: List[Dict[str, Any]] = []
        for item in items:
            if not isinstance(item, dict):
                rejected.append({"id": None, "reason": "invalid payload"})
                continue
            entry, reason = self._validate_item(item)
            if entry is None:
                rejected.append({"id": item.get("id"), "reason": reason})
                continue
            validated.append(entry)

        if not validated:
            return {"ok": False, "error": "all items rejected", "rejected": rejected, "code": ValidationError.code}

        existing_ids = await self.persistence.existing_item_ids(entry["id"] for entry in validated)
        fresh = []
        for entry in validated:
            if entry["id"] in existing_ids:
                rejected.append({"id": entry["id"], "reason": "duplicate id"})
            else:
                fresh.append(entry)
        inserted = await self.persistence.insert_items(fresh)
        for entry in fresh:
            if entry["id"] not in inserted:
                rejected.append({"id": entry["id"], "reason": "duplicate id"})

        await self._refresh_queue_gauge()
        return {"ok": True, "queued": len(inserted), "rejected": rejected}

    def _validate_item(self, item: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        for key in ("id", "recipient_ref", "instance_ref"):
            if not item.get(key):
                return None, f"missing {key}"
        try:
            scheduled_ts = self._parse_timestamp(
                item.get("scheduled_time", item.get("scheduled_ts")), "scheduled_time"
            )
        except ValidationError as exc:
            return None, str(exc)
        return {
            "id": str(item["id"]),
            "recipient_ref": str(item["recipient_ref"]),
            "instance_ref": str(item["instance_ref"]),
            "payload": item.get("payload"),
            "scheduled_ts": scheduled_ts,
        }, None

    async def _handle_record_cron_log(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        cron_kind = payload.get("cron_kind")
        status = payload.get("status")
        if not cron_kind or not status:
            raise ValidationError("cron_kind and status are required")
        try:
            status = CronStatus(status)
        except ValueError as exc:
            raise ValidationError(f"status must be one of: {', '.join(s.value for s in CronStatus)}") from exc
        duration = payload.get("duration_ms")
        if duration is not None:
            try:
                duration = int(duration)
            except (TypeError, ValueError, OverflowError) as exc:
                raise ValidationError("duration_ms must be an integer") from exc
        recorded = await self.execution_log.record(
            str(cron_kind),
            status,
            message=payload.get("message"),
            details=payload.get("details"),
            duration_ms=duration,
        )
        if not recorded:
            return {"ok": False, "error": "Unable to record execution log entry", "code": "store_unavailable"}
        return {"ok": True, "message": "Execution log entry recorded"}

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the background dispatch and maintenance tasks."""
        self.logger.debug("Starting AsyncSendCore...")
        await self.init()
        self._stop.clear()
        self._task_dispatch = asyncio.create_task(self._dispatch_loop(), name="dispatch-loop")
        if not self._test_mode:
            self._task_maintenance = asyncio.create_task(self._maintenance_loop(), name="maintenance-loop")
        self.logger.debug("All background tasks created")

    async def stop(self) -> None:
        """Stop the background tasks gracefully."""
        self._stop.set()
        self._wake_event.set()
        if self._task_maintenance:
            self._task_maintenance.cancel()
        await asyncio.gather(
            *(task for task in [self._task_dispatch, self._task_maintenance] if task),
            return_exceptions=True,
        )

    # ------------------------------------------------------------------ dispatch
    async def run_tick(self, now_ts: Optional[int] = None) -> TickResult:
        """Run one dispatch tick and refresh the queue gauge."""
        result = await self.engine.run_tick(now_ts)
        self.last_tick = result
        await self._refresh_queue_gauge()
        return result

    async def _dispatch_loop(self) -> None:
        """Wake at every tick interval (or on 'run now') and dispatch due items."""
        self.logger.debug("Dispatch loop started")
        first_iteration = True
        while not self._stop.is_set():
            if first_iteration and self._test_mode:
                self.logger.info("First iteration in test mode, waiting for wakeup")
                await self._wait_for_wakeup(self._tick_interval)
            first_iteration = False
            if self._stop.is_set():
                break
            if self._active:
                try:
                    result = await self.run_tick()
                    self.logger.debug("Dispatch tick finished: %s", result.summary())
                except Exception as exc:  # pragma: no cover
                    self.logger.exception("Unhandled error in dispatch loop: %s", exc)
            await self._wait_for_wakeup(self._tick_interval)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()

    # --------------------------------------------------------------- maintenance
    async def _maintenance_loop(self) -> None:
        """Background coroutine applying the configured retention."""
        while not self._stop.is_set():
            await asyncio.sleep(self._maintenance_interval)
            try:
                await self.apply_retention()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in maintenance loop: %s", exc)

    async def apply_retention(self, now_ts: Optional[int] = None) -> Dict[str, int]:
        """Purge terminal items and old log entries past their retention."""
        if not self._item_retention_days and not self._log_retention_days:
            return {}
        started = time.monotonic()
        removed: Dict[str, int] = {}
        status = CronStatus.SUCCESS
        message_parts: List[str] = []
        try:
            if self._item_retention_days:
                result = await self.control.purge(self._item_retention_days, now_ts=now_ts)
                removed["items"] = result["removed"]
                message_parts.append(result["message"])
            if self._log_retention_days:
                result = await self.control.purge_logs(self._log_retention_days, now_ts=now_ts)
                removed["logs"] = result["removed"]
                message_parts.append(result["message"])
        except SchedulerError as exc:
            status = CronStatus.ERROR
            message_parts.append(str(exc))
            self.logger.error("Retention cleanup failed: %s", exc)
        await self.execution_log.record(
            RETENTION_CRON_KIND,
            status,
            message="; ".join(message_parts),
            details=removed,
            duration_ms=int((time.monotonic() - started) * 1000),
            occurred_ts=now_ts,
        )
        if removed.get("items"):
            await self._refresh_queue_gauge()
        return removed

    async def _refresh_queue_gauge(self) -> None:
        """Refresh the metric describing pending items."""
        try:
            count = await self.persistence.count_active_items()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_pending(count)
