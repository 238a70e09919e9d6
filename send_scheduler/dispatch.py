"""Dispatch engine: one tick selects due items, delivers them and applies outcomes."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .errors import StoreError, TransportError
from .execution_log import ExecutionLog
from .logger import get_logger
from .models import DISPATCH_CRON_KIND, CronStatus, ItemStatus
from .persistence import Persistence
from .retry import RetryPolicy

DEFAULT_BATCH_SIZE = 50
DEFAULT_CONCURRENCY = 5
DEFAULT_DELIVERY_TIMEOUT = 30.0

OUTCOME_SENT = "sent"
OUTCOME_RESCHEDULED = "rescheduled"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_CONFLICT = "conflict"
OUTCOME_STORE_ERROR = "store_error"
OUTCOMES = (
    OUTCOME_SENT,
    OUTCOME_RESCHEDULED,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    OUTCOME_CONFLICT,
    OUTCOME_STORE_ERROR,
)

_STORE_ERRORS = (aiosqlite.Error, OSError)


@dataclass
class ItemOutcome:
    """What happened to one due item during a tick."""

    item_id: str
    instance_ref: str
    outcome: str
    attempts: Optional[int] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        data = {"id": self.item_id, "instance": self.instance_ref, "outcome": self.outcome}
        if self.attempts is not None:
            data["attempts"] = self.attempts
        if self.error:
            data["error"] = self.error
        if self.duration_ms is not None:
            data["duration_ms"] = self.duration_ms
        return data


@dataclass
class TickResult:
    """Aggregate result of one dispatch tick."""

    now_ts: int
    outcomes: List[ItemOutcome] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: int = 0
    logged: bool = False

    def count(self, outcome: str) -> int:
        return sum(1 for item in self.outcomes if item.outcome == outcome)

    @property
    def processed(self) -> int:
        """Number of due items selected for this tick."""
        return len(self.outcomes)

    @property
    def attempted(self) -> int:
        """Number of items for which a delivery attempt was made."""
        return sum(1 for item in self.outcomes if item.outcome != OUTCOME_SKIPPED)

    @property
    def status(self) -> CronStatus:
        if self.error or self.count(OUTCOME_FAILED) or self.count(OUTCOME_STORE_ERROR):
            return CronStatus.ERROR
        return CronStatus.SUCCESS

    def counts(self) -> Dict[str, int]:
        tally = Counter(item.outcome for item in self.outcomes)
        data = {"processed": self.processed, "attempted": self.attempted}
        data.update({name: tally.get(name, 0) for name in OUTCOMES})
        return data

    def summary(self) -> str:
        """Human readable one-liner stored as the log entry message."""
        if self.error:
            return f"Dispatch tick aborted: {self.error}"
        if not self.outcomes:
            return "No due items (processed=0)"
        counts = self.counts()
        parts = ", ".join(f"{name}={counts[name]}" for name in OUTCOMES if counts[name])
        return f"Processed {counts['processed']} due item(s): {parts}"


class DispatchEngine:
    """Select due items, deliver them and apply one conditional transition each.

    The engine holds no state between ticks. Items in a batch are processed
    concurrently, bounded by ``concurrency``; ownership of an item while its
    outcome is decided comes only from the conditional transition, which is
    attempted after the transport call returns.
    """

    def __init__(
        self,
        persistence: Persistence,
        transport,
        registry,
        execution_log: ExecutionLog,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT,
        metrics=None,
        logger=None,
        log_delivery_activity: bool = False,
    ):
        self.persistence = persistence
        self.transport = transport
        self.registry = registry
        self.execution_log = execution_log
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = max(1, int(batch_size))
        self.concurrency = max(1, int(concurrency))
        self.delivery_timeout = float(delivery_timeout)
        self.metrics = metrics
        self.logger = logger or get_logger("dispatch")
        self._log_delivery_activity = bool(log_delivery_activity)

    async def run_tick(self, now_ts: Optional[int] = None) -> TickResult:
        """Run one dispatch tick at ``now_ts`` (defaults to the current time)."""
        started = time.monotonic()
        now = int(time.time()) if now_ts is None else int(now_ts)
        result = TickResult(now_ts=now)
        try:
            batch = await self.persistence.list_due(now, self.batch_size)
        except _STORE_ERRORS as exc:
            error = StoreError(f"Unable to read due items: {exc}")
            self.logger.error("Dispatch tick skipped: %s", error)
            result.error = str(error)
            batch = []

        if batch:
            self.logger.debug("Dispatching %d due item(s) (now_ts=%d)", len(batch), now)
            semaphore = asyncio.Semaphore(self.concurrency)

            async def worker(item: Dict[str, Any]) -> ItemOutcome:
                async with semaphore:
                    return await self._dispatch_item(item, now)

            result.outcomes = list(await asyncio.gather(*(worker(item) for item in batch)))

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self._metric("inc_tick", result.status.value)
        result.logged = await self.execution_log.record(
            DISPATCH_CRON_KIND,
            result.status,
            message=result.summary(),
            details={**result.counts(), "items": [item.as_dict() for item in result.outcomes]},
            duration_ms=result.duration_ms,
            occurred_ts=now,
        )
        return result

    async def _dispatch_item(self, item: Dict[str, Any], now_ts: int) -> ItemOutcome:
        """Process one due item. Never raises."""
        item_id = item["id"]
        instance_ref = item["instance_ref"]
        current_status = item["status"]
        version = item["version"]
        attempts_before = int(item.get("attempts") or 0)

        try:
            available = await self.registry.is_available(instance_ref)
        except Exception as exc:
            self.logger.warning("Availability check failed for instance %s: %s", instance_ref, exc)
            available = False
        if not available:
            self.logger.debug("Instance %s unavailable, leaving item %s due", instance_ref, item_id)
            self._metric("inc_skipped", instance_ref)
            return ItemOutcome(item_id, instance_ref, OUTCOME_SKIPPED, attempts=attempts_before)

        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery for item %s to %s (instance=%s, attempt=%d)",
                item_id,
                item.get("recipient_ref") or "-",
                instance_ref,
                attempts_before + 1,
            )
        started = time.monotonic()
        ok, error_info = await self._attempt_delivery(item)
        duration_ms = int((time.monotonic() - started) * 1000)

        if ok:
            target = ItemStatus.SENT
            fields: Dict[str, Any] = {"sent_ts": now_ts, "last_error": None}
            outcome = OUTCOME_SENT
            delay = None
        else:
            decision = self.retry_policy.on_failure(attempts_before, now_ts)
            target = decision.status
            delay = decision.delay
            fields = {"last_error": error_info}
            if decision.status is ItemStatus.RESCHEDULED:
                fields["scheduled_ts"] = decision.scheduled_ts
                outcome = OUTCOME_RESCHEDULED
            else:
                outcome = OUTCOME_FAILED

        try:
            applied = await self.persistence.transition(
                item_id,
                current_status,
                target,
                fields,
                increment_attempts=True,
                expected_version=version,
                now_ts=now_ts,
            )
        except _STORE_ERRORS as exc:
            self.logger.error("Failed to record outcome '%s' for item %s: %s", outcome, item_id, exc)
            return ItemOutcome(
                item_id, instance_ref, OUTCOME_STORE_ERROR,
                attempts=attempts_before, error=str(exc), duration_ms=duration_ms,
            )

        if not applied:
            self.logger.info(
                "Outcome '%s' for item %s discarded: item changed since it was selected as %s",
                outcome,
                item_id,
                current_status,
            )
            self._metric("inc_conflict", instance_ref)
            return ItemOutcome(
                item_id, instance_ref, OUTCOME_CONFLICT,
                attempts=attempts_before, error=error_info, duration_ms=duration_ms,
            )

        attempts = attempts_before + 1
        self._log_outcome(item_id, instance_ref, outcome, attempts, error_info, delay)
        self._metric(f"inc_{outcome}", instance_ref)
        return ItemOutcome(item_id, instance_ref, outcome, attempts=attempts, error=error_info, duration_ms=duration_ms)

    async def _attempt_delivery(self, item: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        """Call the transport under the delivery timeout, folding every error into a failure."""
        try:
            async with asyncio.timeout(self.delivery_timeout):
                ok, error_info = await self.transport.deliver(
                    item["recipient_ref"], item["instance_ref"], item.get("payload")
                )
        except TimeoutError:
            return False, f"Delivery timed out after {self.delivery_timeout:g}s"
        except TransportError as exc:
            return False, str(exc)
        except Exception as exc:
            return False, f"{type(exc).__name__}: {exc}"
        if not ok:
            return False, error_info or "Delivery failed"
        return True, None

    def _metric(self, name: str, label: str) -> None:
        if self.metrics is None:
            return
        try:
            getattr(self.metrics, name)(label)
        except Exception as exc:
            self.logger.warning("Metric %s(%s) failed: %s", name, label, exc)

    def _log_outcome(
        self,
        item_id: str,
        instance_ref: str,
        outcome: str,
        attempts: int,
        error_info: Optional[str],
        delay: Optional[int],
    ) -> None:
        if outcome == OUTCOME_SENT:
            if self._log_delivery_activity:
                self.logger.info("Delivery succeeded for item %s (instance=%s)", item_id, instance_ref)
            return
        if outcome == OUTCOME_RESCHEDULED:
            self.logger.warning(
                "Delivery failed for item %s (attempt %d/%d): %s - retrying in %ds",
                item_id,
                attempts,
                self.retry_policy.max_attempts,
                error_info,
                delay or 0,
            )
            return
        self.logger.error(
            "Item %s failed permanently after %d attempts: %s",
            item_id,
            attempts,
            error_info,
        )
