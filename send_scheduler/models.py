"""Status enums and the transition table for scheduled items."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet

from .errors import InvalidTransitionError


class ItemStatus(str, Enum):
    """Lifecycle of a scheduled item.

    Attributes:
        PENDING: Created by a scheduling request, awaiting dispatch.
        RESCHEDULED: Moved by a retry or by an operator, awaiting dispatch.
        SENT: Delivered (terminal).
        FAILED: Retries exhausted (terminal).
        CANCELLED: Cancelled by an operator (terminal).
    """

    PENDING = "pending"
    RESCHEDULED = "rescheduled"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class CronStatus(str, Enum):
    """Outcome recorded in an execution log entry."""

    SUCCESS = "success"
    ERROR = "error"


ACTIVE_STATUSES: FrozenSet[ItemStatus] = frozenset({ItemStatus.PENDING, ItemStatus.RESCHEDULED})
TERMINAL_STATUSES: FrozenSet[ItemStatus] = frozenset(
    {ItemStatus.SENT, ItemStatus.FAILED, ItemStatus.CANCELLED}
)

# Every move out of an active status; terminal statuses have no outgoing edge.
ALLOWED_TRANSITIONS: Dict[ItemStatus, FrozenSet[ItemStatus]] = {
    ItemStatus.PENDING: frozenset(
        {ItemStatus.SENT, ItemStatus.RESCHEDULED, ItemStatus.FAILED, ItemStatus.CANCELLED}
    ),
    ItemStatus.RESCHEDULED: frozenset(
        {ItemStatus.SENT, ItemStatus.RESCHEDULED, ItemStatus.FAILED, ItemStatus.CANCELLED}
    ),
    ItemStatus.SENT: frozenset(),
    ItemStatus.FAILED: frozenset(),
    ItemStatus.CANCELLED: frozenset(),
}

DISPATCH_CRON_KIND = "scheduled_dispatch"
RETENTION_CRON_KIND = "retention_cleanup"


def coerce_status(value: ItemStatus | str) -> ItemStatus:
    """Return the :class:`ItemStatus` for ``value`` or raise ``InvalidTransitionError``."""
    try:
        return ItemStatus(value)
    except ValueError as exc:
        raise InvalidTransitionError(f"Unknown status '{value}'") from exc


def check_transition(from_status: ItemStatus | str, to_status: ItemStatus | str) -> tuple[ItemStatus, ItemStatus]:
    """Validate a status change against :data:`ALLOWED_TRANSITIONS`."""
    source = coerce_status(from_status)
    target = coerce_status(to_status)
    if target not in ALLOWED_TRANSITIONS[source]:
        raise InvalidTransitionError(f"Transition {source.value} -> {target.value} is not allowed")
    return source, target
