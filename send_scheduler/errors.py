"""Error taxonomy shared by the scheduler core and its HTTP surface."""

from __future__ import annotations


class SchedulerError(RuntimeError):
    """Base class for errors surfaced to operators with a machine readable ``code``."""

    code = "scheduler_error"

    def __init__(self, message: str = "Scheduler error"):
        super().__init__(message)


class ValidationError(SchedulerError):
    """Raised when operator input is missing or invalid. Nothing is mutated."""

    code = "validation_error"


class NotFoundError(SchedulerError):
    """Raised when an operation targets an unknown item id."""

    code = "not_found"


class ConflictError(SchedulerError):
    """Raised when a conditional transition did not apply because the status moved."""

    code = "conflict"


class InvalidTransitionError(ConflictError):
    """Raised when a status change is not allowed by the transition table."""

    code = "invalid_transition"


class TransportError(SchedulerError):
    """Delivery attempt failed. Converted into a retry or failure, never propagated."""

    code = "transport_error"


class StoreError(SchedulerError):
    """Persistence layer unreachable."""

    code = "store_unavailable"
