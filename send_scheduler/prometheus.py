"""Prometheus metrics exposed by the send scheduler."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class SendMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("snd_sent_total", "Items delivered", ["instance"], registry=self.registry)
        self.failed = Counter("snd_failed_total", "Items failed after exhausting retries", ["instance"], registry=self.registry)
        self.rescheduled = Counter("snd_rescheduled_total", "Failed attempts scheduled for retry", ["instance"], registry=self.registry)
        self.skipped = Counter("snd_skipped_total", "Due items skipped because the instance was unavailable", ["instance"], registry=self.registry)
        self.conflicts = Counter("snd_conflicts_total", "Outcomes not applied because the item changed concurrently", ["instance"], registry=self.registry)
        self.ticks = Counter("snd_ticks_total", "Dispatch ticks by outcome", ["status"], registry=self.registry)
        self.pending = Gauge("snd_pending_items", "Items awaiting dispatch", registry=self.registry)

    def inc_sent(self, instance: str):
        """Increase the ``sent`` counter for the given instance."""
        self.sent.labels(instance=instance or "unknown").inc()

    def inc_failed(self, instance: str):
        """Increase the ``failed`` counter for the given instance."""
        self.failed.labels(instance=instance or "unknown").inc()

    def inc_rescheduled(self, instance: str):
        self.rescheduled.labels(instance=instance or "unknown").inc()

    def inc_skipped(self, instance: str):
        self.skipped.labels(instance=instance or "unknown").inc()

    def inc_conflict(self, instance: str):
        self.conflicts.labels(instance=instance or "unknown").inc()

    def inc_tick(self, status: str):
        """Count a finished tick labelled ``success`` or ``error``."""
        self.ticks.labels(status=status).inc()

    def set_pending(self, value: int):
        """Update the gauge tracking pending items."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
