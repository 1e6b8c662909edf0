"""Prometheus metrics exposed by the mail queue."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from .models import MessageState, QueueStats


class QueueMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.enqueued = Counter("gmq_enqueued_total", "Total queued messages", registry=self.registry)
        self.sent = Counter("gmq_sent_total", "Total delivered messages", registry=self.registry)
        self.retried = Counter("gmq_retried_total", "Total failed attempts sent back to pending", registry=self.registry)
        self.failed = Counter("gmq_failed_total", "Total messages that exhausted their retries", registry=self.registry)
        self.rate_limited = Counter("gmq_rate_limited_total", "Total ticks skipped by the rate limiter", registry=self.registry)
        self.messages = Gauge("gmq_messages", "Messages currently held by the queue", ["state"], registry=self.registry)

    def inc_enqueued(self):
        self.enqueued.inc()

    def inc_sent(self):
        self.sent.inc()

    def inc_retried(self):
        self.retried.inc()

    def inc_failed(self):
        self.failed.inc()

    def inc_rate_limited(self):
        self.rate_limited.inc()

    def set_queue_stats(self, stats: QueueStats):
        """Update the per-state gauge from a :class:`QueueStats` snapshot."""
        self.messages.labels(state=MessageState.PENDING.value).set(stats.pending)
        self.messages.labels(state=MessageState.IN_FLIGHT.value).set(stats.in_flight)
        self.messages.labels(state=MessageState.SENT.value).set(stats.sent)
        self.messages.labels(state=MessageState.FAILED.value).set(stats.failed)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
