# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the mail dispatcher.

All metrics use the ``mds_`` prefix (mail-dispatch).

Metrics exposed:
    - ``mds_sent_total``: Jobs delivered, per provider.
    - ``mds_failed_total``: Jobs that exhausted their retries, per provider.
    - ``mds_retried_total``: Failed attempts rescheduled for retry, per provider.
    - ``mds_failover_total``: Sends moved to a fallback, per failing provider.
    - ``mds_pending_jobs``: Jobs currently waiting in the queue.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

UNKNOWN_PROVIDER = "none"


class MailMetrics:
    """Prometheus metrics collector for the mail dispatcher.

    Counters are labeled by ``provider_id``. Attempts that never reached a
    provider (no provider available) are labeled ``none``.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        sent: Counter of delivered jobs.
        failed: Counter of permanently failed jobs.
        retried: Counter of rescheduled attempts.
        failover: Counter of failover attempts.
        pending: Gauge of the current queue depth.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A fresh one is
                created when omitted, which keeps test instances isolated.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "mds_sent_total",
            "Total delivered emails",
            ["provider_id"],
            registry=self.registry,
        )
        self.failed = Counter(
            "mds_failed_total",
            "Total emails failed after exhausting retries",
            ["provider_id"],
            registry=self.registry,
        )
        self.retried = Counter(
            "mds_retried_total",
            "Total send attempts rescheduled for retry",
            ["provider_id"],
            registry=self.registry,
        )
        self.failover = Counter(
            "mds_failover_total",
            "Total sends moved to a fallback provider",
            ["provider_id"],
            registry=self.registry,
        )
        self.pending = Gauge(
            "mds_pending_jobs",
            "Current pending jobs",
            registry=self.registry,
        )

    def inc_sent(self, provider_id: str | None) -> None:
        self.sent.labels(provider_id=provider_id or UNKNOWN_PROVIDER).inc()

    def inc_failed(self, provider_id: str | None) -> None:
        self.failed.labels(provider_id=provider_id or UNKNOWN_PROVIDER).inc()

    def inc_retried(self, provider_id: str | None) -> None:
        self.retried.labels(provider_id=provider_id or UNKNOWN_PROVIDER).inc()

    def inc_failover(self, provider_id: str | None) -> None:
        """Count a failover away from ``provider_id``."""
        self.failover.labels(provider_id=provider_id or UNKNOWN_PROVIDER).inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
