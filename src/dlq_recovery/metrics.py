"""
Prometheus metrics for DLQ recovery.

Provides instrumentation for:
- Messages scanned and skipped per DLQ topic
- Recovery attempts by action and outcome
- Publish and commit latency

A CLI invocation is too short-lived to be scraped, so metrics are pushed to a
Pushgateway when PROMETHEUS_PUSHGATEWAY is set.
"""

import logging
import os
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, push_to_gateway

logger = logging.getLogger(__name__)

registry = CollectorRegistry()

messages_scanned_total = Counter(
    "dlq_messages_scanned_total",
    "Total number of DLQ messages read during scans",
    ["topic"],
    registry=registry,
)

messages_skipped_total = Counter(
    "dlq_messages_skipped_total",
    "Total number of DLQ messages skipped because they could not be decoded",
    ["topic"],
    registry=registry,
)

scans_total = Counter(
    "dlq_scans_total",
    "Total number of scans by termination reason",
    ["topic", "outcome"],  # outcome: matched, end_of_partition, error
    registry=registry,
)

recoveries_total = Counter(
    "dlq_recoveries_total",
    "Total number of recovery attempts by action and final state",
    ["action", "state"],  # action: republish, archive
    registry=registry,
)

_LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

publish_duration_seconds = Histogram(
    "dlq_publish_duration_seconds",
    "Time spent waiting for the broker to acknowledge a recovered message",
    ["destination_topic"],
    buckets=_LATENCY_BUCKETS,
    registry=registry,
)

commit_duration_seconds = Histogram(
    "dlq_commit_duration_seconds",
    "Time spent committing the DLQ offset",
    ["topic"],
    buckets=_LATENCY_BUCKETS,
    registry=registry,
)


def record_message_scanned(topic: str, skipped: bool = False) -> None:
    messages_scanned_total.labels(topic=topic).inc()
    if skipped:
        messages_skipped_total.labels(topic=topic).inc()


def record_scan_finished(topic: str, outcome: str) -> None:
    scans_total.labels(topic=topic, outcome=outcome).inc()


def record_recovery(action: str, state: str) -> None:
    recoveries_total.labels(action=action, state=state).inc()


def push_metrics(job: str = "dlq_recovery", gateway: Optional[str] = None) -> bool:
    """
    Push the invocation's metrics to a Prometheus Pushgateway.

    Args:
        job: Pushgateway job label
        gateway: Gateway address (default: PROMETHEUS_PUSHGATEWAY env var)

    Returns:
        True if metrics were pushed, False if no gateway is configured or the
        push failed. A failed push never fails the recovery itself.
    """
    gateway = gateway or os.getenv("PROMETHEUS_PUSHGATEWAY")
    if not gateway:
        return False
    try:
        push_to_gateway(gateway, job=job, registry=registry)
    except OSError as e:
        logger.warning(
            "Failed to push metrics",
            extra={"error_message": str(e)},
        )
        return False
    logger.debug("Pushed metrics", extra={"gateway": gateway})
    return True


__all__ = [
    "commit_duration_seconds",
    "publish_duration_seconds",
    "push_metrics",
    "record_message_scanned",
    "record_recovery",
    "record_scan_finished",
    "registry",
]
