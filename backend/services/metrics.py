"""
Métriques Prometheus de la synchro registre.

Le coeur émet les valeurs, le transport (endpoint /metrics) appartient à l'app.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from backend.app.db.models.core_types import QueueStatus

# Registry dédié : pas de collision avec le registry global du process
REGISTRY = CollectorRegistry()

QUEUE_ITEMS = Gauge(
    "sync_queue_items",
    "Current number of sync queue items by status",
    ["status"],
    registry=REGISTRY,
)

DECISIONS_TOTAL = Counter(
    "sync_decisions_total",
    "Reconciliation decisions written to the history ledger",
    ["decision"],
    registry=REGISTRY,
)

CONFLICTS_TOTAL = Counter(
    "sync_conflicts_total",
    "Structural conflicts detected",
    ["reason"],
    registry=REGISTRY,
)

RETRY_ATTEMPTS_TOTAL = Counter(
    "sync_retry_attempts_total",
    "Queue items sent back for retry",
    ["outcome"],
    registry=REGISTRY,
)

CYCLES_TOTAL = Counter(
    "sync_cycles_total",
    "Orchestrator cycles by outcome",
    ["outcome"],
    registry=REGISTRY,
)

REGISTRY_REQUESTS_TOTAL = Counter(
    "sync_registry_requests_total",
    "HTTP requests sent to the external registry",
    ["endpoint", "outcome"],
    registry=REGISTRY,
)

REGISTRY_LATENCY = Histogram(
    "sync_registry_request_seconds",
    "External registry request latency in seconds",
    ["endpoint"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)


def set_queue_depth(depths: dict[QueueStatus, int]) -> None:
    for status in QueueStatus:
        QUEUE_ITEMS.labels(status=status.value).set(depths.get(status, 0))


def record_decision(decision: str) -> None:
    DECISIONS_TOTAL.labels(decision=decision).inc()


def render_latest() -> bytes:
    return generate_latest(REGISTRY)
