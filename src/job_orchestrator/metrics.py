"""
Prometheus metrics for the orchestrator.

Registered on the global REGISTRY at import time; the CLI ``run`` command can
expose them with ``--metrics-port``.
"""

from prometheus_client import Counter, Histogram


STREAM_APPENDS_TOTAL = Counter(
    "orch_stream_appends_total",
    "Messages appended to a stream",
    ["stream"],
)

STREAM_CLAIMS_TOTAL = Counter(
    "orch_stream_claims_total",
    "Claim calls issued against a consumer group",
    ["stream", "mode"],
)

MESSAGES_HANDLED_TOTAL = Counter(
    "orch_messages_handled_total",
    "Messages handled by consumers",
    ["stream", "outcome"],
)

DRAIN_DURATION_SECONDS = Histogram(
    "orch_drain_duration_seconds",
    "Duration of a notification-driven drain",
    ["stream"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30],
)

RECONCILE_ACTIONS_TOTAL = Counter(
    "orch_reconcile_actions_total",
    "Actions taken by the external job reconciler",
    ["action"],
)

PROVIDER_CALLS_TOTAL = Counter(
    "orch_provider_calls_total",
    "External provider API calls",
    ["operation", "outcome"],
)


class MetricsRegistry:
    """Structured access to orchestrator metrics."""

    stream_appends_total = STREAM_APPENDS_TOTAL
    stream_claims_total = STREAM_CLAIMS_TOTAL
    messages_handled_total = MESSAGES_HANDLED_TOTAL
    drain_duration_seconds = DRAIN_DURATION_SECONDS
    reconcile_actions_total = RECONCILE_ACTIONS_TOTAL
    provider_calls_total = PROVIDER_CALLS_TOTAL


metrics_registry = MetricsRegistry()
