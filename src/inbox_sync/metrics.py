"""Prometheus metrics for the conversation subsystem."""

from prometheus_client import CollectorRegistry, Counter

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

EVENTS_APPLIED = Counter(
    "events_applied_total", "Message events merged into the store", registry=CUSTOM_REGISTRY
)
EVENTS_DISCARDED = Counter(
    "events_discarded_total", "Malformed or failed events dropped", registry=CUSTOM_REGISTRY
)
RESYNCS = Counter(
    "resyncs_total", "Snapshot reloads after a channel reconnect", registry=CUSTOM_REGISTRY
)
LOAD_FAILURES = Counter(
    "load_failures_total", "Failed History API snapshot loads", registry=CUSTOM_REGISTRY
)
RECONNECT_ATTEMPTS = Counter(
    "reconnect_attempts_total", "Event channel reconnect attempts", registry=CUSTOM_REGISTRY
)
