"""Prometheus metrics exported by the controller."""

from prometheus_client import Counter, Gauge, Histogram

reconcile_total = Counter(
    "vapgen_reconcile_total",
    "Total number of reconciles by result",
    ["result"],
)

reconcile_duration = Histogram(
    "vapgen_reconcile_duration_seconds",
    "Time spent reconciling a ClusterPolicy",
)

queue_depth = Gauge(
    "vapgen_queue_depth", "Number of keys waiting in the work queue"
)

queue_requeues = Counter(
    "vapgen_queue_requeues_total", "Total number of rate limited requeues"
)

queue_dropped = Counter(
    "vapgen_queue_dropped_total", "Keys dropped after exceeding the retry limit"
)

derived_operations = Counter(
    "vapgen_derived_operations_total",
    "Create/update/delete operations against generated objects",
    ["kind", "operation", "result"],
)

events_posted = Counter(
    "vapgen_events_total", "Audit events posted by result", ["result"]
)
