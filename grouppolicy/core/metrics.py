"""Prometheus metrics exported by the controller."""

from prometheus_client import Counter, Gauge, Histogram

ERROR_RESOLUTION = "resolution"
ERROR_STATUS = "status"
ERROR_STORE = "store"

derivative_errors = Counter(
    "grouppolicy_derivative_errors_total",
    "Total number of derivative policy errors",
    ["error_type"],
)

reconcile_duration = Histogram(
    "grouppolicy_reconcile_duration_seconds",
    "Time spent reconciling a derivative policy",
    ["operation"],
)

tracked_derivatives_gauge = Gauge(
    "grouppolicy_tracked_derivatives",
    "Number of parent policies with an active derivative",
)
