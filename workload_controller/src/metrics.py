from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Failures carry an ``error`` label taken from
    :attr:`ReconcileError.label` so operators can tell validation problems
    apart from API outages.
    """

    reconciliations_total: Counter = field(
        default_factory=lambda: Counter(
            "myworkload_reconciliations_total",
            "Total reconciliation attempts",
        )
    )
    reconcile_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "myworkload_reconcile_failures_total",
            "Total failed reconciliation attempts",
            ["error"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "myworkload_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation attempt",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "myworkload_queue_depth",
            "Object keys waiting in the work queue",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "myworkload_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "myworkload_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "myworkload_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
