from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Reconcile counters carry a ``result`` label (``success`` / ``error``) so
    alerting can track the error ratio without a second series.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "rabbitmq_operator_reconciles_total",
            "Total reconcile passes by result",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "rabbitmq_operator_reconcile_duration_seconds",
            "Seconds spent in one reconcile pass",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    child_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "rabbitmq_operator_child_writes_total",
            "Total child object writes by kind and action",
            ["kind", "action"],
        )
    )
    workload_restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "rabbitmq_operator_workload_restarts_total",
            "Total rolling restarts forced by configuration changes",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "rabbitmq_operator_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "rabbitmq_operator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    pending_retries: Gauge = field(
        default_factory=lambda: Gauge(
            "rabbitmq_operator_pending_retries",
            "Current number of clusters waiting for a reconcile retry",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "rabbitmq_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
