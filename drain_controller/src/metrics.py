from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the drain controller on ``/metrics``."""

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "vpa_drain_reconciles_total",
            "Total pod reconciliations by result",
            ["result"],
        )
    )
    finalizers_added_total: Counter = field(
        default_factory=lambda: Counter(
            "vpa_drain_finalizers_added_total",
            "Total guard finalizers attached to pods",
        )
    )
    finalizers_removed_total: Counter = field(
        default_factory=lambda: Counter(
            "vpa_drain_finalizers_removed_total",
            "Total guard finalizers removed, by release reason",
            ["reason"],
        )
    )
    drain_decisions_total: Counter = field(
        default_factory=lambda: Counter(
            "vpa_drain_decisions_total",
            "Drain decisions taken for terminating pods",
            ["decision", "reason"],
        )
    )
    drain_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "vpa_drain_duration_seconds",
            "Seconds between deletion request and guard release",
            buckets=(5, 10, 30, 60, 120, 300, 600, 1800, 3600, 7200, float("inf")),
        )
    )
    config_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "vpa_drain_config_errors_total",
            "Rejected drain configurations, by offending key",
            ["key"],
        )
    )
    probe_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "vpa_drain_probe_errors_total",
            "Traffic probe failures (pod held as if traffic were present)",
        )
    )
    write_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "vpa_drain_write_conflicts_total",
            "Guard finalizer writes rejected by optimistic concurrency",
        )
    )
    pending_requeues: Gauge = field(
        default_factory=lambda: Gauge(
            "vpa_drain_pending_requeues",
            "Pods currently scheduled for a future reconcile",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "vpa_drain_watch_errors_total",
            "Total Kubernetes pod watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "vpa_drain_watch_reconnects_total",
            "Total pod watch stream reconnects after the initial connection",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "vpa_drain_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "vpa_drain_leader_state",
            "Whether this replica currently holds the leader lease (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "vpa_drain_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "vpa_drain",
            "Build information for the drain controller",
        )
    )


METRICS = ControllerMetrics()
