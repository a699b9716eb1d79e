from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Per-canary series carry ``namespace`` and ``name`` labels so operators can
    alert on a single stuck or failing release.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "canary_reconcile_total",
            "Total reconcile attempts by phase at the start of the attempt",
            ["phase"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "canary_reconcile_errors_total",
            "Total reconcile attempts that ended with a classified error",
            ["error"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "canary_reconcile_duration_seconds",
            "Seconds spent in a single reconcile attempt",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    phase_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "canary_phase_transitions_total",
            "Total release phase transitions",
            ["phase"],
        )
    )
    canary_weight: Gauge = field(
        default_factory=lambda: Gauge(
            "canary_weight_percent",
            "Current percentage of traffic routed to the canary",
            ["namespace", "name"],
        )
    )
    failed_checks: Gauge = field(
        default_factory=lambda: Gauge(
            "canary_failed_checks",
            "Consecutive failed analysis checks in the current run",
            ["namespace", "name"],
        )
    )
    analysis_verdicts_total: Counter = field(
        default_factory=lambda: Counter(
            "canary_analysis_verdicts_total",
            "Total analysis verdicts by outcome",
            ["verdict"],
        )
    )
    primary_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "canary_primary_writes_total",
            "Total create/replace calls against primary objects",
            ["kind"],
        )
    )
    inflight_reconciles: Gauge = field(
        default_factory=lambda: Gauge(
            "canary_inflight_reconciles",
            "Reconciles currently executing",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "canary_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "canary_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "canary_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "canary_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "canary_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "canary_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
