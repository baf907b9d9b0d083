from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconciliations are labelled by ``outcome`` so operators can alert on a
    rising share of ``parse_failed`` or ``update_failed`` results without
    grepping logs.
    """

    reconciliations_total: Counter = field(
        default_factory=lambda: Counter(
            "curlmethat_reconciliations_total",
            "Total ConfigMap reconciliations by outcome",
            ["outcome"],
        )
    )
    fetches_total: Counter = field(
        default_factory=lambda: Counter(
            "curlmethat_fetches_total",
            "Total URL fetches by result",
            ["result"],
        )
    )
    fetch_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "curlmethat_fetch_duration_seconds",
            "Seconds spent fetching a single directive URL",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    updates_total: Counter = field(
        default_factory=lambda: Counter(
            "curlmethat_updates_total",
            "Total ConfigMap data patches by result",
            ["result"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "curlmethat_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "curlmethat_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "curlmethat",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
