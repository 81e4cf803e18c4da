from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControlPlaneMetrics:
    """Prometheus metrics exported by the control plane on ``/metrics``.

    Per-kind series use a ``kind`` label holding the route kind
    (``HTTPRoute``, ``TLSRoute``, ...).
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "routeplane_reconcile_total",
            "Total reconciliation passes by route kind and result",
            ["kind", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "routeplane_reconcile_duration_seconds",
            "Seconds spent in one reconciliation pass",
            ["kind"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "routeplane_workqueue_depth",
            "Current number of identities waiting in a reconcile work queue",
            ["kind"],
        )
    )
    requeue_total: Counter = field(
        default_factory=lambda: Counter(
            "routeplane_workqueue_requeue_total",
            "Total identities re-queued with backoff after a retriable failure",
            ["kind"],
        )
    )
    status_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "routeplane_status_updates_total",
            "Total status writes by route kind and result",
            ["kind", "result"],
        )
    )
    status_updates_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "routeplane_status_updates_dropped_total",
            "Total status updates dropped because the status queue was full",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "routeplane_watch_errors_total",
            "Total Kubernetes watch errors",
            ["source"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "routeplane_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["source"],
        )
    )
    translations_total: Counter = field(
        default_factory=lambda: Counter(
            "routeplane_translations_total",
            "Total translation passes from the resource store to proxy configuration",
        )
    )
    xds_snapshot_version: Gauge = field(
        default_factory=lambda: Gauge(
            "routeplane_xds_snapshot_version",
            "Version of the current proxy configuration snapshot",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "routeplane",
            "Build information for the control plane",
        )
    )


METRICS = ControlPlaneMetrics()
