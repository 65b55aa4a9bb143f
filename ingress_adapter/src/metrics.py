from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class AdapterMetrics:
    """Prometheus metrics exported by the ingress adapter on ``/metrics``.

    Watch-related series carry a ``kind`` label (``Ingress`` or
    ``IngressClass``) so a misbehaving stream can be told apart from the other.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_adapter_events_total",
            "Total watch events processed by the controller",
            ["kind", "type"],
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_adapter_resyncs_total",
            "Total list-based resyncs",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_adapter_watch_errors_total",
            "Total failed list/watch attempts",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_adapter_watch_reconnects_total",
            "Total watch streams reopened after ending without a stop request",
            ["kind"],
        )
    )
    route_table_applies_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_adapter_route_table_applies_total",
            "Total RouteTable server-side applies",
        )
    )
    route_table_deletes_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_adapter_route_table_deletes_total",
            "Total RouteTable deletions",
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_adapter_reconcile_errors_total",
            "Total failed Ingress reconciliations",
            ["reason"],
        )
    )
    active_ingress_classes: Gauge = field(
        default_factory=lambda: Gauge(
            "ingress_adapter_active_ingress_classes",
            "Number of IngressClasses delegated to this controller",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ingress_adapter",
            "Build information for the ingress adapter",
        )
    )


METRICS = AdapterMetrics()
