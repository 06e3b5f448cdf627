"""
Prometheus metrics for the market maker.

Organized into: execution, risk, breaker, loop, inventory.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class MarketMakerMetrics:
    """Metrics for one or more market-maker instances, labelled by symbol."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Execution Metrics ===
        self.orders_placed = Counter(
            'orders_placed_total',
            'Orders accepted by the exchange',
            labelnames=['symbol', 'side'],
            registry=reg
        )
        self.orders_rejected = Counter(
            'orders_rejected_total',
            'Place requests rejected by the exchange',
            labelnames=['symbol', 'side'],
            registry=reg
        )
        self.orders_cancelled = Counter(
            'orders_cancelled_total',
            'Orders cancelled',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.modify_outcomes = Counter(
            'modify_outcomes_total',
            'Cancel-then-place outcomes',
            labelnames=['symbol', 'outcome'],
            registry=reg
        )
        self.resting_orders = Gauge(
            'resting_orders',
            'Orders currently tracked as resting',
            labelnames=['symbol', 'side'],
            registry=reg
        )
        self.fills_total = Counter(
            'fills_total',
            'Fill quantity events applied',
            labelnames=['symbol', 'side'],
            registry=reg
        )

        # === Risk Metrics ===
        self.risk_rejections = Counter(
            'risk_rejections_total',
            'Candidate orders rejected by the risk gate',
            labelnames=['symbol', 'side'],
            registry=reg
        )
        self.risk_adjustments = Counter(
            'risk_adjustments_total',
            'Candidate orders down-sized by the risk gate',
            labelnames=['symbol', 'side'],
            registry=reg
        )

        # === Breaker Metrics ===
        self.breaker_trips = Counter(
            'breaker_trips_total',
            'Spread circuit breaker trips',
            labelnames=['symbol'],
            registry=reg
        )
        self.breaker_tripped = Gauge(
            'breaker_tripped',
            'Spread circuit breaker state (1=tripped)',
            labelnames=['symbol'],
            registry=reg
        )
        self.market_spread_pct = Gauge(
            'market_spread_pct',
            'Observed top-of-book spread (%)',
            labelnames=['symbol'],
            registry=reg
        )

        # === Loop Metrics ===
        self.cycles = Counter(
            'cycles_total',
            'Control loop cycles by action',
            labelnames=['symbol', 'action'],
            registry=reg
        )
        self.cycles_skipped = Counter(
            'cycles_skipped_total',
            'Cycles skipped before completion',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.cycle_latency_ms = Histogram(
            'cycle_latency_ms',
            'Control loop cycle duration (milliseconds)',
            labelnames=['symbol'],
            buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000],
            registry=reg
        )

        # === Inventory Metrics ===
        self.position_qty = Gauge(
            'position_qty',
            'Open long position quantity (base units)',
            labelnames=['symbol'],
            registry=reg
        )
        self.cumulative_pnl = Gauge(
            'cumulative_pnl',
            'Portfolio value change since start (quote units)',
            labelnames=['symbol'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self) -> CollectorRegistry:
        """Return the Prometheus registry for export."""
        return self.registry


def start_metrics_server(metrics: MarketMakerMetrics, port: int) -> None:
    """Expose /metrics on the given port (0 disables)."""
    if port > 0:
        start_http_server(port, registry=metrics.registry)
