"""
Monitoring: Prometheus metrics.
"""

from pmmbot.monitoring.metrics import MarketMakerMetrics, start_metrics_server

__all__ = ["MarketMakerMetrics", "start_metrics_server"]
