"""
Prometheus metrics

Live gauges and request counters read from the integration at scrape time.
"""

import logging
from typing import Iterator

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from calltree.analytics.integration import AnalyticsIntegration

logger = logging.getLogger(__name__)


METRICS_PREFIX = "calltree"


class AnalyticsCollector:
    """Custom collector over AnalyticsIntegration"""

    def __init__(self, integration: AnalyticsIntegration, prefix: str = METRICS_PREFIX):
        self.integration = integration
        self.prefix = prefix

    def _name(self, name: str) -> str:
        return f"{self.prefix}_{name}"

    def collect(self) -> Iterator[Metric]:
        live = self.integration.get_live_metrics()
        totals = self.integration.get_request_totals()

        gauges = [
            ("response_time_seconds", "Average response time in seconds", live.average_response_time_ms / 1000),
            ("error_rate", "Error rate (0.0 to 1.0)", live.error_rate),
            ("request_rate", "Requests per second", live.request_rate),
            ("memory_usage_ratio", "Process memory usage (0.0 to 1.0)", live.memory_usage),
            ("cpu_usage_ratio", "Process CPU usage (0.0 to 1.0)", live.cpu_usage),
            ("health_score", "Health score (0-100)", live.health_score),
            ("active_alerts", "Unresolved alerts", live.active_alerts),
        ]
        for name, documentation, value in gauges:
            yield GaugeMetricFamily(self._name(name), documentation, value=value)

        # Exposed with the _total suffix
        yield CounterMetricFamily(self._name("requests"), "Traced commands", value=totals["requests"])
        yield CounterMetricFamily(self._name("errors"), "Failed traced commands", value=totals["errors"])


def export_metrics(integration: AnalyticsIntegration) -> bytes:
    """
    Prometheus text exposition for the integration

    Returns:
        Metrics text (bytes)
    """
    registry = CollectorRegistry()
    registry.register(AnalyticsCollector(integration))
    return generate_latest(registry)


__all__ = ["AnalyticsCollector", "export_metrics", "METRICS_PREFIX"]
