"""rpcgate monitoring module.

Health-Checks, Request-Metriken und Prometheus-Export.
"""

from rpcgate.monitoring.health import (
    HealthCheck,
    HealthMonitor,
    HealthReport,
    HealthStatus,
    PerformanceMetrics,
    ReadinessReport,
    RequestMetrics,
    aggregate_status,
    percentile,
    tiered_status,
)
from rpcgate.monitoring.metrics import PROMETHEUS_CONTENT_TYPE, MetricsProvider

__all__ = [
    "PROMETHEUS_CONTENT_TYPE",
    "HealthCheck",
    "HealthMonitor",
    "HealthReport",
    "HealthStatus",
    "MetricsProvider",
    "PerformanceMetrics",
    "ReadinessReport",
    "RequestMetrics",
    "aggregate_status",
    "percentile",
    "tiered_status",
]
