"""Metrics Provider -- Health-Monitor, Custom-Metriken, Prometheus-Export.

Usage:
    metrics = MetricsProvider(config.monitoring, version=__version__, engine=handle)
    metrics.record_request(42.5, is_error=False)
    metrics.increment_custom_metric("cache_hits")
    await metrics.start()          # periodische Health-Checks
    body = metrics.prometheus_text()
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.registry import Collector

from rpcgate.errors import EngineNotInitializedError
from rpcgate.monitoring.health import (
    HealthCheck,
    HealthMonitor,
    HealthReport,
    HealthStatus,
    ReadinessReport,
)
from rpcgate.utils.logging import get_logger

if TYPE_CHECKING:
    from rpcgate.config import MonitoringConfig
    from rpcgate.engine import EngineHandle

log = get_logger(__name__)

METRIC_PREFIX = "rpcgate_"
PROMETHEUS_CONTENT_TYPE = CONTENT_TYPE_LATEST
ENGINE_PROBE_TIMEOUT = 5.0

_STATUS_VALUE = {
    HealthStatus.HEALTHY: 1.0,
    HealthStatus.DEGRADED: 0.5,
    HealthStatus.UNHEALTHY: 0.0,
}


class _MonitorCollector(Collector):
    """Liest bei jedem Scrape den aktuellen Stand aus dem Provider."""

    def __init__(self, provider: MetricsProvider) -> None:
        self._provider = provider

    def collect(self) -> Iterator[Any]:
        monitor = self._provider.monitor
        perf = monitor.get_metrics()
        window = monitor.requests.stats()

        requests = CounterMetricFamily(
            f"{METRIC_PREFIX}requests", "Total handled requests"
        )
        requests.add_metric([], window["total_requests"])
        yield requests

        errors = CounterMetricFamily(f"{METRIC_PREFIX}errors", "Total failed requests")
        errors.add_metric([], window["total_errors"])
        yield errors

        gauges = {
            "requests_per_minute": ("Requests in the last 60 seconds", perf.requests_per_minute),
            "response_time_average_ms": ("Average latency over the window", perf.average_response_time_ms),
            "response_time_p95_ms": ("95th percentile latency over the window", perf.p95_response_time_ms),
            "response_time_p99_ms": ("99th percentile latency over the window", perf.p99_response_time_ms),
            "error_rate_percent": ("Error share of the window", perf.error_rate_percent),
            "active_connections": ("Open HTTP requests and streams", perf.active_connections),
            "memory_usage_mb": ("Process resident memory", perf.memory_usage_mb),
            "uptime_seconds": ("Seconds since start", monitor.uptime_seconds),
        }
        for name, (doc, value) in gauges.items():
            yield GaugeMetricFamily(f"{METRIC_PREFIX}{name}", doc, value=value)

        checks = GaugeMetricFamily(
            f"{METRIC_PREFIX}health_check_status",
            "1 healthy, 0.5 degraded, 0 unhealthy",
            labels=["check"],
        )
        for name, check in monitor.checks_nowait().items():
            checks.add_metric([name], _STATUS_VALUE[check.status])
        yield checks

        custom = GaugeMetricFamily(
            f"{METRIC_PREFIX}custom_metric",
            "Application-defined metrics",
            labels=["name"],
        )
        for name, value in self._provider.custom_metrics().items():
            custom.add_metric([name], value)
        yield custom


class MetricsProvider:
    """Zentrale Instanz für Health-Checks und Metriken."""

    def __init__(
        self,
        config: MonitoringConfig,
        *,
        version: str = "0.0.0",
        engine: EngineHandle | None = None,
        monitor: HealthMonitor | None = None,
    ) -> None:
        self._config = config
        self._engine = engine
        self._monitor = monitor or HealthMonitor(
            version=version,
            window_size=config.window_size,
            memory_threshold_mb=config.memory_threshold_mb,
            response_time_threshold_ms=config.response_time_threshold_ms,
            error_rate_threshold_percent=config.error_rate_threshold_percent,
        )
        self._custom: dict[str, float] = {}
        self._task: asyncio.Task[None] | None = None

        if config.enable_health_checks:
            if engine is not None:
                self._monitor.register_check("operation_engine", self.check_engine)
            self._monitor.register_builtin_checks()

        self._registry = CollectorRegistry(auto_describe=False)
        self._registry.register(_MonitorCollector(self))

    @property
    def monitor(self) -> HealthMonitor:
        return self._monitor

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Erfassung
    # ------------------------------------------------------------------

    def record_request(self, latency_ms: float, is_error: bool) -> None:
        if self._config.enable_metrics:
            self._monitor.record_request(latency_ms, is_error)

    def increment_custom_metric(self, name: str, value: float = 1.0) -> None:
        self._custom[name] = self._custom.get(name, 0.0) + value

    def set_custom_metric(self, name: str, value: float) -> None:
        self._custom[name] = value

    def custom_metrics(self) -> dict[str, float]:
        return dict(self._custom)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_engine(self) -> HealthCheck:
        """Round-Trip gegen die Operation-Engine."""
        if self._engine is None:
            return HealthCheck(HealthStatus.UNHEALTHY, message="No operation engine configured")
        try:
            engine = self._engine.get()
        except EngineNotInitializedError as exc:
            return HealthCheck(HealthStatus.UNHEALTHY, message=str(exc))
        try:
            await asyncio.wait_for(engine.probe(), timeout=ENGINE_PROBE_TIMEOUT)
        except TimeoutError:
            return HealthCheck(HealthStatus.UNHEALTHY, message="Engine probe timed out")
        except Exception as exc:
            return HealthCheck(HealthStatus.UNHEALTHY, message=f"Engine probe failed: {exc}")
        return HealthCheck(HealthStatus.HEALTHY, message=f"Engine '{engine.name}' responsive")

    async def get_health_status(self) -> HealthReport:
        """Führt die Checks aus (falls aktiviert) und liefert den Report."""
        if self._config.enable_health_checks:
            await self._monitor.run_checks()
        return await self._monitor.get_health()

    async def get_readiness(self) -> ReadinessReport:
        if self._config.enable_health_checks:
            await self._monitor.run_checks()
        return await self._monitor.get_readiness()

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "performance": self._monitor.get_metrics().to_dict(),
            "custom_metrics": self.custom_metrics(),
        }

    def prometheus_text(self) -> bytes:
        return generate_latest(self._registry)

    def stats(self) -> dict[str, Any]:
        return {
            "health_checks_enabled": self._config.enable_health_checks,
            "metrics_enabled": self._config.enable_metrics,
            "periodic_checks_running": self._task is not None and not self._task.done(),
            "custom_metrics": len(self._custom),
            **self._monitor.stats(),
        }

    # ------------------------------------------------------------------
    # Periodische Checks
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Startet die periodischen Health-Checks als Hintergrund-Task."""
        if not self._config.enable_health_checks or self._task is not None:
            return
        self._task = asyncio.create_task(self._run_periodic(), name="rpcgate-health-checks")
        log.info(
            "health_checks_started",
            interval_seconds=self._config.health_check_interval_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("health_checks_stopped")

    async def _run_periodic(self) -> None:
        while True:
            try:
                checks = await self._monitor.run_checks()
                unhealthy = [n for n, c in checks.items() if c.status is HealthStatus.UNHEALTHY]
                if unhealthy:
                    log.warning("health_checks_unhealthy", checks=unhealthy)
            except Exception:
                log.exception("health_check_cycle_failed")
            await asyncio.sleep(self._config.health_check_interval_seconds)
