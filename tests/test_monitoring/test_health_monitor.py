"""Tests für Health-Monitor, Request-Fenster und Status-Aggregation."""

from __future__ import annotations

import pytest

from rpcgate.monitoring.health import (
    HealthCheck,
    HealthMonitor,
    HealthStatus,
    RequestMetrics,
    aggregate_status,
    percentile,
    tiered_status,
)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Reine Funktionen
# ============================================================================


class TestPercentile:
    def test_empty(self) -> None:
        assert percentile([], 95) == 0.0

    def test_single(self) -> None:
        assert percentile([42.0], 99) == 42.0

    def test_floor_index(self) -> None:
        values = [float(v) for v in range(1, 101)]
        # floor(0.95 * 99) = 94
        assert percentile(values, 95) == 95.0
        assert percentile(values, 99) == 99.0
        assert percentile(values, 100) == 100.0
        assert percentile(values, 0) == 1.0


class TestAggregation:
    def test_no_checks_is_healthy(self) -> None:
        assert aggregate_status([]) is HealthStatus.HEALTHY

    def test_unhealthy_wins(self) -> None:
        checks = [
            HealthCheck(HealthStatus.HEALTHY),
            HealthCheck(HealthStatus.DEGRADED),
            HealthCheck(HealthStatus.UNHEALTHY),
        ]
        assert aggregate_status(checks) is HealthStatus.UNHEALTHY

    def test_degraded_over_healthy(self) -> None:
        checks = [HealthCheck(HealthStatus.HEALTHY), HealthCheck(HealthStatus.DEGRADED)]
        assert aggregate_status(checks) is HealthStatus.DEGRADED

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (100.0, HealthStatus.HEALTHY),
            (100.1, HealthStatus.DEGRADED),
            (150.0, HealthStatus.DEGRADED),
            (150.1, HealthStatus.UNHEALTHY),
        ],
    )
    def test_tiered_status(self, value: float, expected: HealthStatus) -> None:
        assert tiered_status(value, 100.0) is expected


# ============================================================================
# Request-Fenster
# ============================================================================


class TestRequestMetrics:
    def test_window_is_bounded(self) -> None:
        window = RequestMetrics(window_size=1000)
        for i in range(1500):
            window.record(float(i), is_error=False)
        samples, _, total = window.snapshot()
        assert len(window) == 1000
        assert total == 1500
        # Älteste Samples fallen zuerst heraus
        assert samples[0][0] == 500.0

    def test_requests_per_minute(self) -> None:
        clock = FakeClock()
        window = RequestMetrics(clock=clock)
        window.record(1.0, False)
        clock.advance(30)
        window.record(1.0, False)
        _, last_minute, _ = window.snapshot()
        assert last_minute == 2

        clock.advance(45)
        _, last_minute, _ = window.snapshot()
        assert last_minute == 1

    def test_negative_latency_clamped(self) -> None:
        window = RequestMetrics()
        window.record(-5.0, False)
        samples, _, _ = window.snapshot()
        assert samples[0][0] == 0.0

    def test_stats(self) -> None:
        window = RequestMetrics(window_size=10)
        window.record(1.0, True)
        window.record(1.0, False)
        assert window.stats() == {
            "window_size": 10,
            "samples": 2,
            "total_requests": 2,
            "total_errors": 1,
        }


# ============================================================================
# Health-Monitor
# ============================================================================


@pytest.fixture
def monitor() -> HealthMonitor:
    return HealthMonitor(
        version="1.2.3",
        memory_threshold_mb=100.0,
        response_time_threshold_ms=100.0,
        error_rate_threshold_percent=10.0,
        memory_probe=lambda: 50.0,
    )


class TestHealthMonitor:
    def test_metrics(self, monitor: HealthMonitor) -> None:
        for latency in (10.0, 20.0, 30.0, 40.0):
            monitor.record_request(latency, is_error=False)
        monitor.record_request(50.0, is_error=True)
        metrics = monitor.get_metrics()
        assert metrics.total_requests == 5
        assert metrics.average_response_time_ms == 30.0
        assert metrics.error_rate_percent == 20.0
        assert metrics.p95_response_time_ms == 40.0
        assert metrics.memory_usage_mb == 50.0

    def test_empty_metrics(self, monitor: HealthMonitor) -> None:
        metrics = monitor.get_metrics()
        assert metrics.average_response_time_ms == 0.0
        assert metrics.error_rate_percent == 0.0
        assert metrics.p99_response_time_ms == 0.0

    def test_active_connections_never_negative(self, monitor: HealthMonitor) -> None:
        monitor.increment_active_connections()
        monitor.decrement_active_connections()
        monitor.decrement_active_connections()
        assert monitor.active_connections == 0

    @pytest.mark.asyncio
    async def test_no_checks_is_healthy_and_ready(self, monitor: HealthMonitor) -> None:
        report = await monitor.get_health()
        assert report.status is HealthStatus.HEALTHY
        assert report.version == "1.2.3"
        readiness = await monitor.get_readiness()
        assert readiness.ready is True

    @pytest.mark.asyncio
    async def test_builtin_checks(self, monitor: HealthMonitor) -> None:
        monitor.register_builtin_checks()
        checks = await monitor.run_checks()
        assert set(checks) == {"memory_usage", "error_rate", "response_time"}
        assert all(c.status is HealthStatus.HEALTHY for c in checks.values())

    @pytest.mark.asyncio
    async def test_error_rate_check_degrades(self, monitor: HealthMonitor) -> None:
        monitor.register_builtin_checks()
        for i in range(10):
            monitor.record_request(1.0, is_error=i < 2)  # 20 % > 1.5 * 10 %
        report_checks = await monitor.run_checks()
        assert report_checks["error_rate"].status is HealthStatus.UNHEALTHY

        report = await monitor.get_health()
        assert report.status is HealthStatus.UNHEALTHY
        assert (await monitor.get_readiness()).ready is False

    @pytest.mark.asyncio
    async def test_degraded_is_not_ready(self, monitor: HealthMonitor) -> None:
        await monitor.update_check("custom", HealthCheck(HealthStatus.DEGRADED, "slow"))
        assert (await monitor.get_health()).status is HealthStatus.DEGRADED
        assert (await monitor.get_readiness()).ready is False

    @pytest.mark.asyncio
    async def test_failing_check_becomes_unhealthy(self, monitor: HealthMonitor) -> None:
        async def broken() -> HealthCheck:
            raise RuntimeError("probe exploded")

        monitor.register_check("broken", broken)
        checks = await monitor.run_checks()
        assert checks["broken"].status is HealthStatus.UNHEALTHY
        assert "probe exploded" in checks["broken"].message

    @pytest.mark.asyncio
    async def test_report_serialization(self, monitor: HealthMonitor) -> None:
        await monitor.update_check("x", HealthCheck(HealthStatus.HEALTHY, "ok"))
        data = (await monitor.get_health()).to_dict()
        assert data["status"] == "healthy"
        assert data["checks"]["x"]["status"] == "healthy"
        assert "last_checked" in data["checks"]["x"]
        assert data["metrics"]["total_requests"] == 0
