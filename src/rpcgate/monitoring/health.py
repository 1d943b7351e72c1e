"""Health-Monitor: Request-Fenster, Verbindungszähler und Health-Checks.

Beobachtet den Traffic beider Transports:
  - RequestMetrics: Begrenztes Fenster aus (Latenz, Fehler)-Samples
  - HealthMonitor: Benannte Checks, Aggregat-Status, Perzentile

Schwellwerte sind dreistufig: bis 1x Schwelle healthy, darüber
degraded, über 1.5x unhealthy.
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import psutil

from rpcgate.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_WINDOW_SIZE = 1000
UNHEALTHY_FACTOR = 1.5
_RPM_WINDOW_SECONDS = 60.0

CheckFn = Callable[[], Awaitable["HealthCheck"]]


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class HealthCheck:
    """Ergebnis eines einzelnen Health-Checks."""

    status: HealthStatus
    message: str = ""
    timestamp: datetime = field(default_factory=_utc_now)
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "last_checked": self.timestamp.isoformat(),
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass
class PerformanceMetrics:
    total_requests: int = 0
    requests_per_minute: float = 0.0
    average_response_time_ms: float = 0.0
    p95_response_time_ms: float = 0.0
    p99_response_time_ms: float = 0.0
    error_rate_percent: float = 0.0
    active_connections: int = 0
    memory_usage_mb: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "requests_per_minute": self.requests_per_minute,
            "average_response_time_ms": round(self.average_response_time_ms, 3),
            "p95_response_time_ms": round(self.p95_response_time_ms, 3),
            "p99_response_time_ms": round(self.p99_response_time_ms, 3),
            "error_rate_percent": round(self.error_rate_percent, 3),
            "active_connections": self.active_connections,
            "memory_usage_mb": round(self.memory_usage_mb, 2),
        }


@dataclass
class HealthReport:
    status: HealthStatus
    uptime_seconds: float
    version: str
    checks: dict[str, HealthCheck]
    metrics: PerformanceMetrics | None = None
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "uptime_seconds": int(self.uptime_seconds),
            "version": self.version,
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
            "metrics": self.metrics.to_dict() if self.metrics else None,
        }


@dataclass
class ReadinessReport:
    ready: bool
    checks: dict[str, HealthCheck]
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ready": self.ready,
            "timestamp": self.timestamp.isoformat(),
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
        }


# ============================================================================
# Reine Hilfsfunktionen
# ============================================================================


def aggregate_status(checks: Iterable[HealthCheck]) -> HealthStatus:
    """unhealthy vor degraded vor healthy. Ohne Checks: healthy."""
    statuses = [check.status for check in checks]
    if HealthStatus.UNHEALTHY in statuses:
        return HealthStatus.UNHEALTHY
    if any(status is not HealthStatus.HEALTHY for status in statuses):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def tiered_status(value: float, threshold: float) -> HealthStatus:
    if value > threshold * UNHEALTHY_FACTOR:
        return HealthStatus.UNHEALTHY
    if value > threshold:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def percentile(sorted_values: list[float], p: float) -> float:
    """Index floor(p/100 * (n-1)), auf n-1 begrenzt. Leere Liste: 0."""
    if not sorted_values:
        return 0.0
    n = len(sorted_values)
    index = min(math.floor((p / 100.0) * (n - 1)), n - 1)
    return sorted_values[max(index, 0)]


def process_memory_mb() -> float:
    """Resident Set Size des eigenen Prozesses in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


# ============================================================================
# Request-Fenster
# ============================================================================


class RequestMetrics:
    """Begrenztes FIFO-Fenster aus Request-Samples.

    Schreiber kommen aus dem Event-Loop und aus Worker-Threads, daher
    ein threading.Lock. Leser kopieren unter dem Lock und rechnen außerhalb.
    """

    def __init__(
        self,
        window_size: int = DEFAULT_WINDOW_SIZE,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._samples: deque[tuple[float, bool]] = deque(maxlen=window_size)
        self._timestamps: deque[float] = deque()
        self._clock = clock
        self._lock = threading.Lock()
        self._total_requests = 0
        self._total_errors = 0

    @property
    def window_size(self) -> int:
        return self._samples.maxlen or 0

    def record(self, latency_ms: float, is_error: bool) -> None:
        now = self._clock()
        with self._lock:
            self._samples.append((max(latency_ms, 0.0), is_error))
            self._timestamps.append(now)
            self._prune(now)
            self._total_requests += 1
            if is_error:
                self._total_errors += 1

    def _prune(self, now: float) -> None:
        cutoff = now - _RPM_WINDOW_SECONDS
        while self._timestamps and self._timestamps[0] < cutoff:
            self._timestamps.popleft()

    def snapshot(self) -> tuple[list[tuple[float, bool]], int, int]:
        """(Samples, Requests der letzten Minute, Requests gesamt)."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            return list(self._samples), len(self._timestamps), self._total_requests

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "window_size": self.window_size,
                "samples": len(self._samples),
                "total_requests": self._total_requests,
                "total_errors": self._total_errors,
            }


# ============================================================================
# Health-Monitor
# ============================================================================


class HealthMonitor:
    """Sammelt Request-Metriken und Check-Ergebnisse, liefert Health-Reports."""

    def __init__(
        self,
        *,
        version: str = "0.0.0",
        window_size: int = DEFAULT_WINDOW_SIZE,
        memory_threshold_mb: float = 512.0,
        response_time_threshold_ms: float = 1000.0,
        error_rate_threshold_percent: float = 5.0,
        memory_probe: Callable[[], float] = process_memory_mb,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._version = version
        self._requests = RequestMetrics(window_size, clock=clock)
        self._memory_threshold_mb = memory_threshold_mb
        self._response_time_threshold_ms = response_time_threshold_ms
        self._error_rate_threshold = error_rate_threshold_percent
        self._memory_probe = memory_probe
        self._clock = clock
        self._started = clock()

        self._conn_lock = threading.Lock()
        self._active_connections = 0

        self._checks: dict[str, HealthCheck] = {}
        self._checks_lock = asyncio.Lock()
        self._check_fns: dict[str, CheckFn] = {}

    @property
    def requests(self) -> RequestMetrics:
        return self._requests

    @property
    def uptime_seconds(self) -> float:
        return self._clock() - self._started

    # ------------------------------------------------------------------
    # Erfassung
    # ------------------------------------------------------------------

    def record_request(self, latency_ms: float, is_error: bool) -> None:
        self._requests.record(latency_ms, is_error)

    def increment_active_connections(self) -> None:
        with self._conn_lock:
            self._active_connections += 1

    def decrement_active_connections(self) -> None:
        with self._conn_lock:
            self._active_connections = max(0, self._active_connections - 1)

    @property
    def active_connections(self) -> int:
        with self._conn_lock:
            return self._active_connections

    async def update_check(self, name: str, result: HealthCheck) -> None:
        """Speichert ein Check-Ergebnis. Letzter Schreiber gewinnt."""
        async with self._checks_lock:
            self._checks[name] = result

    async def checks(self) -> dict[str, HealthCheck]:
        async with self._checks_lock:
            return dict(self._checks)

    def checks_nowait(self) -> dict[str, HealthCheck]:
        """Kopie ohne Lock, für synchrone Leser im Event-Loop (z.B. Prometheus)."""
        return dict(self._checks)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def register_check(self, name: str, fn: CheckFn) -> None:
        self._check_fns[name] = fn

    async def run_checks(self) -> dict[str, HealthCheck]:
        """Führt alle registrierten Checks aus und speichert die Ergebnisse."""
        for name, fn in list(self._check_fns.items()):
            start = time.perf_counter()
            try:
                result = await fn()
            except Exception as exc:
                log.warning("health_check_failed", check=name, error=str(exc))
                result = HealthCheck(HealthStatus.UNHEALTHY, message=f"Check failed: {exc}")
            result.duration_ms = (time.perf_counter() - start) * 1000
            await self.update_check(name, result)
        return await self.checks()

    async def check_memory(self) -> HealthCheck:
        usage = self._memory_probe()
        status = tiered_status(usage, self._memory_threshold_mb)
        return HealthCheck(
            status,
            message=f"Memory usage {usage:.1f} MB (threshold {self._memory_threshold_mb:.0f} MB)",
        )

    async def check_error_rate(self) -> HealthCheck:
        rate = self.get_metrics(include_memory=False).error_rate_percent
        status = tiered_status(rate, self._error_rate_threshold)
        return HealthCheck(
            status,
            message=f"Error rate {rate:.2f}% (threshold {self._error_rate_threshold:.1f}%)",
        )

    async def check_response_time(self) -> HealthCheck:
        average = self.get_metrics(include_memory=False).average_response_time_ms
        status = tiered_status(average, self._response_time_threshold_ms)
        return HealthCheck(
            status,
            message=(
                f"Average response time {average:.1f} ms "
                f"(threshold {self._response_time_threshold_ms:.0f} ms)"
            ),
        )

    def register_builtin_checks(self) -> None:
        self.register_check("memory_usage", self.check_memory)
        self.register_check("error_rate", self.check_error_rate)
        self.register_check("response_time", self.check_response_time)

    # ------------------------------------------------------------------
    # Auswertung
    # ------------------------------------------------------------------

    def get_metrics(self, *, include_memory: bool = True) -> PerformanceMetrics:
        samples, last_minute, total = self._requests.snapshot()
        latencies = sorted(latency for latency, _ in samples)
        errors = sum(1 for _, is_error in samples if is_error)
        n = len(samples)
        return PerformanceMetrics(
            total_requests=total,
            requests_per_minute=float(last_minute),
            average_response_time_ms=sum(latencies) / n if n else 0.0,
            p95_response_time_ms=percentile(latencies, 95),
            p99_response_time_ms=percentile(latencies, 99),
            error_rate_percent=(errors / n * 100.0) if n else 0.0,
            active_connections=self.active_connections,
            memory_usage_mb=self._memory_probe() if include_memory else 0.0,
        )

    async def get_health(self) -> HealthReport:
        checks = await self.checks()
        return HealthReport(
            status=aggregate_status(checks.values()),
            uptime_seconds=self.uptime_seconds,
            version=self._version,
            checks=checks,
            metrics=self.get_metrics(),
        )

    async def get_readiness(self) -> ReadinessReport:
        """Bereit genau dann, wenn alle Checks healthy sind (auch ohne Checks)."""
        checks = await self.checks()
        ready = all(check.status is HealthStatus.HEALTHY for check in checks.values())
        return ReadinessReport(ready=ready, checks=checks)

    def stats(self) -> dict[str, Any]:
        return {
            "uptime_seconds": round(self.uptime_seconds, 1),
            "active_connections": self.active_connections,
            "registered_checks": sorted(self._check_fns),
            **self._requests.stats(),
        }
