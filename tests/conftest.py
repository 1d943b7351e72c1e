"""
rpcgate · Shared Test-Fixtures.

Keine Fixture liest ~/.rpcgate/ oder echte RPCGATE_*-Variablen,
Konfiguration entsteht immer aus leeren Umgebungen.
"""

from __future__ import annotations

import pytest

from rpcgate.config import RpcGateConfig
from rpcgate.engine import BuiltinEngine, EngineHandle
from rpcgate.monitoring.health import HealthMonitor
from rpcgate.monitoring.metrics import MetricsProvider
from rpcgate.security.auth import Authenticator
from rpcgate.security.validation import InputValidator
from rpcgate.server import OperationServer

API_KEY = "test-api-key-0123456789"
JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"


@pytest.fixture
def config() -> RpcGateConfig:
    """Default-Konfiguration ohne Datei und ohne Umgebungsvariablen."""
    return RpcGateConfig()


@pytest.fixture
def api_key() -> str:
    return API_KEY


@pytest.fixture
def authenticator() -> Authenticator:
    return Authenticator(api_keys=[API_KEY], jwt_secret=JWT_SECRET)


@pytest.fixture
def validator() -> InputValidator:
    return InputValidator()


@pytest.fixture
def engine() -> BuiltinEngine:
    return BuiltinEngine()


@pytest.fixture
def engine_handle(engine: BuiltinEngine) -> EngineHandle:
    handle = EngineHandle()
    handle.init(engine)
    return handle


@pytest.fixture
def server(engine_handle: EngineHandle, validator: InputValidator) -> OperationServer:
    return OperationServer(engine_handle, validator=validator, version="9.9.9")


@pytest.fixture
def monitor() -> HealthMonitor:
    """Monitor mit fester Speicher-Messung, unabhängig vom Testprozess."""
    return HealthMonitor(version="9.9.9", memory_probe=lambda: 64.0)


@pytest.fixture
def metrics(config: RpcGateConfig, engine_handle: EngineHandle, monitor: HealthMonitor) -> MetricsProvider:
    return MetricsProvider(config.monitoring, version="9.9.9", engine=engine_handle, monitor=monitor)
