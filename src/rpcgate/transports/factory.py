"""Baut die konfigurierten Transports."""

from __future__ import annotations

from rpcgate.config import RpcGateConfig
from rpcgate.monitoring.metrics import MetricsProvider
from rpcgate.security.auth import Authenticator
from rpcgate.security.validation import InputValidator
from rpcgate.transports.base import Transport
from rpcgate.transports.http import HttpTransport
from rpcgate.transports.sse import SseSessionManager
from rpcgate.transports.stdio import StdioTransport


def create_sessions(config: RpcGateConfig, authenticator: Authenticator) -> SseSessionManager:
    return SseSessionManager(
        authenticator,
        default_timeout=config.sse.default_timeout_seconds,
        refresh_window=config.sse.refresh_window_seconds,
        read_timeout=config.sse.read_timeout_seconds,
        channel_capacity=config.sse.channel_capacity,
    )


def create_transports(
    config: RpcGateConfig,
    *,
    authenticator: Authenticator,
    metrics: MetricsProvider,
    validator: InputValidator | None = None,
) -> list[Transport]:
    """Erzeugt die Transports für ``server.transport`` (stdio, http oder both)."""
    mode = config.server.transport
    transports: list[Transport] = []

    if mode in ("stdio", "both"):
        transports.append(StdioTransport(
            max_line_bytes=config.stdio.max_line_bytes,
            expose_error_details=config.security.expose_error_details,
        ))

    if mode in ("http", "both"):
        transports.append(HttpTransport(
            authenticator=authenticator,
            metrics=metrics,
            sessions=create_sessions(config, authenticator),
            validator=validator,
            host=config.server.host,
            port=config.server.port,
            cors_origins=config.server.cors_origins,
            expose_error_details=config.security.expose_error_details,
            version=config.server.version,
        ))

    return transports
