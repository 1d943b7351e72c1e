"""Transports: stdio und HTTP/SSE."""

from rpcgate.transports.base import SessionHandler, Transport, TransportState
from rpcgate.transports.factory import create_sessions, create_transports
from rpcgate.transports.http import HttpTransport
from rpcgate.transports.sse import SseConnection, SseEvent, SseEventType, SseSessionManager
from rpcgate.transports.stdio import StdioTransport

__all__ = [
    "HttpTransport",
    "SessionHandler",
    "SseConnection",
    "SseEvent",
    "SseEventType",
    "SseSessionManager",
    "StdioTransport",
    "Transport",
    "TransportState",
    "create_sessions",
    "create_transports",
]
