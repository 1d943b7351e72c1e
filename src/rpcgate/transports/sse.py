"""SSE-Session-Manager: Langlebige Streaming-Verbindungen pro Client.

Stellt bereit:
  - SseEvent: Ein Server-Sent-Event (``event:`` + ``data:``)
  - SseConnection: Verbindungs-Record mit Ablauf und Refresh-Status
  - SseSessionManager: Authentifizierung, Registry, Broadcast, Stream-Loop

Lebenszyklus einer Verbindung:
  1. authenticate() prüft Header, dann ``token``, dann ``api_key``
  2. stream() registriert, sendet ``connected`` und liefert Events
  3. Bei Ablauf: ``auth_error`` und Ende. Bei Shutdown: ``disconnected``
  4. Beim Schließen (auch Client-Abbruch) wird die Registrierung entfernt

Aktivität zählt nur für eingehende Nachrichten und zugestellte
Broadcast-Nachrichten, nicht für Keep-Alives oder Refresh-Hinweise.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
import uuid
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from rpcgate.errors import AuthError, AuthFailure, ValidationError
from rpcgate.security.auth import Authenticator, Identity
from rpcgate.utils.logging import bind_context, clear_context, get_logger

log = get_logger(__name__)

KEEP_ALIVE = ": keep-alive\n\n"
_MIN_WAIT = 0.01

SUPPORTED_METHODS = [
    "Authorization header (Bearer token or API key)",
    "Query parameter: token",
    "Query parameter: api_key",
]


class SseEventType(str, Enum):
    CONNECTED = "connected"
    TOKEN_REFRESH = "token_refresh"
    AUTH_ERROR = "auth_error"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    MESSAGE = "message"
    DISCONNECTED = "disconnected"


# Events, die als Aktivität zählen, wenn sie zugestellt werden
_ACTIVITY_EVENTS = frozenset({
    SseEventType.RESPONSE,
    SseEventType.NOTIFICATION,
    SseEventType.MESSAGE,
})


@dataclass(frozen=True)
class SseEvent:
    """Ein Server-Sent-Event."""

    event: SseEventType
    data: Any

    @property
    def is_terminal(self) -> bool:
        return self.event in (SseEventType.DISCONNECTED, SseEventType.AUTH_ERROR)

    def to_sse(self) -> str:
        """Formatiert als Server-Sent-Event."""
        data_str = json.dumps(self.data, ensure_ascii=False, default=str)
        return f"event: {self.event.value}\ndata: {data_str}\n\n"


@dataclass
class SseConnection:
    """Record einer offenen Streaming-Verbindung.

    Zeiten (``connection_time``, ``last_activity``) kommen aus der
    monotonen Uhr des Managers. ``connected_at`` ist die Wanduhr-Zeit
    für Clients.
    """

    client_id: str
    identity: Identity
    connection_time: float
    last_activity: float
    timeout_seconds: float
    refresh_token: str | None = None
    refresh_notified: bool = False
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    capacity: int = 100
    dropped: int = 0
    delivered: int = 0
    queue: asyncio.Queue[SseEvent] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.queue = asyncio.Queue(maxsize=self.capacity)

    def is_expired(self, now: float) -> bool:
        return now - self.last_activity > self.timeout_seconds

    def time_until_expiry(self, now: float) -> float:
        return max(0.0, self.timeout_seconds - (now - self.last_activity))

    def touch(self, now: float) -> None:
        """Aktivität: verschiebt den Ablauf und erlaubt einen neuen Refresh-Hinweis."""
        self.last_activity = now
        self.refresh_notified = False

    def needs_refresh(self, now: float, window: float) -> bool:
        return (
            self.refresh_token is not None
            and not self.refresh_notified
            and self.time_until_expiry(now) <= window
        )

    def push(self, event: SseEvent) -> bool:
        """Stellt ein Event ein. Bei voller Queue fliegt das älteste raus.

        Returns:
            False, wenn dafür ein Event verworfen wurde.
        """
        lossless = True
        while True:
            try:
                self.queue.put_nowait(event)
                return lossless
            except asyncio.QueueFull:
                with contextlib.suppress(asyncio.QueueEmpty):
                    self.queue.get_nowait()
                    self.dropped += 1
                    lossless = False

    def to_dict(self, now: float) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "subject": self.identity.subject,
            "auth_method": self.identity.method.value,
            "connected_at": self.connected_at.isoformat(),
            "connected_seconds": round(now - self.connection_time, 1),
            "expires_in": round(self.time_until_expiry(now), 1),
            "supports_refresh": self.refresh_token is not None,
            "queued": self.queue.qsize(),
            "delivered": self.delivered,
            "dropped": self.dropped,
        }


class SseSessionManager:
    """Verwaltet alle Streaming-Verbindungen.

    Die Registry ist durch einen asyncio.Lock geschützt. Jeder Client hat
    eine eigene begrenzte Queue, ein langsamer Client blockiert niemanden.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        *,
        default_timeout: float = 3600.0,
        refresh_window: float = 300.0,
        read_timeout: float = 30.0,
        channel_capacity: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._auth = authenticator
        self._default_timeout = default_timeout
        self._refresh_window = refresh_window
        self._read_timeout = read_timeout
        self._capacity = channel_capacity
        self._clock = clock
        self._clients: dict[str, SseConnection] = {}
        self._lock = asyncio.Lock()
        self._total_connections = 0
        self._expired = 0

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def get(self, client_id: str) -> SseConnection | None:
        return self._clients.get(client_id)

    # ------------------------------------------------------------------
    # Authentifizierung
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> SseConnection:
        """Erstellt einen (noch nicht registrierten) Verbindungs-Record.

        Reihenfolge: Authorization-Header, ``token``, ``api_key``. Der erste
        Erfolg gewinnt.

        Raises:
            AuthError: Keine Methode war erfolgreich.
            ValidationError: ``timeout`` ist keine positive Zahl.
        """
        identity = self._identify(headers, query)
        timeout = self._parse_timeout(query.get("timeout"))
        now = self._clock()
        return SseConnection(
            client_id=query.get("client_id") or uuid.uuid4().hex,
            identity=identity,
            connection_time=now,
            last_activity=now,
            timeout_seconds=timeout,
            refresh_token=query.get("refresh_token") or None,
            capacity=self._capacity,
        )

    def _identify(self, headers: Mapping[str, str], query: Mapping[str, str]) -> Identity:
        if not self._auth.enabled:
            return self._auth.bypass("local")

        attempts: list[tuple[str, Callable[[], Identity]]] = []
        header = headers.get("authorization")
        if header:
            attempts.append(("header", lambda: self._auth.parse_credential(header)))
        token = query.get("token")
        if token:
            attempts.append(("token", lambda: self._auth.authenticate_token(token)))
        api_key = query.get("api_key")
        if api_key:
            attempts.append(("api_key", lambda: self._auth.authenticate_api_key(api_key)))

        # Ohne Credential bleibt es bei MISSING_CREDENTIAL
        last_error = AuthError(
            "Authentication required",
            reason=AuthFailure.MISSING_CREDENTIAL,
            details={"supported_methods": SUPPORTED_METHODS},
        )
        for source, attempt in attempts:
            try:
                identity = attempt()
            except AuthError as exc:
                log.debug("sse_auth_attempt_failed", source=source, reason=exc.reason.value)
                last_error = exc
                continue
            log.debug("sse_auth_succeeded", source=source, method=identity.method.value)
            return identity

        raise last_error

    def _parse_timeout(self, raw: str | None) -> float:
        if raw is None or raw == "":
            return self._default_timeout
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValidationError("timeout must be a number of seconds") from exc
        if value <= 0:
            raise ValidationError("timeout must be positive")
        return value

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def register(self, conn: SseConnection) -> None:
        async with self._lock:
            previous = self._clients.get(conn.client_id)
            self._clients[conn.client_id] = conn
            self._total_connections += 1
        if previous is not None and previous is not conn:
            previous.push(SseEvent(SseEventType.DISCONNECTED, {
                "type": "connection_replaced",
                "client_id": conn.client_id,
            }))
            log.info("sse_client_replaced", client_id=conn.client_id)

    async def unregister(self, conn: SseConnection) -> None:
        async with self._lock:
            if self._clients.get(conn.client_id) is conn:
                del self._clients[conn.client_id]

    async def touch(self, client_id: str) -> bool:
        """Vermerkt eine eingehende Nachricht des Clients."""
        async with self._lock:
            conn = self._clients.get(client_id)
        if conn is None:
            return False
        conn.touch(self._clock())
        return True

    # ------------------------------------------------------------------
    # Zustellung
    # ------------------------------------------------------------------

    async def send_to(self, client_id: str, event: SseEvent) -> bool:
        async with self._lock:
            conn = self._clients.get(client_id)
        if conn is None:
            return False
        if not conn.push(event):
            log.warning("sse_event_dropped", client_id=client_id, dropped=conn.dropped)
        return True

    async def broadcast(self, event: SseEvent) -> int:
        """Stellt ein Event bei allen Clients ein. Liefert die Anzahl Empfänger."""
        async with self._lock:
            connections = list(self._clients.values())
        for conn in connections:
            if not conn.push(event):
                log.warning("sse_event_dropped", client_id=conn.client_id, dropped=conn.dropped)
        return len(connections)

    async def close_all(self, reason: str = "server_shutdown") -> int:
        """Schickt allen Clients ``disconnected``, die Streams enden danach."""
        async with self._lock:
            connections = list(self._clients.values())
        for conn in connections:
            conn.push(SseEvent(SseEventType.DISCONNECTED, {
                "type": "disconnected",
                "client_id": conn.client_id,
                "reason": reason,
            }))
        if connections:
            log.info("sse_clients_closing", count=len(connections), reason=reason)
        return len(connections)

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    async def stream(self, conn: SseConnection) -> AsyncIterator[str]:
        """SSE-Body einer Verbindung. Endet bei Ablauf, Shutdown oder Abbruch."""
        await self.register(conn)
        bind_context(client_id=conn.client_id)
        log.info(
            "sse_client_connected",
            subject=conn.identity.subject,
            method=conn.identity.method.value,
            timeout_seconds=conn.timeout_seconds,
        )
        last_sent = self._clock()
        try:
            yield self._connected_event(conn).to_sse()
            while True:
                now = self._clock()
                if conn.is_expired(now):
                    self._expired += 1
                    log.info("sse_connection_expired", client_id=conn.client_id)
                    yield self._expired_event().to_sse()
                    break
                if conn.needs_refresh(now, self._refresh_window):
                    conn.refresh_notified = True
                    last_sent = now
                    yield self._refresh_event(conn, now).to_sse()

                try:
                    event = await asyncio.wait_for(conn.queue.get(), timeout=self._next_wait(conn, now))
                except TimeoutError:
                    now = self._clock()
                    if now - last_sent >= self._read_timeout:
                        yield KEEP_ALIVE
                        last_sent = now
                    continue

                last_sent = self._clock()
                if event.event in _ACTIVITY_EVENTS:
                    conn.delivered += 1
                    conn.touch(last_sent)
                yield event.to_sse()
                if event.is_terminal:
                    break
        finally:
            await self.unregister(conn)
            log.info("sse_client_disconnected", client_id=conn.client_id, dropped=conn.dropped)
            clear_context()

    def _next_wait(self, conn: SseConnection, now: float) -> float:
        wait = min(self._read_timeout, conn.time_until_expiry(now))
        if conn.refresh_token is not None and not conn.refresh_notified:
            until_refresh = conn.time_until_expiry(now) - self._refresh_window
            wait = min(wait, until_refresh)
        # knapp hinter die Ablaufgrenze warten, damit is_expired() greift
        return max(wait, _MIN_WAIT)

    # ------------------------------------------------------------------
    # Event-Payloads
    # ------------------------------------------------------------------

    def _connected_event(self, conn: SseConnection) -> SseEvent:
        return SseEvent(SseEventType.CONNECTED, {
            "type": "connection_established",
            "client_id": conn.client_id,
            "authenticated": not conn.identity.is_bypass,
            "auth_method": conn.identity.method.value,
            "connection_time": conn.connected_at.isoformat(),
            "timeout_seconds": conn.timeout_seconds,
            "supports_refresh": conn.refresh_token is not None,
            "expires_in": conn.timeout_seconds,
        })

    def _refresh_event(self, conn: SseConnection, now: float) -> SseEvent:
        return SseEvent(SseEventType.TOKEN_REFRESH, {
            "type": "token_refresh_required",
            "client_id": conn.client_id,
            "expires_in_seconds": int(conn.time_until_expiry(now)),
            "refresh_token": conn.refresh_token,
            "instructions": "Reconnect with a fresh token before the connection expires",
        })

    @staticmethod
    def _expired_event() -> SseEvent:
        return SseEvent(SseEventType.AUTH_ERROR, {
            "type": "authentication_error",
            "error": "Connection expired",
            "reconnect_required": True,
            "supported_methods": SUPPORTED_METHODS,
        })

    def auth_instructions(self) -> dict[str, Any]:
        """Beschreibung der unterstützten Authentifizierung für Clients."""
        return {
            "authentication_methods": {
                "header": {
                    "description": "Authorization header with Bearer token or API key",
                    "example": "Authorization: Bearer <token-or-api-key>",
                },
                "query_token": {
                    "description": "JWT passed as query parameter",
                    "example": "/stream?token=<jwt>&client_id=<id>",
                },
                "query_api_key": {
                    "description": "API key passed as query parameter",
                    "example": "/stream?api_key=<key>&client_id=<id>",
                },
            },
            "parameters": {
                "client_id": "Stable client identifier (generated if omitted)",
                "timeout": f"Inactivity timeout in seconds (default {int(self._default_timeout)})",
                "refresh_token": "Enables a token_refresh event before expiry",
            },
            "events": [e.value for e in SseEventType],
            "refresh_window_seconds": self._refresh_window,
        }

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "active_clients": len(self._clients),
            "total_connections": self._total_connections,
            "expired_connections": self._expired,
            "clients": [conn.to_dict(now) for conn in self._clients.values()],
        }
