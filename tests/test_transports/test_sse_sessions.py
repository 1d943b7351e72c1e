"""Tests für den SSE-Session-Manager.

Testet: Auth-Reihenfolge (Header, token, api_key), Timeout-Parameter,
Stream-Ablauf (connected, Keep-Alive, Refresh, Ablauf, Shutdown),
Registry und Drop-Oldest bei voller Queue.
"""

from __future__ import annotations

import json
import time

import jwt
import pytest

from rpcgate.errors import AuthError, AuthFailure, ValidationError
from rpcgate.security.auth import AuthMethod, Authenticator
from rpcgate.transports.sse import (
    KEEP_ALIVE,
    SseConnection,
    SseEvent,
    SseEventType,
    SseSessionManager,
)

SECRET = "sse-test-secret-0123456789-abcdefghij"
KEY = "sse-api-key-0123456789"


class FakeClock:
    def __init__(self) -> None:
        self.now = 5000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sse_auth() -> Authenticator:
    return Authenticator(api_keys=[KEY], jwt_secret=SECRET)


@pytest.fixture
def manager(sse_auth: Authenticator, clock: FakeClock) -> SseSessionManager:
    return SseSessionManager(
        sse_auth,
        default_timeout=100.0,
        refresh_window=30.0,
        read_timeout=0.02,
        channel_capacity=3,
        clock=clock,
    )


def _token(sub: str = "stream-user") -> str:
    return jwt.encode({"sub": sub, "exp": int(time.time()) + 300}, SECRET, algorithm="HS256")


def _parse(chunk: str) -> tuple[str, dict]:
    lines = chunk.strip().split("\n")
    assert lines[0].startswith("event: ")
    assert lines[1].startswith("data: ")
    return lines[0][len("event: "):], json.loads(lines[1][len("data: "):])


# ============================================================================
# Authentifizierung
# ============================================================================


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_header_first(self, manager: SseSessionManager) -> None:
        conn = await manager.authenticate(
            {"authorization": f"Bearer {KEY}"},
            {"token": _token()},
        )
        assert conn.identity.method is AuthMethod.API_KEY

    @pytest.mark.asyncio
    async def test_query_token(self, manager: SseSessionManager) -> None:
        conn = await manager.authenticate({}, {"token": _token("alice"), "client_id": "c1"})
        assert conn.identity.subject == "alice"
        assert conn.client_id == "c1"
        assert conn.timeout_seconds == 100.0

    @pytest.mark.asyncio
    async def test_falls_through_to_api_key(self, manager: SseSessionManager) -> None:
        conn = await manager.authenticate(
            {"authorization": "Bearer wrong-key"},
            {"token": "eyJbroken", "api_key": KEY},
        )
        assert conn.identity.method is AuthMethod.API_KEY

    @pytest.mark.asyncio
    async def test_no_credentials(self, manager: SseSessionManager) -> None:
        with pytest.raises(AuthError) as exc_info:
            await manager.authenticate({}, {})
        assert exc_info.value.reason is AuthFailure.MISSING_CREDENTIAL
        assert exc_info.value.details["supported_methods"]

    @pytest.mark.asyncio
    async def test_invalid_token_only(self, manager: SseSessionManager) -> None:
        with pytest.raises(AuthError) as exc_info:
            await manager.authenticate({}, {"token": "eyJinvalid"})
        assert exc_info.value.reason is AuthFailure.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_last_failed_source_reported(self, manager: SseSessionManager) -> None:
        with pytest.raises(AuthError) as exc_info:
            await manager.authenticate({}, {"token": "eyJinvalid", "api_key": "nope"})
        assert exc_info.value.reason is AuthFailure.INVALID_API_KEY

    @pytest.mark.asyncio
    async def test_auth_disabled(self, clock: FakeClock) -> None:
        manager = SseSessionManager(Authenticator(enable_auth=False), clock=clock)
        conn = await manager.authenticate({}, {})
        assert conn.identity.is_bypass
        assert conn.client_id

    @pytest.mark.parametrize("raw", ["abc", "0", "-5"])
    @pytest.mark.asyncio
    async def test_invalid_timeout(self, manager: SseSessionManager, raw: str) -> None:
        with pytest.raises(ValidationError):
            await manager.authenticate({}, {"api_key": KEY, "timeout": raw})

    @pytest.mark.asyncio
    async def test_custom_timeout_and_refresh_token(self, manager: SseSessionManager) -> None:
        conn = await manager.authenticate({}, {"api_key": KEY, "timeout": "60", "refresh_token": "r1"})
        assert conn.timeout_seconds == 60.0
        assert conn.refresh_token == "r1"


# ============================================================================
# Stream-Ablauf
# ============================================================================


class TestStream:
    @pytest.mark.asyncio
    async def test_connected_first(self, manager: SseSessionManager) -> None:
        conn = await manager.authenticate({}, {"api_key": KEY, "client_id": "c1"})
        stream = manager.stream(conn)
        event, data = _parse(await stream.__anext__())
        assert event == "connected"
        assert data["client_id"] == "c1"
        assert data["authenticated"] is True
        assert data["auth_method"] == "api_key"
        assert data["supports_refresh"] is False
        assert manager.client_count == 1
        await stream.aclose()
        assert manager.client_count == 0

    @pytest.mark.asyncio
    async def test_delivers_events_and_touches(self, manager: SseSessionManager, clock: FakeClock) -> None:
        conn = await manager.authenticate({}, {"api_key": KEY, "client_id": "c1"})
        stream = manager.stream(conn)
        await stream.__anext__()

        clock.advance(50)
        assert await manager.send_to("c1", SseEvent(SseEventType.RESPONSE, {"id": 1}))
        event, data = _parse(await stream.__anext__())
        assert event == "response"
        assert data == {"id": 1}
        assert conn.last_activity == clock.now
        assert conn.delivered == 1
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_keep_alive(self, manager: SseSessionManager, clock: FakeClock) -> None:
        conn = await manager.authenticate({}, {"api_key": KEY})
        stream = manager.stream(conn)
        await stream.__anext__()
        clock.advance(1)
        assert await stream.__anext__() == KEEP_ALIVE
        # Keep-Alives zählen nicht als Aktivität
        assert conn.last_activity == clock.now - 1
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_expiry_sends_auth_error_and_closes(
        self, manager: SseSessionManager, clock: FakeClock,
    ) -> None:
        conn = await manager.authenticate({}, {"api_key": KEY, "client_id": "c1", "timeout": "10"})
        stream = manager.stream(conn)
        await stream.__anext__()

        clock.advance(10.5)
        event, data = _parse(await stream.__anext__())
        assert event == "auth_error"
        assert data["error"] == "Connection expired"
        assert data["reconnect_required"] is True
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert manager.get("c1") is None
        assert manager.stats()["expired_connections"] == 1

    @pytest.mark.asyncio
    async def test_refresh_notice_once(self, manager: SseSessionManager, clock: FakeClock) -> None:
        conn = await manager.authenticate({}, {"api_key": KEY, "refresh_token": "r1"})
        stream = manager.stream(conn)
        _, data = _parse(await stream.__anext__())
        assert data["supports_refresh"] is True

        clock.advance(75)
        event, data = _parse(await stream.__anext__())
        assert event == "token_refresh"
        assert data["refresh_token"] == "r1"
        assert data["expires_in_seconds"] == 25

        # Kein zweiter Hinweis ohne neue Aktivität
        clock.advance(1)
        assert await stream.__anext__() == KEEP_ALIVE
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_close_all(self, manager: SseSessionManager) -> None:
        conn = await manager.authenticate({}, {"api_key": KEY, "client_id": "c1"})
        stream = manager.stream(conn)
        await stream.__anext__()

        assert await manager.close_all("server_shutdown") == 1
        event, data = _parse(await stream.__anext__())
        assert event == "disconnected"
        assert data["reason"] == "server_shutdown"
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert manager.client_count == 0


# ============================================================================
# Registry & Zustellung
# ============================================================================


class TestRegistry:
    @pytest.mark.asyncio
    async def test_touch_unknown_client(self, manager: SseSessionManager) -> None:
        assert await manager.touch("ghost") is False
        assert await manager.send_to("ghost", SseEvent(SseEventType.MESSAGE, {})) is False

    @pytest.mark.asyncio
    async def test_touch_known_client(self, manager: SseSessionManager, clock: FakeClock) -> None:
        conn = await manager.authenticate({}, {"api_key": KEY, "client_id": "c1"})
        await manager.register(conn)
        conn.refresh_notified = True
        clock.advance(20)
        assert await manager.touch("c1") is True
        assert conn.last_activity == clock.now
        assert conn.refresh_notified is False

    @pytest.mark.asyncio
    async def test_broadcast(self, manager: SseSessionManager) -> None:
        for client_id in ("a", "b"):
            await manager.register(await manager.authenticate({}, {"api_key": KEY, "client_id": client_id}))
        count = await manager.broadcast(SseEvent(SseEventType.NOTIFICATION, {"n": 1}))
        assert count == 2
        assert manager.get("a").queue.qsize() == 1  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_replacing_client_disconnects_old(self, manager: SseSessionManager) -> None:
        old = await manager.authenticate({}, {"api_key": KEY, "client_id": "same"})
        new = await manager.authenticate({}, {"api_key": KEY, "client_id": "same"})
        await manager.register(old)
        await manager.register(new)
        assert manager.get("same") is new
        event = old.queue.get_nowait()
        assert event.event is SseEventType.DISCONNECTED

        # Abmelden der alten Verbindung entfernt nicht die neue
        await manager.unregister(old)
        assert manager.get("same") is new

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self, manager: SseSessionManager) -> None:
        conn = await manager.authenticate({}, {"api_key": KEY, "client_id": "slow"})
        await manager.register(conn)
        for i in range(5):
            await manager.send_to("slow", SseEvent(SseEventType.MESSAGE, {"i": i}))
        assert conn.queue.qsize() == 3
        assert conn.dropped == 2
        assert conn.queue.get_nowait().data == {"i": 2}

    def test_event_format(self) -> None:
        event = SseEvent(SseEventType.MESSAGE, {"text": "Grüße"})
        assert event.to_sse() == 'event: message\ndata: {"text": "Grüße"}\n\n'

    def test_connection_expiry_math(self, sse_auth: Authenticator) -> None:
        conn = SseConnection(
            client_id="x",
            identity=sse_auth.bypass(),
            connection_time=0.0,
            last_activity=0.0,
            timeout_seconds=10.0,
        )
        assert not conn.is_expired(10.0)
        assert conn.is_expired(10.1)
        assert conn.time_until_expiry(4.0) == 6.0
        assert conn.time_until_expiry(20.0) == 0.0

    def test_auth_instructions(self, manager: SseSessionManager) -> None:
        info = manager.auth_instructions()
        assert set(info["authentication_methods"]) == {"header", "query_token", "query_api_key"}
        assert "connected" in info["events"]
