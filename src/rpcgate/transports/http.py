"""HTTP/SSE-Transport: FastAPI-Router für Operationen, Streaming und Health.

Endpunkte:
  POST /invoke/{op}  → Operation aufrufen ({"arguments": {...}})
  GET  /operations   → Verfügbare Operationen
  GET  /stream       → SSE-Stream (Header, ?token= oder ?api_key=)
  POST /stream       → JSON-RPC-Envelope, Antwort auch als SSE-Event
  GET  /stream/auth  → Beschreibung der Stream-Authentifizierung
  GET  /health       → Aggregat-Status (ohne Auth)
  GET  /ready        → 200 nur wenn alle Checks healthy
  GET  /metrics      → Prometheus-Text
  GET  /stats        → JSON-Snapshot

Alle Routen außer /health und /stream/auth verlangen Authentifizierung.
"""

from __future__ import annotations

import contextlib
import time
from collections.abc import Iterator
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from rpcgate.errors import (
    INTERNAL_ERROR,
    VALIDATION_ERROR,
    AuthError,
    FramingError,
    InternalError,
    ProtocolError,
    RpcGateError,
    ValidationError,
)
from rpcgate.monitoring.health import HealthStatus
from rpcgate.monitoring.metrics import PROMETHEUS_CONTENT_TYPE, MetricsProvider
from rpcgate.protocol import (
    InvokeOperation,
    ListOperations,
    Notify,
    OperationMessage,
    Reply,
    decode,
    envelope_to_dict,
    from_internal,
    to_internal,
)
from rpcgate.security.auth import Authenticator, Identity
from rpcgate.security.validation import InputValidator, RequestSanitizer
from rpcgate.transports.base import SessionHandler, Transport, TransportState
from rpcgate.transports.sse import SseEvent, SseEventType, SseSessionManager
from rpcgate.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_CLIENT_ID = "default"
SSE_MEDIA_TYPE = "text/event-stream"


# ============================================================================
# API-Datenmodelle
# ============================================================================


class InvokeRequest(BaseModel):
    """Body von POST /invoke/{op}."""

    arguments: dict[str, Any] = Field(default_factory=dict)


class InvokeResponse(BaseModel):
    success: bool
    result: Any = None
    error: str | None = None


# ============================================================================
# Metrics-Middleware
# ============================================================================


class MetricsMiddleware:
    """ASGI-Middleware: aktive Verbindungen und Latenz pro Request.

    Reines ASGI statt BaseHTTPMiddleware, damit Streaming-Bodies bis zum
    Ende als aktive Verbindung zählen. Erfolgreich geöffnete SSE-Streams
    gehen nicht in die Latenz-Statistik ein, abgewiesene schon.
    """

    def __init__(self, app: ASGIApp, metrics: MetricsProvider) -> None:
        self.app = app
        self._metrics = metrics

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        status_code = 500
        event_stream = False

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code, event_stream
            if message["type"] == "http.response.start":
                status_code = message["status"]
                event_stream = any(
                    key.lower() == b"content-type" and value.startswith(SSE_MEDIA_TYPE.encode())
                    for key, value in message.get("headers", [])
                )
            await send(message)

        monitor = self._metrics.monitor
        monitor.increment_active_connections()
        start = time.perf_counter()
        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            monitor.decrement_active_connections()
            is_error = status_code >= 400
            if is_error or not event_stream:
                latency_ms = (time.perf_counter() - start) * 1000
                self._metrics.record_request(latency_ms, is_error)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn ohne eigene Signal-Handler, das Herunterfahren steuert der Runner."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


# ============================================================================
# HTTP-Transport
# ============================================================================


class HttpTransport(Transport):
    """HTTP/SSE-Transport via FastAPI und uvicorn."""

    def __init__(
        self,
        *,
        authenticator: Authenticator,
        metrics: MetricsProvider,
        sessions: SseSessionManager,
        validator: InputValidator | None = None,
        host: str = "127.0.0.1",
        port: int = 8080,
        cors_origins: list[str] | None = None,
        expose_error_details: bool = False,
        version: str = "0.0.0",
    ) -> None:
        self._auth = authenticator
        self._metrics = metrics
        self._sessions = sessions
        self._validator = validator or InputValidator()
        self._host = host
        self._port = port
        self._cors_origins = cors_origins if cors_origins is not None else ["*"]
        self._expose = expose_error_details
        self._version = version
        self._handler: SessionHandler | None = None
        self._app: FastAPI | None = None
        self._server: uvicorn.Server | None = None
        self._state = TransportState.IDLE

    @property
    def name(self) -> str:
        return "http"

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def sessions(self) -> SseSessionManager:
        return self._sessions

    @property
    def app(self) -> FastAPI:
        """FastAPI-App-Instanz (für Tests und Einbettung)."""
        if self._app is None:
            self._app = self._create_app()
        return self._app

    def attach(self, handler: SessionHandler) -> None:
        """Setzt den Session-Handler ohne den Server zu starten."""
        self._handler = handler

    # ------------------------------------------------------------------
    # Lebenszyklus
    # ------------------------------------------------------------------

    async def start(self, handler: SessionHandler) -> None:
        if self._state is not TransportState.IDLE:
            raise RuntimeError(f"http transport cannot start from state {self._state.value}")
        self.attach(handler)
        self._state = TransportState.RUNNING
        config = uvicorn.Config(
            self.app,
            host=self._host,
            port=self._port,
            log_level="warning",
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        await self._metrics.start()
        log.info("http_transport_starting", host=self._host, port=self._port)
        try:
            await self._server.serve()
        except SystemExit as exc:
            # uvicorn beendet sich bei Bind-Fehlern mit sys.exit(1)
            raise InternalError(
                f"HTTP server failed to start on {self._host}:{self._port}",
                error_code="HTTP_START_FAILED",
            ) from exc
        finally:
            await self._metrics.stop()
            self._state = TransportState.STOPPED
            log.info("http_transport_stopped")

    async def shutdown(self) -> None:
        if self._state in (TransportState.STOPPED, TransportState.SHUTTING_DOWN):
            return
        if self._state is TransportState.IDLE:
            self._state = TransportState.STOPPED
            return
        self._state = TransportState.SHUTTING_DOWN
        await self._sessions.close_all("server_shutdown")
        if self._server is not None:
            self._server.should_exit = True
        log.info("http_transport_shutdown_requested")

    async def send(self, message: OperationMessage) -> None:
        """Broadcast an alle SSE-Clients."""
        if isinstance(message, Reply):
            event_type = SseEventType.RESPONSE
        elif isinstance(message, Notify):
            event_type = SseEventType.NOTIFICATION
        else:
            event_type = SseEventType.MESSAGE
        data = envelope_to_dict(from_internal(message))
        count = await self._sessions.broadcast(SseEvent(event_type, data))
        log.debug("sse_broadcast", event_type=event_type.value, clients=count)

    # ------------------------------------------------------------------
    # Hilfen
    # ------------------------------------------------------------------

    def _require_handler(self) -> SessionHandler:
        if self._handler is None:
            raise InternalError("Session handler not attached", error_code="HANDLER_NOT_READY")
        return self._handler

    def _error_body(self, exc: BaseException, fallback: str) -> dict[str, Any]:
        return {
            "error": RequestSanitizer.sanitize_error_message(exc, self._expose, fallback=fallback),
            "correlation_id": RequestSanitizer.create_correlation_id(),
        }

    def _create_app(self) -> FastAPI:
        """Erstellt die FastAPI-Applikation mit allen Routen."""
        app = FastAPI(
            title="rpcgate",
            version=self._version,
            description="JSON-RPC operations over HTTP and Server-Sent Events",
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self._cors_origins,
            allow_credentials="*" not in self._cors_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )
        app.add_middleware(MetricsMiddleware, metrics=self._metrics)

        # -- Exception-Handler ------------------------------------------

        @app.exception_handler(AuthError)
        async def _auth_error(request: Request, exc: AuthError) -> JSONResponse:
            log.info("http_auth_failed", path=request.url.path, reason=exc.reason.value)
            body = self._error_body(exc, "Authentication failed")
            body["reason"] = exc.reason.value
            return JSONResponse(body, status_code=401, headers={"WWW-Authenticate": "Bearer"})

        @app.exception_handler(ValidationError)
        async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
            log.info("http_validation_failed", path=request.url.path, error_code=exc.error_code)
            return JSONResponse(self._error_body(exc, RequestSanitizer.GENERIC_MESSAGE), status_code=400)

        @app.exception_handler(FramingError)
        async def _framing_error(request: Request, exc: FramingError) -> JSONResponse:
            log.info("http_framing_error", path=request.url.path)
            return JSONResponse(self._error_body(exc, "Malformed message"), status_code=400)

        @app.exception_handler(ProtocolError)
        async def _protocol_error(request: Request, exc: ProtocolError) -> JSONResponse:
            log.info("http_protocol_error", path=request.url.path, error_code=exc.error_code)
            body = self._error_body(exc, "Invalid request")
            body["code"] = exc.rpc_code
            return JSONResponse(body, status_code=400)

        @app.exception_handler(RequestValidationError)
        async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
            log.info("http_request_invalid", path=request.url.path)
            return JSONResponse(self._error_body(exc, RequestSanitizer.GENERIC_MESSAGE), status_code=400)

        @app.exception_handler(RpcGateError)
        async def _internal_error(request: Request, exc: RpcGateError) -> JSONResponse:
            log.error("http_internal_error", path=request.url.path, error_code=exc.error_code)
            return JSONResponse(self._error_body(exc, "Internal server error"), status_code=500)

        @app.exception_handler(Exception)
        async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
            log.exception("http_unhandled_error", path=request.url.path)
            return JSONResponse({"error": "Internal server error"}, status_code=500)

        # -- Auth-Dependency --------------------------------------------

        async def require_identity(request: Request) -> Identity:
            return self._auth.parse_credential(request.headers.get("authorization"))

        # -- Routen -----------------------------------------------------

        @app.get("/health")
        async def health() -> JSONResponse:
            report = await self._metrics.get_health_status()
            status_code = 503 if report.status is HealthStatus.UNHEALTHY else 200
            return JSONResponse(report.to_dict(), status_code=status_code)

        @app.get("/ready")
        async def ready(identity: Identity = Depends(require_identity)) -> JSONResponse:  # noqa: B008
            report = await self._metrics.get_readiness()
            return JSONResponse(report.to_dict(), status_code=200 if report.ready else 503)

        @app.get("/metrics")
        async def metrics(identity: Identity = Depends(require_identity)) -> Response:  # noqa: B008
            return Response(self._metrics.prometheus_text(), media_type=PROMETHEUS_CONTENT_TYPE)

        @app.get("/stats")
        async def stats(identity: Identity = Depends(require_identity)) -> dict[str, Any]:  # noqa: B008
            return {
                "metrics": self._metrics.snapshot(),
                "sse": self._sessions.stats(),
                "auth": self._auth.stats(),
            }

        @app.get("/operations")
        async def list_operations(identity: Identity = Depends(require_identity)) -> JSONResponse:  # noqa: B008
            request_id = RequestSanitizer.create_correlation_id()
            reply = await self._require_handler().handle(ListOperations(id=request_id))
            if not isinstance(reply, Reply) or reply.error is not None:
                message = reply.error.message if isinstance(reply, Reply) and reply.error else "No reply"
                raise InternalError(message)
            return JSONResponse(reply.result)

        @app.post("/invoke/{op}")
        async def invoke(
            op: str,
            body: InvokeRequest,
            identity: Identity = Depends(require_identity),  # noqa: B008
        ) -> JSONResponse:
            arguments = self._validator.validate_arguments(body.arguments)
            request_id = RequestSanitizer.create_correlation_id()
            log.debug("http_invoke", operation=op, subject=identity.subject, id=request_id)
            reply = await self._require_handler().handle(
                InvokeOperation(id=request_id, name=op, arguments=arguments),
            )
            if not isinstance(reply, Reply):
                raise InternalError("No reply from session handler")
            if reply.error is not None:
                if reply.error.code == VALIDATION_ERROR:
                    status_code = 400
                elif reply.error.code == INTERNAL_ERROR:
                    status_code = 500
                else:
                    status_code = 200
                payload = InvokeResponse(success=False, error=reply.error.message)
                return JSONResponse(payload.model_dump(exclude_none=True), status_code=status_code)
            payload = InvokeResponse(success=True, result=_plain_result(reply.result))
            return JSONResponse(payload.model_dump(exclude_none=True))

        @app.get("/stream/auth")
        async def stream_auth() -> dict[str, Any]:
            return self._sessions.auth_instructions()

        @app.get("/stream")
        async def stream(request: Request) -> StreamingResponse:
            conn = await self._sessions.authenticate(request.headers, request.query_params)
            return StreamingResponse(
                self._sessions.stream(conn),
                media_type=SSE_MEDIA_TYPE,
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )

        @app.post("/stream")
        async def stream_message(request: Request) -> Response:
            conn = await self._sessions.authenticate(request.headers, request.query_params)
            client_id = request.query_params.get("client_id") or DEFAULT_CLIENT_ID
            message = to_internal(decode(await request.body()))
            if isinstance(message, InvokeOperation):
                self._validator.validate_arguments(message.arguments)
            await self._sessions.touch(client_id)
            log.debug("sse_message_received", client_id=client_id, subject=conn.identity.subject)

            reply = await self._require_handler().handle(message)
            if reply is None:
                return Response(status_code=204)
            data = envelope_to_dict(from_internal(reply))
            await self._sessions.send_to(client_id, SseEvent(SseEventType.RESPONSE, data))
            return JSONResponse(data)

        return app


def _plain_result(result: Any) -> Any:
    """Ergebnis aus der ``tools/call``-Form für die REST-Antwort auspacken."""
    if not isinstance(result, dict):
        return result
    if "structuredContent" in result:
        return result["structuredContent"]
    content = result.get("content")
    if isinstance(content, list) and content and isinstance(content[0], dict):
        return content[0].get("text")
    return result
