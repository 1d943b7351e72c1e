"""Operation-Server: Session-Handler zwischen Transports und Engine.

Beantwortet die drei Request-Methoden:
  - Initialize     → Protokoll-Version, Server-Info, Capabilities
  - ListOperations → {"tools": [...]}
  - InvokeOperation → Argumente validieren, Engine aufrufen

Notifications und eingehende Replies erzeugen keine Antwort.
"""

from __future__ import annotations

import json
from typing import Any

from rpcgate import PROTOCOL_VERSION, SERVER_NAME, __version__
from rpcgate.engine import EngineHandle
from rpcgate.errors import (
    INTERNAL_ERROR,
    EngineNotInitializedError,
    OperationError,
    ValidationError,
)
from rpcgate.protocol import (
    Initialize,
    InvokeOperation,
    ListOperations,
    Notify,
    OperationMessage,
    Reply,
    error_reply,
    result_reply,
)
from rpcgate.security.validation import InputValidator, RequestSanitizer
from rpcgate.transports.base import SessionHandler
from rpcgate.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_INSTRUCTIONS = (
    "Call tools/list to discover the available operations, then tools/call "
    "with the operation name and a JSON object of arguments."
)


def operation_result(result: Any) -> dict[str, Any]:
    """Wire-Form eines Operations-Ergebnisses für ``tools/call``."""
    text = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
    payload: dict[str, Any] = {
        "content": [{"type": "text", "text": text}],
        "isError": False,
    }
    if isinstance(result, dict):
        payload["structuredContent"] = result
    return payload


class OperationServer(SessionHandler):
    """Verbindet Protokoll-Nachrichten mit der Operation-Engine."""

    def __init__(
        self,
        engine: EngineHandle,
        *,
        validator: InputValidator | None = None,
        version: str = __version__,
        instructions: str = DEFAULT_INSTRUCTIONS,
        expose_error_details: bool = True,
    ) -> None:
        self._engine = engine
        self._validator = validator or InputValidator()
        self._version = version
        self._instructions = instructions
        self._expose = expose_error_details
        self._request_count = 0
        self._error_count = 0
        self._clients: list[str] = []

    async def handle(self, message: OperationMessage) -> OperationMessage | None:
        match message:
            case Initialize():
                self._request_count += 1
                return self._handle_initialize(message)
            case ListOperations(id=msg_id):
                self._request_count += 1
                return self._handle_list(msg_id)
            case InvokeOperation():
                self._request_count += 1
                return await self._handle_invoke(message)
            case Notify(method=method):
                log.debug("notification_received", method=method)
                return None
            case Reply(id=msg_id):
                log.warning("unexpected_reply_ignored", id=msg_id)
                return None
        raise TypeError(f"Unsupported message: {type(message).__name__}")

    # ------------------------------------------------------------------

    def _handle_initialize(self, message: Initialize) -> Reply:
        client = message.params.client_info
        client_name = client.name if client else "unknown"
        self._clients.append(client_name)
        log.info(
            "client_initialized",
            client=client_name,
            client_protocol=message.params.protocol_version,
        )
        return result_reply(message.id, {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": SERVER_NAME, "version": self._version},
            "capabilities": {"tools": {"listChanged": False}},
            "instructions": self._instructions,
        })

    def _handle_list(self, msg_id: int | str) -> Reply:
        try:
            operations = self._engine.get().list_operations()
        except EngineNotInitializedError as exc:
            self._error_count += 1
            return error_reply(msg_id, INTERNAL_ERROR, str(exc))
        return result_reply(msg_id, {"tools": [op.to_schema() for op in operations]})

    async def _handle_invoke(self, message: InvokeOperation) -> Reply:
        try:
            arguments = self._validator.validate_arguments(message.arguments)
        except ValidationError as exc:
            self._error_count += 1
            log.info("operation_arguments_rejected", operation=message.name, error_code=exc.error_code)
            text = RequestSanitizer.sanitize_error_message(exc, self._expose)
            return error_reply(message.id, exc.rpc_code, text)

        try:
            engine = self._engine.get()
        except EngineNotInitializedError as exc:
            self._error_count += 1
            return error_reply(message.id, INTERNAL_ERROR, str(exc))

        try:
            result = await engine.invoke(message.name, arguments)
        except OperationError as exc:
            self._error_count += 1
            log.info("operation_error", operation=message.name, error_code=exc.error_code)
            return error_reply(message.id, exc.rpc_code, str(exc))

        log.debug("operation_invoked", operation=message.name)
        return result_reply(message.id, operation_result(result))

    def stats(self) -> dict[str, Any]:
        return {
            "requests": self._request_count,
            "errors": self._error_count,
            "initialized_clients": len(self._clients),
        }
