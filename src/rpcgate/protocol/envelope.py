"""Wire-Envelopes: JSON-RPC 2.0 Request, Response und Notification.

``decode`` prüft nur die Form eines Dokuments (Framing). Ob eine
Methode bekannt ist, entscheidet erst ``rpcgate.protocol.codec``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from rpcgate.errors import FramingError

JSONRPC_VERSION = "2.0"

RequestId = Union[int, str]


@dataclass(frozen=True)
class ErrorObject:
    """JSON-RPC error object."""

    code: int
    message: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            out["data"] = self.data
        return out


@dataclass(frozen=True)
class Request:
    id: RequestId
    method: str
    params: Any = None


@dataclass(frozen=True)
class Response:
    id: RequestId | None
    result: Any = None
    error: ErrorObject | None = None


@dataclass(frozen=True)
class Notification:
    method: str
    params: Any = None


Envelope = Union[Request, Response, Notification]


# ============================================================================
# Decoding
# ============================================================================


def _check_id(value: Any) -> RequestId | None:
    # bool ist in Python ein int, im Protokoll aber keine gültige id
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise FramingError(
            "Invalid id type",
            details={"type": type(value).__name__},
        )
    return value


def _check_error(value: Any) -> ErrorObject:
    if not isinstance(value, dict):
        raise FramingError("Error member must be an object")
    code = value.get("code")
    message = value.get("message")
    if isinstance(code, bool) or not isinstance(code, int) or not isinstance(message, str):
        raise FramingError("Error object requires integer code and string message")
    return ErrorObject(code=code, message=message, data=value.get("data"))


def decode(data: bytes | str) -> Envelope:
    """Parst ein JSON-Dokument in ein Envelope.

    Raises:
        FramingError: Kein gültiges JSON, kein Objekt, oder keine bekannte Envelope-Form.
    """
    try:
        doc = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise FramingError(f"Invalid JSON: {exc}") from exc

    if not isinstance(doc, dict):
        raise FramingError("Envelope must be a JSON object")

    version = doc.get("jsonrpc", JSONRPC_VERSION)
    if version != JSONRPC_VERSION:
        raise FramingError(
            "Unsupported jsonrpc version",
            details={"jsonrpc": version},
        )

    if "method" in doc:
        method = doc["method"]
        if not isinstance(method, str) or not method:
            raise FramingError("Method must be a non-empty string")
        msg_id = _check_id(doc.get("id"))
        if msg_id is None:
            return Notification(method=method, params=doc.get("params"))
        return Request(id=msg_id, method=method, params=doc.get("params"))

    if "result" in doc or "error" in doc:
        error = _check_error(doc["error"]) if doc.get("error") is not None else None
        return Response(
            id=_check_id(doc.get("id")),
            result=doc.get("result"),
            error=error,
        )

    raise FramingError("Document matches no envelope shape")


# ============================================================================
# Encoding
# ============================================================================


def envelope_to_dict(envelope: Envelope) -> dict[str, Any]:
    """Envelope als JSON-kompatibles Dict (immer mit ``jsonrpc``)."""
    out: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
    if isinstance(envelope, Request):
        out["id"] = envelope.id
        out["method"] = envelope.method
        if envelope.params is not None:
            out["params"] = envelope.params
    elif isinstance(envelope, Notification):
        out["method"] = envelope.method
        if envelope.params is not None:
            out["params"] = envelope.params
    elif isinstance(envelope, Response):
        out["id"] = envelope.id
        if envelope.error is not None:
            out["error"] = envelope.error.to_dict()
        else:
            out["result"] = envelope.result
    else:
        raise TypeError(f"Not an envelope: {type(envelope).__name__}")
    return out


def encode(envelope: Envelope) -> bytes:
    """Kompaktes UTF-8-JSON ohne abschließenden Zeilenumbruch."""
    return json.dumps(
        envelope_to_dict(envelope),
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
