"""rpcgate · Unified Error Hierarchy.

All custom exceptions inherit from RpcGateError, which carries an
error_code and an optional details dict for programmatic handling.
Protocol-level errors additionally carry the JSON-RPC error code that
is written into an error envelope.

Usage::

    from rpcgate.errors import AuthError, AuthFailure, UnknownMethodError

    raise UnknownMethodError("resources/list", request_id=7)
    raise AuthError("Invalid API key", reason=AuthFailure.INVALID_API_KEY)
"""

from __future__ import annotations

from enum import Enum

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Server-defined range (-32000 .. -32099)
OPERATION_ERROR = -32000
AUTH_ERROR = -32001
VALIDATION_ERROR = -32002


class RpcGateError(Exception):
    """Base exception for all rpcgate errors."""

    rpc_code: int = INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        error_code: str = "RPCGATE_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}


class ConfigError(RpcGateError):
    """Configuration errors (loading, validation)."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


# ============================================================================
# Framing & Protokoll
# ============================================================================


class FramingError(RpcGateError):
    """Eingabe ist kein gültiges JSON-Dokument oder passt zu keiner Envelope-Form."""

    rpc_code = PARSE_ERROR

    def __init__(
        self,
        message: str,
        error_code: str = "FRAMING_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class ProtocolError(RpcGateError):
    """Envelope ist wohlgeformt, lässt sich aber nicht übersetzen.

    ``request_id`` is the correlation id of the offending message, if it
    had one. Transports use it to answer with an error envelope.
    """

    rpc_code = INVALID_REQUEST

    def __init__(
        self,
        message: str,
        error_code: str = "PROTOCOL_ERROR",
        details: dict | None = None,
        *,
        request_id: int | str | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)
        self.request_id = request_id


class MissingIdError(ProtocolError):
    """Request-Methode ohne id."""

    rpc_code = INVALID_REQUEST

    def __init__(self, method: str | None = None) -> None:
        super().__init__(
            "Missing request ID",
            error_code="MISSING_ID",
            details={"method": method} if method else None,
        )


class UnknownMethodError(ProtocolError):
    """Methode mit id, die keiner bekannten Operation entspricht."""

    rpc_code = METHOD_NOT_FOUND

    def __init__(self, method: str, *, request_id: int | str | None = None) -> None:
        super().__init__(
            f"Unknown method: {method}",
            error_code="UNKNOWN_METHOD",
            details={"method": method},
            request_id=request_id,
        )
        self.method = method


class InvalidParamsError(ProtocolError):
    """Parameter einer bekannten Methode passen nicht zum Schema."""

    rpc_code = INVALID_PARAMS

    def __init__(
        self,
        message: str,
        *,
        request_id: int | str | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(
            message,
            error_code="INVALID_PARAMS",
            details=details,
            request_id=request_id,
        )


# ============================================================================
# Authentifizierung & Validierung
# ============================================================================


class AuthFailure(str, Enum):
    """Grund für eine fehlgeschlagene Authentifizierung."""

    MISSING_CREDENTIAL = "missing_credential"
    INVALID_API_KEY = "invalid_api_key"
    INVALID_TOKEN = "invalid_token"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    NOT_CONFIGURED = "not_configured"


class AuthError(RpcGateError):
    """Credential missing, malformed, unknown or expired."""

    rpc_code = AUTH_ERROR

    def __init__(
        self,
        message: str,
        reason: AuthFailure = AuthFailure.MISSING_CREDENTIAL,
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code="AUTH_ERROR", details=details)
        self.reason = reason


class ValidationError(RpcGateError):
    """Input exceeds limits or contains forbidden content."""

    rpc_code = VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        error_code: str = "VALIDATION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


# ============================================================================
# Engine & Ausführung
# ============================================================================


class OperationError(RpcGateError):
    """Die Operation selbst ist fehlgeschlagen (wird als normale Antwort gemeldet)."""

    rpc_code = OPERATION_ERROR

    def __init__(
        self,
        message: str,
        error_code: str = "OPERATION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class EngineNotInitializedError(RpcGateError):
    """Engine handle accessed before init()."""

    def __init__(self, message: str = "Operation engine not initialized") -> None:
        super().__init__(message, error_code="ENGINE_NOT_INITIALIZED")


class EngineAlreadyInitializedError(RpcGateError):
    """init() called twice on the same handle."""

    def __init__(self, message: str = "Operation engine already initialized") -> None:
        super().__init__(message, error_code="ENGINE_ALREADY_INITIALIZED")


class InternalError(RpcGateError):
    """Unexpected failure inside a handler."""

    rpc_code = INTERNAL_ERROR

    def __init__(
        self,
        message: str = "Internal error",
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


def rpc_code_for(exc: BaseException) -> int:
    """JSON-RPC-Code für eine beliebige Exception."""
    if isinstance(exc, RpcGateError):
        return exc.rpc_code
    return INTERNAL_ERROR


__all__ = [
    "AUTH_ERROR",
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "OPERATION_ERROR",
    "PARSE_ERROR",
    "VALIDATION_ERROR",
    "AuthError",
    "AuthFailure",
    "ConfigError",
    "EngineAlreadyInitializedError",
    "EngineNotInitializedError",
    "FramingError",
    "InternalError",
    "InvalidParamsError",
    "MissingIdError",
    "OperationError",
    "ProtocolError",
    "RpcGateError",
    "UnknownMethodError",
    "ValidationError",
    "rpc_code_for",
]
