"""Übersetzung zwischen Wire-Envelopes und internen Nachrichten.

Reine Funktionen ohne Seiteneffekte. Es gilt in beide Richtungen::

    from_internal(to_internal(envelope)) == envelope
    to_internal(decode(encode(from_internal(message)))) == message
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError as PydanticValidationError

from rpcgate.errors import (
    INTERNAL_ERROR,
    InvalidParamsError,
    MissingIdError,
    ProtocolError,
    UnknownMethodError,
    rpc_code_for,
)
from rpcgate.protocol.envelope import (
    Envelope,
    ErrorObject,
    Notification,
    Request,
    RequestId,
    Response,
    decode,
    encode,
)
from rpcgate.protocol.messages import (
    METHOD_CALL,
    METHOD_INITIALIZE,
    METHOD_LIST,
    REQUEST_METHODS,
    CallParams,
    Initialize,
    InitializeParams,
    InvokeOperation,
    ListOperations,
    Notify,
    OperationMessage,
    Reply,
)


_CALL_FIELDS = frozenset(CallParams.model_fields)


def _require_params(request: Request, what: str) -> dict[str, Any]:
    if request.params is None:
        raise InvalidParamsError(f"Missing {what} params", request_id=request.id)
    if not isinstance(request.params, dict):
        raise InvalidParamsError(f"{what.capitalize()} params must be an object", request_id=request.id)
    return request.params


def _invalid(request: Request, exc: PydanticValidationError) -> InvalidParamsError:
    return InvalidParamsError(
        f"Invalid params for {request.method}",
        request_id=request.id,
        details={"errors": [
            {"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()
        ]},
    )


def _request_to_internal(request: Request) -> OperationMessage:
    if request.method == METHOD_INITIALIZE:
        params = _require_params(request, "initialize")
        try:
            return Initialize(id=request.id, params=InitializeParams.model_validate(params))
        except PydanticValidationError as exc:
            raise _invalid(request, exc) from exc

    if request.method == METHOD_LIST:
        if request.params is not None and not isinstance(request.params, dict):
            raise InvalidParamsError("List params must be an object", request_id=request.id)
        return ListOperations(id=request.id, params=request.params)

    if request.method == METHOD_CALL:
        params = _require_params(request, "tool call")
        try:
            call = CallParams.model_validate(params)
        except PydanticValidationError as exc:
            raise _invalid(request, exc) from exc
        extra = {k: v for k, v in params.items() if k not in _CALL_FIELDS}
        if "arguments" in params and params["arguments"] is None:
            # Explizites null bleibt auf dem Rückweg erhalten
            extra["arguments"] = None
        return InvokeOperation(
            id=request.id,
            name=call.name,
            arguments=call.arguments,
            extra=extra,
        )

    raise UnknownMethodError(request.method, request_id=request.id)


def to_internal(envelope: Envelope) -> OperationMessage:
    """Envelope → interne Nachricht.

    Raises:
        MissingIdError: Request-Methode oder Response ohne id.
        UnknownMethodError: Nachricht mit id und unbekannter Methode.
        InvalidParamsError: Parameter passen nicht zum Schema der Methode.
    """
    if isinstance(envelope, Request):
        return _request_to_internal(envelope)
    if isinstance(envelope, Notification):
        if envelope.method in REQUEST_METHODS:
            raise MissingIdError(envelope.method)
        return Notify(method=envelope.method, params=envelope.params)
    if isinstance(envelope, Response):
        if envelope.id is None:
            raise MissingIdError()
        return Reply(id=envelope.id, result=envelope.result, error=envelope.error)
    raise ProtocolError(f"Not an envelope: {type(envelope).__name__}")


def from_internal(message: OperationMessage) -> Envelope:
    """Interne Nachricht → Envelope."""
    match message:
        case Initialize(id=msg_id, params=params):
            return Request(id=msg_id, method=METHOD_INITIALIZE, params=params.to_wire())
        case ListOperations(id=msg_id, params=params):
            return Request(id=msg_id, method=METHOD_LIST, params=params)
        case InvokeOperation(id=msg_id, name=name, arguments=arguments, extra=extra):
            params: dict[str, Any] = {"name": name}
            if arguments is not None:
                params["arguments"] = arguments
            params.update(extra)
            return Request(id=msg_id, method=METHOD_CALL, params=params)
        case Notify(method=method, params=params):
            return Notification(method=method, params=params)
        case Reply(id=msg_id, result=result, error=error):
            return Response(id=msg_id, result=result, error=error)
    raise TypeError(f"Not an operation message: {type(message).__name__}")


# ============================================================================
# Bequeme Helfer für Transports
# ============================================================================


def decode_message(data: bytes | str) -> OperationMessage:
    """decode + to_internal in einem Schritt."""
    return to_internal(decode(data))


def encode_message(message: OperationMessage) -> bytes:
    """from_internal + encode in einem Schritt."""
    return encode(from_internal(message))


def result_reply(request_id: RequestId, result: Any) -> Reply:
    return Reply(id=request_id, result=result)


def error_reply(
    request_id: RequestId,
    code: int,
    message: str,
    data: Any = None,
) -> Reply:
    return Reply(id=request_id, error=ErrorObject(code=code, message=message, data=data))


def exception_reply(request_id: RequestId, exc: BaseException, *, expose: bool = True) -> Reply:
    """Error-Reply für eine Exception. Ohne ``expose`` nur eine generische Meldung."""
    code = rpc_code_for(exc)
    if not expose and code == INTERNAL_ERROR:
        return error_reply(request_id, code, "Internal error")
    return error_reply(request_id, code, str(exc))
