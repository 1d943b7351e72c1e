"""rpcgate protocol module.

Wire-Envelopes (JSON-RPC 2.0), interne Operations-Nachrichten und
der Codec dazwischen.
"""

from rpcgate.protocol.codec import (
    decode_message,
    encode_message,
    error_reply,
    exception_reply,
    from_internal,
    result_reply,
    to_internal,
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
    envelope_to_dict,
)
from rpcgate.protocol.messages import (
    REQUEST_METHODS,
    CallParams,
    ClientInfo,
    Initialize,
    InitializeParams,
    InvokeOperation,
    ListOperations,
    Notify,
    OperationMessage,
    Reply,
    message_id,
)

__all__ = [
    "REQUEST_METHODS",
    "CallParams",
    "ClientInfo",
    "Envelope",
    "ErrorObject",
    "Initialize",
    "InitializeParams",
    "InvokeOperation",
    "ListOperations",
    "Notification",
    "Notify",
    "OperationMessage",
    "Reply",
    "Request",
    "RequestId",
    "Response",
    "decode",
    "decode_message",
    "encode",
    "encode_message",
    "envelope_to_dict",
    "error_reply",
    "exception_reply",
    "from_internal",
    "message_id",
    "result_reply",
    "to_internal",
]
