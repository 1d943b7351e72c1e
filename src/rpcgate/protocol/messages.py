"""Interne Operations-Nachrichten.

Geschlossene Summe aus fünf Varianten. Transports und Session-Handler
arbeiten nur mit diesen Typen, nie mit rohen Envelopes::

    match message:
        case Initialize(): ...
        case ListOperations(): ...
        case InvokeOperation(name=name, arguments=args): ...
        case Notify(): ...
        case Reply(): ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

from rpcgate.protocol.envelope import ErrorObject, RequestId

# ============================================================================
# Parameter-Schemas (Wire-Namen in camelCase)
# ============================================================================


class ClientInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    version: str | None = None


class InitializeParams(BaseModel):
    """Parameter von ``initialize``. Unbekannte Felder bleiben erhalten."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    protocol_version: str = Field(alias="protocolVersion")
    capabilities: dict[str, Any] = Field(default_factory=dict)
    client_info: ClientInfo | None = Field(default=None, alias="clientInfo")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


class CallParams(BaseModel):
    """Parameter von ``tools/call``."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    arguments: dict[str, Any] | None = None


# ============================================================================
# Varianten
# ============================================================================


@dataclass(frozen=True)
class Initialize:
    id: RequestId
    params: InitializeParams


@dataclass(frozen=True)
class ListOperations:
    id: RequestId
    params: dict[str, Any] | None = None


@dataclass(frozen=True)
class InvokeOperation:
    id: RequestId
    name: str
    arguments: dict[str, Any] | None = None
    # Zusätzliche Parameter (z.B. ``_meta``), unverändert durchgereicht
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Notify:
    method: str
    params: Any = None


@dataclass(frozen=True)
class Reply:
    id: RequestId
    result: Any = None
    error: ErrorObject | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


OperationMessage = Union[Initialize, ListOperations, InvokeOperation, Notify, Reply]

# Methoden, die eine id und genau eine Antwort verlangen
METHOD_INITIALIZE = "initialize"
METHOD_LIST = "tools/list"
METHOD_CALL = "tools/call"
REQUEST_METHODS = frozenset({METHOD_INITIALIZE, METHOD_LIST, METHOD_CALL})


def message_id(message: OperationMessage) -> RequestId | None:
    """Korrelations-id einer Nachricht (None bei Notify)."""
    return getattr(message, "id", None)
