"""Abstrakte Basis für Transports und Session-Handler.

Ein Transport verbindet einen Kanal (stdio, HTTP/SSE) mit genau einem
Session-Handler. Der Handler sieht nur interne Operations-Nachrichten.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from rpcgate.protocol import OperationMessage


class TransportState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class SessionHandler(ABC):
    """Verarbeitet eine interne Nachricht, liefert höchstens eine Antwort."""

    @abstractmethod
    async def handle(self, message: OperationMessage) -> OperationMessage | None:
        """Verarbeitet ``message``.

        Returns:
            Reply für Requests, None für Notifications und Replies.
        """
        ...


class Transport(ABC):
    """Abstract base for all transports."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Eindeutiger Name des Transports (z.B. 'stdio', 'http')."""
        ...

    @property
    @abstractmethod
    def state(self) -> TransportState:
        ...

    @abstractmethod
    async def start(self, handler: SessionHandler) -> None:
        """Startet den Transport und läuft bis Shutdown oder Eingabeende."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Fordert ein sauberes Ende an. Idempotent."""
        ...

    @abstractmethod
    async def send(self, message: OperationMessage) -> None:
        """Schiebt eine Nachricht unaufgefordert zum Client."""
        ...
