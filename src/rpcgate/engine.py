"""Operation-Engine: Schnittstelle zur fachlichen Ausführung.

rpcgate definiert nicht, was Operationen tun. Eine Engine liefert
Operations-Definitionen und führt Aufrufe aus (Name + JSON-Argumente
→ JSON-Ergebnis oder OperationError).

Nutzung:
    engine = BuiltinEngine()

    @engine.operation("greet", description="Begrüßt jemanden")
    async def greet(name: str) -> str:
        return f"Hallo {name}"

    handle = EngineHandle()
    handle.init(engine)

Externe Engines werden über einen Importpfad ``modul:factory`` geladen.
"""

from __future__ import annotations

import asyncio
import functools
import importlib
import inspect
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from rpcgate.errors import (
    ConfigError,
    EngineAlreadyInitializedError,
    EngineNotInitializedError,
    OperationError,
)
from rpcgate.utils.logging import get_logger

log = get_logger(__name__)

__all__ = [
    "BuiltinEngine",
    "EngineHandle",
    "OperationDef",
    "OperationEngine",
    "default_handle",
    "load_engine",
]

_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass
class OperationDef:
    """Definition einer remote aufrufbaren Operation."""

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Callable[..., Any]
    annotations: dict[str, Any] = field(default_factory=dict)

    def to_schema(self) -> dict[str, Any]:
        """Wire-Form für ``tools/list``."""
        schema: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }
        if self.annotations:
            schema["annotations"] = self.annotations
        return schema


class OperationEngine(ABC):
    """Abstrakte Basis für Operation-Engines."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def list_operations(self) -> list[OperationDef]:
        ...

    @abstractmethod
    async def invoke(self, name: str, arguments: dict[str, Any]) -> Any:
        """Führt eine Operation aus.

        Raises:
            OperationError: Unbekannte Operation oder fachlicher Fehler.
        """
        ...

    async def probe(self) -> None:
        """Erreichbarkeits-Check für Health-Monitoring."""
        self.list_operations()


class BuiltinEngine(OperationEngine):
    """In-Process-Engine mit Decorator-Registrierung.

    Bringt ``echo`` und ``ping`` mit.
    """

    HANDLER_TIMEOUT = 60.0

    def __init__(self, *, handler_timeout: float | None = None, builtins: bool = True) -> None:
        self._operations: dict[str, OperationDef] = {}
        self._timeout = handler_timeout or self.HANDLER_TIMEOUT
        self._invocations = 0
        self._failures = 0
        if builtins:
            self._register_builtins()

    @property
    def name(self) -> str:
        return "builtin"

    def register(self, operation: OperationDef) -> None:
        self._operations[operation.name] = operation
        log.debug("operation_registered", operation=operation.name)

    def operation(
        self,
        name: str,
        *,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
        annotations: dict[str, Any] | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator: registriert eine Funktion als Operation."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(OperationDef(
                name=name,
                description=description or (inspect.getdoc(fn) or "").split("\n")[0],
                input_schema=input_schema or dict(_OBJECT_SCHEMA),
                handler=fn,
                annotations=annotations or {},
            ))
            return fn

        return decorator

    def list_operations(self) -> list[OperationDef]:
        return list(self._operations.values())

    async def invoke(self, name: str, arguments: dict[str, Any]) -> Any:
        operation = self._operations.get(name)
        if operation is None:
            raise OperationError(
                f"Unknown operation: {name}",
                error_code="OPERATION_NOT_FOUND",
                details={"operation": name},
            )
        self._invocations += 1
        try:
            if inspect.iscoroutinefunction(operation.handler):
                call = operation.handler(**arguments)
            else:
                # Sync-Handler laufen im Thread-Pool, der Loop bleibt frei
                call = asyncio.to_thread(functools.partial(operation.handler, **arguments))
            return await asyncio.wait_for(call, timeout=self._timeout)
        except OperationError:
            self._failures += 1
            raise
        except TimeoutError as exc:
            self._failures += 1
            raise OperationError(
                f"Operation '{name}' timed out after {self._timeout:g}s",
                error_code="OPERATION_TIMEOUT",
            ) from exc
        except TypeError as exc:
            # Falsche Argumente für die Handler-Signatur
            self._failures += 1
            raise OperationError(
                f"Invalid arguments for '{name}': {exc}",
                error_code="OPERATION_BAD_ARGUMENTS",
            ) from exc
        except Exception as exc:
            self._failures += 1
            log.error("operation_failed", operation=name, error=str(exc))
            raise OperationError(f"Operation '{name}' failed: {exc}") from exc

    def stats(self) -> dict[str, Any]:
        return {
            "operations": len(self._operations),
            "invocations": self._invocations,
            "failures": self._failures,
        }

    def _register_builtins(self) -> None:
        @self.operation(
            "echo",
            description="Returns its arguments unchanged",
            input_schema={"type": "object", "additionalProperties": True},
            annotations={"readOnlyHint": True, "idempotentHint": True},
        )
        def echo(**arguments: Any) -> dict[str, Any]:
            return arguments

        @self.operation(
            "ping",
            description="Liveness check, returns 'pong'",
            annotations={"readOnlyHint": True},
        )
        def ping() -> str:
            return "pong"


class EngineHandle:
    """Geteilter, einmal initialisierter Zugriff auf die Engine.

    ``get()`` vor ``init()`` wirft EngineNotInitializedError.
    """

    def __init__(self) -> None:
        self._engine: OperationEngine | None = None

    def init(self, engine: OperationEngine) -> OperationEngine:
        if self._engine is not None:
            raise EngineAlreadyInitializedError()
        self._engine = engine
        log.info("operation_engine_initialized", engine=engine.name)
        return engine

    def get(self) -> OperationEngine:
        if self._engine is None:
            raise EngineNotInitializedError()
        return self._engine

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    def reset(self) -> None:
        self._engine = None


default_handle = EngineHandle()


def load_engine(path: str | None) -> OperationEngine:
    """Lädt eine Engine über ``modul:factory``. Ohne Pfad: BuiltinEngine."""
    if not path:
        return BuiltinEngine()
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigError(
            f"Engine path must look like 'module:factory', got {path!r}",
            error_code="ENGINE_PATH_INVALID",
        )
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigError(
            f"Cannot load engine {path!r}: {exc}",
            error_code="ENGINE_LOAD_FAILED",
        ) from exc
    engine = factory() if callable(factory) and not isinstance(factory, OperationEngine) else factory
    if not isinstance(engine, OperationEngine):
        raise ConfigError(
            f"{path!r} did not produce an OperationEngine",
            error_code="ENGINE_TYPE_INVALID",
        )
    return engine
