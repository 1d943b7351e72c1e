"""Eingabe-Validierung und Fehler-Sanitizing.

Prüft Operations-Argumente, bevor sie die Engine erreichen:
  - Ausdrücke: Länge, Verschachtelungstiefe, Funktions-Blacklist
  - Ressourcen: Objekt-Form, serialisierte Größe, Key-/Array-/String-Limits

RequestSanitizer entfernt interne Details aus Fehlermeldungen, bevor
sie an Clients gehen.
"""

from __future__ import annotations

import json
import uuid
from typing import TYPE_CHECKING, Any

from rpcgate.errors import ValidationError
from rpcgate.utils.logging import get_logger

if TYPE_CHECKING:
    from rpcgate.config import SecurityConfig

log = get_logger(__name__)

MAX_KEY_LENGTH = 255
MAX_ARRAY_LENGTH = 10_000
MAX_STRING_LENGTH = 100_000

_OPENERS = "([{"
_CLOSERS = ")]}"
_QUOTES = "\"'"
_BOM = "\ufeff"


def expression_depth(expression: str) -> int:
    """Maximale Klammer-Verschachtelung außerhalb von String-Literalen."""
    depth = 0
    max_depth = 0
    quote: str | None = None
    escaped = False
    for ch in expression:
        if quote is not None:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in _QUOTES:
            quote = ch
        elif ch in _OPENERS:
            depth += 1
            max_depth = max(max_depth, depth)
        elif ch in _CLOSERS:
            depth = max(0, depth - 1)
    return max_depth


class InputValidator:
    """Prüft Ausdrücke und Ressourcen gegen konfigurierte Limits."""

    def __init__(
        self,
        *,
        max_expression_length: int = 1000,
        max_expression_depth: int = 10,
        max_resource_size: int = 1024 * 1024,
        enable_blacklist: bool = True,
        blacklisted_functions: list[str] | None = None,
        expression_fields: list[str] | None = None,
    ) -> None:
        self._max_length = max_expression_length
        self._max_depth = max_expression_depth
        self._max_resource_size = max_resource_size
        self._enable_blacklist = enable_blacklist
        self._blacklist = [
            f.lower() for f in (blacklisted_functions or ["eval", "system", "exec", "shell"])
        ]
        self._expression_fields = frozenset(expression_fields or ["expression"])

    @classmethod
    def from_config(cls, config: SecurityConfig) -> InputValidator:
        return cls(
            max_expression_length=config.max_expression_length,
            max_expression_depth=config.max_expression_depth,
            max_resource_size=config.max_resource_size,
            enable_blacklist=config.enable_expression_blacklist,
            blacklisted_functions=config.blacklisted_functions,
            expression_fields=config.expression_fields,
        )

    # ------------------------------------------------------------------
    # Ausdrücke
    # ------------------------------------------------------------------

    def validate_expression(self, expression: str) -> None:
        if not expression.strip():
            raise ValidationError("Expression cannot be empty", error_code="EXPRESSION_EMPTY")
        if len(expression) > self._max_length:
            raise ValidationError(
                f"Expression exceeds maximum length of {self._max_length}",
                error_code="EXPRESSION_TOO_LONG",
                details={"length": len(expression), "limit": self._max_length},
            )
        depth = expression_depth(expression)
        if depth > self._max_depth:
            raise ValidationError(
                f"Expression nesting depth {depth} exceeds maximum of {self._max_depth}",
                error_code="EXPRESSION_TOO_DEEP",
                details={"depth": depth, "limit": self._max_depth},
            )
        if self._enable_blacklist:
            lowered = expression.lower()
            for name in self._blacklist:
                if name in lowered:
                    log.warning("blacklisted_function_rejected", function=name)
                    raise ValidationError(
                        f"Expression contains forbidden function: {name}",
                        error_code="EXPRESSION_FORBIDDEN",
                        details={"function": name},
                    )

    @staticmethod
    def sanitize_expression(expression: str) -> str:
        """Trimmt und behält nur druckbare ASCII-Zeichen und Whitespace (ohne \\r)."""
        cleaned = expression.strip().replace("\r", "").replace("\0", "")
        return "".join(
            ch for ch in cleaned
            if ch in " \t\n" or (ch.isascii() and ch.isprintable())
        )

    # ------------------------------------------------------------------
    # Ressourcen
    # ------------------------------------------------------------------

    def validate_resource(self, resource: Any) -> None:
        if not isinstance(resource, dict):
            raise ValidationError("Resource must be a JSON object", error_code="RESOURCE_NOT_OBJECT")
        try:
            size = len(json.dumps(resource, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                "Resource is not JSON-serializable",
                error_code="RESOURCE_NOT_JSON",
            ) from exc
        if size > self._max_resource_size:
            raise ValidationError(
                f"Resource size {size} exceeds maximum of {self._max_resource_size} bytes",
                error_code="RESOURCE_TOO_LARGE",
                details={"size": size, "limit": self._max_resource_size},
            )
        self._check_structure(resource, "$")

    def _check_structure(self, value: Any, path: str) -> None:
        if isinstance(value, dict):
            for key, item in value.items():
                if len(key) > MAX_KEY_LENGTH:
                    raise ValidationError(
                        f"Key too long at {path}",
                        error_code="RESOURCE_KEY_TOO_LONG",
                        details={"path": path},
                    )
                self._check_structure(item, f"{path}.{key}")
        elif isinstance(value, list):
            if len(value) > MAX_ARRAY_LENGTH:
                raise ValidationError(
                    f"Array too long at {path}",
                    error_code="RESOURCE_ARRAY_TOO_LONG",
                    details={"path": path, "length": len(value)},
                )
            for index, item in enumerate(value):
                self._check_structure(item, f"{path}[{index}]")
        elif isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
            raise ValidationError(
                f"String too long at {path}",
                error_code="RESOURCE_STRING_TOO_LONG",
                details={"path": path, "length": len(value)},
            )

    @classmethod
    def sanitize_resource(cls, resource: Any) -> Any:
        """Entfernt NUL, CR und BOM aus allen String-Werten (rekursiv)."""
        if isinstance(resource, str):
            return resource.replace("\0", "").replace("\r", "").replace(_BOM, "")
        if isinstance(resource, dict):
            return {key: cls.sanitize_resource(item) for key, item in resource.items()}
        if isinstance(resource, list):
            return [cls.sanitize_resource(item) for item in resource]
        return resource

    # ------------------------------------------------------------------
    # Operations-Argumente
    # ------------------------------------------------------------------

    def validate_arguments(self, arguments: dict[str, Any] | None) -> dict[str, Any]:
        """Prüft Operations-Argumente und liefert eine bereinigte Kopie.

        Die Argumente als Ganzes werden als Ressource geprüft, Felder aus
        ``expression_fields`` zusätzlich als Ausdruck. Ausdrücke landen
        getrimmt und auf druckbares ASCII reduziert in der Kopie.
        """
        if arguments is None:
            return {}
        self.validate_resource(arguments)
        cleaned = self.sanitize_resource(arguments)
        for name in self._expression_fields:
            value = arguments.get(name)
            if isinstance(value, str):
                self.validate_expression(value)
                cleaned[name] = self.sanitize_expression(value)
        return cleaned


class RequestSanitizer:
    """Bereinigt Fehlermeldungen für Clients."""

    GENERIC_MESSAGE = "Request validation failed"
    MAX_LINES = 3

    @classmethod
    def sanitize_error_message(
        cls,
        error: BaseException | str,
        expose_details: bool = False,
        *,
        fallback: str | None = None,
    ) -> str:
        if not expose_details:
            return fallback or cls.GENERIC_MESSAGE
        text = str(error).replace("JWT", "token").replace("API key", "authentication")
        return "\n".join(text.splitlines()[: cls.MAX_LINES])

    @staticmethod
    def create_correlation_id() -> str:
        return uuid.uuid4().hex
