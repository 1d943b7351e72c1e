"""
rpcgate · Configuration system.

Loads configuration from:
  1. Defaults (defined here)
  2. config.yaml (``--config`` or ~/.rpcgate/config.yaml)
  3. Environment variables RPCGATE_* (overrides the file)

CLI flags are applied on top by ``rpcgate.__main__``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from rpcgate import __version__
from rpcgate.errors import ConfigError

log = logging.getLogger(__name__)

ENV_PREFIX = "RPCGATE_"
DEFAULT_CONFIG_PATH = Path.home() / ".rpcgate" / "config.yaml"

TransportMode = Literal["stdio", "http", "both"]


def _split_csv(value: Any) -> Any:
    """Komma-getrennte Strings (aus Env-Variablen) in Listen umwandeln."""
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


# ============================================================================
# Konfigurationsmodelle
# ============================================================================


class ServerConfig(BaseModel):
    """Server- und Transport-Konfiguration."""

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    transport: TransportMode = "stdio"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    shutdown_grace_seconds: float = Field(default=5.0, ge=0, le=120)
    version: str = __version__

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_origins(cls, value: Any) -> Any:
        return _split_csv(value)


class SecurityConfig(BaseModel):
    """Authentifizierung und Eingabe-Validierung."""

    enable_auth: bool = True
    api_keys: list[str] = Field(default_factory=list)
    jwt_secret: str | None = None
    jwt_algorithms: list[str] = Field(default_factory=lambda: ["HS256"])
    jwt_issuer: str | None = None
    jwt_audience: str | None = None
    # Fehlerdetails nur im Debug-Betrieb an Clients geben
    expose_error_details: bool = False

    max_expression_length: int = Field(default=1000, ge=1)
    max_expression_depth: int = Field(default=10, ge=1)
    max_resource_size: int = Field(default=1024 * 1024, ge=1)
    enable_expression_blacklist: bool = True
    blacklisted_functions: list[str] = Field(
        default_factory=lambda: ["eval", "system", "exec", "shell"]
    )
    # Argument-Felder, die als Ausdruck geprüft werden
    expression_fields: list[str] = Field(default_factory=lambda: ["expression"])

    @field_validator(
        "api_keys",
        "jwt_algorithms",
        "blacklisted_functions",
        "expression_fields",
        mode="before",
    )
    @classmethod
    def split_lists(cls, value: Any) -> Any:
        return _split_csv(value)


class SseConfig(BaseModel):
    """Lebenszyklus der Streaming-Verbindungen."""

    default_timeout_seconds: float = Field(default=3600.0, gt=0)
    refresh_window_seconds: float = Field(default=300.0, ge=0)
    read_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    channel_capacity: int = Field(default=100, ge=1, le=100_000)


class StdioConfig(BaseModel):
    """Zeilenbasierter stdio-Transport."""

    max_line_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)


class MonitoringConfig(BaseModel):
    """Health-Checks und Metriken."""

    enable_health_checks: bool = True
    enable_metrics: bool = True
    health_check_interval_seconds: float = Field(default=30.0, gt=0)
    memory_threshold_mb: float = Field(default=512.0, gt=0)
    response_time_threshold_ms: float = Field(default=1000.0, gt=0)
    error_rate_threshold_percent: float = Field(default=5.0, gt=0, le=100)
    window_size: int = Field(default=1000, ge=1, le=1_000_000)


class LoggingConfig(BaseModel):
    """Logging-Konfiguration."""

    level: str = "INFO"
    json_logs: bool = False
    console: bool = True


class EngineConfig(BaseModel):
    """Operation-Engine. ``factory`` ist ein Importpfad ``modul:callable``."""

    factory: str | None = None


class RpcGateConfig(BaseModel):
    """Gesamtkonfiguration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    sse: SseConfig = Field(default_factory=SseConfig)
    stdio: StdioConfig = Field(default_factory=StdioConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)

    config_file: Path | None = None


# ============================================================================
# Config-Laden
# ============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Tiefes Mergen von zwei Dicts. Override gewinnt bei Konflikten."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(
    data: dict[str, Any],
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Wendet RPCGATE_* Umgebungsvariablen an.

    Konvention: RPCGATE_SECTION_KEY → data["section"]["key"]
    Beispiel: RPCGATE_SSE_DEFAULT_TIMEOUT_SECONDS → data["sse"]["default_timeout_seconds"]
    """
    env = os.environ if environ is None else environ
    sections = set(RpcGateConfig.model_fields) - {"config_file"}
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        rest = key[len(ENV_PREFIX):].lower()
        section, _, leaf = rest.partition("_")
        if section not in sections or not leaf:
            continue
        node = data.setdefault(section, {})
        if isinstance(node, dict):
            node[leaf] = value
    return data


def load_config(
    config_path: Path | None = None,
    *,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> RpcGateConfig:
    """Lädt die Konfiguration.

    Reihenfolge (spätere überschreiben frühere):
      1. Defaults (in den Pydantic-Modellen)
      2. config.yaml (wenn vorhanden)
      3. RPCGATE_* Umgebungsvariablen
      4. ``overrides`` (CLI-Flags)

    Raises:
        ConfigError: Wenn die zusammengeführten Werte ungültig sind.
    """
    data: dict[str, Any] = {}

    explicit = config_path is not None
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if isinstance(file_data, dict):
                data = file_data
        except yaml.YAMLError as exc:
            log.warning("Fehlerhafte config.yaml wird ignoriert: %s", exc)
    elif explicit:
        raise ConfigError(
            f"Config file not found: {config_path}",
            error_code="CONFIG_NOT_FOUND",
            details={"path": str(config_path)},
        )

    data = _apply_env_overrides(data, environ)
    if overrides:
        data = _deep_merge(data, overrides)

    try:
        config = RpcGateConfig(**data)
    except PydanticValidationError as exc:
        raise ConfigError(
            f"Invalid configuration: {exc.error_count()} error(s)",
            details={"errors": exc.errors(include_url=False)},
        ) from exc

    if config_path.exists():
        config.config_file = config_path
    return config
