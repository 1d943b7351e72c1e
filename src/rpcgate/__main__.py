"""
rpcgate -- Entry Point.

Usage: rpcgate
       rpcgate --transport http --port 8080
       rpcgate --config /path/to/config.yaml
       rpcgate --version
       python -m rpcgate
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from rpcgate import __version__
from rpcgate.config import RpcGateConfig, load_config
from rpcgate.engine import EngineHandle, default_handle, load_engine
from rpcgate.errors import RpcGateError
from rpcgate.monitoring.metrics import MetricsProvider
from rpcgate.runner import run_transports
from rpcgate.security.auth import Authenticator
from rpcgate.security.validation import InputValidator
from rpcgate.server import OperationServer
from rpcgate.transports import create_transports
from rpcgate.utils.logging import get_logger, setup_logging


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Kommandozeilen-Argumente parsen."""
    parser = argparse.ArgumentParser(
        prog="rpcgate",
        description="rpcgate -- JSON-RPC operations over stdio and HTTP/SSE",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"rpcgate v{__version__}",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Pfad zur config.yaml (Default: ~/.rpcgate/config.yaml)",
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "http", "both"],
        default=None,
        help="Transport-Modus überschreiben",
    )
    parser.add_argument("--host", default=None, help="Bind-Adresse für HTTP")
    parser.add_argument("--port", type=int, default=None, help="Port für HTTP")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log-Level überschreiben",
    )
    parser.add_argument(
        "--engine",
        default=None,
        help="Operation-Engine als 'modul:factory' (Default: eingebaute Engine)",
    )
    return parser.parse_args(argv)


def cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Übersetzt gesetzte CLI-Flags in Config-Overrides."""
    overrides: dict[str, Any] = {}
    server = {
        key: value
        for key, value in (("transport", args.transport), ("host", args.host), ("port", args.port))
        if value is not None
    }
    if server:
        overrides["server"] = server
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}
    if args.engine:
        overrides["engine"] = {"factory": args.engine}
    return overrides


async def serve(config: RpcGateConfig, engine: EngineHandle) -> None:
    """Baut Server, Sicherheit, Monitoring und Transports und lässt sie laufen."""
    authenticator = Authenticator.from_config(config.security)
    validator = InputValidator.from_config(config.security)
    metrics = MetricsProvider(config.monitoring, version=config.server.version, engine=engine)
    server = OperationServer(
        engine,
        validator=validator,
        version=config.server.version,
        expose_error_details=config.security.expose_error_details,
    )
    transports = create_transports(
        config,
        authenticator=authenticator,
        metrics=metrics,
        validator=validator,
    )
    await run_transports(
        transports,
        server,
        grace_seconds=config.server.shutdown_grace_seconds,
    )


def main(argv: list[str] | None = None) -> int:
    """Haupteintrittspunkt. Exit 0 nach sauberem Ende, 1 bei Startfehlern."""
    args = parse_args(argv)

    # Zuerst Projekt-.env, dann User-.env (User überschreibt)
    load_dotenv(Path(".env"), override=False)
    load_dotenv(Path.home() / ".rpcgate" / ".env", override=True)

    try:
        config = load_config(args.config, overrides=cli_overrides(args))
    except RpcGateError as exc:
        # Logging ist noch nicht konfiguriert
        print(f"rpcgate: {exc}", file=sys.stderr)
        return 1

    setup_logging(
        level=config.logging.level,
        json_logs=config.logging.json_logs,
        console=config.logging.console,
    )
    log = get_logger("rpcgate")
    log.info(
        "rpcgate_starting",
        version=__version__,
        transport=config.server.transport,
        config_file=str(config.config_file) if config.config_file else None,
    )

    if config.server.transport != "stdio" and config.security.enable_auth:
        if not config.security.api_keys and not config.security.jwt_secret:
            log.warning("auth_enabled_without_credentials")

    try:
        default_handle.init(load_engine(config.engine.factory))
    except RpcGateError as exc:
        log.error("engine_init_failed", error=str(exc), error_code=exc.error_code)
        return 1

    try:
        asyncio.run(serve(config, default_handle))
    except KeyboardInterrupt:
        log.info("rpcgate_shutdown_by_user")
    except RpcGateError as exc:
        log.error("rpcgate_failed", error=str(exc), error_code=exc.error_code)
        return 1
    except Exception:
        log.exception("rpcgate_crashed")
        return 1

    log.info("rpcgate_stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
