"""Lässt Transports parallel laufen und fährt sie gemeinsam herunter.

Der erste Transport, der endet (z.B. stdin-EOF), oder ein SIGINT/SIGTERM
beendet alle übrigen. Diese bekommen ``grace_seconds`` Zeit, danach
werden ihre Tasks abgebrochen.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Sequence

from rpcgate.transports.base import SessionHandler, Transport
from rpcgate.utils.logging import get_logger

log = get_logger(__name__)

_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _install_signal_handlers(stop: asyncio.Event) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in _SIGNALS:
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows-Loop bzw. nicht im Haupt-Thread
            continue
        installed.append(sig)
    return installed


async def run_transports(
    transports: Sequence[Transport],
    handler: SessionHandler,
    *,
    grace_seconds: float = 5.0,
    stop_event: asyncio.Event | None = None,
    handle_signals: bool = True,
) -> None:
    """Startet alle Transports und wartet auf das erste Ende.

    Raises:
        Exception: Die Exception des ersten fehlgeschlagenen Transports.
    """
    if not transports:
        raise ValueError("No transports configured")

    stop = stop_event or asyncio.Event()
    installed = _install_signal_handlers(stop) if handle_signals else []

    tasks: dict[asyncio.Task[None], Transport] = {
        asyncio.create_task(t.start(handler), name=f"rpcgate-{t.name}"): t for t in transports
    }
    stop_task = asyncio.create_task(stop.wait(), name="rpcgate-stop")
    log.info("transports_started", transports=[t.name for t in transports])

    try:
        done, _ = await asyncio.wait({*tasks, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if stop_task in done:
            log.info("shutdown_requested")
        else:
            finished = [tasks[task].name for task in done if task in tasks]
            log.info("transport_finished", transports=finished)
    finally:
        stop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stop_task
        await _shutdown(tasks, grace_seconds)
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    for task, transport in tasks.items():
        if task.cancelled():
            continue
        exc = task.exception()
        if exc is not None:
            log.error("transport_failed", transport=transport.name, error=str(exc))
            raise exc
    log.info("transports_stopped")


async def _shutdown(tasks: dict[asyncio.Task[None], Transport], grace_seconds: float) -> None:
    for transport in tasks.values():
        try:
            await transport.shutdown()
        except Exception:
            log.exception("transport_shutdown_failed", transport=transport.name)

    pending = [task for task in tasks if not task.done()]
    if not pending:
        return
    _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
    for task in still_running:
        log.warning("transport_shutdown_timeout", transport=tasks[task].name, grace_seconds=grace_seconds)
        task.cancel()
    if still_running:
        await asyncio.gather(*still_running, return_exceptions=True)
