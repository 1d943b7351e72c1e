"""Tests für run_transports: gemeinsames Starten und Herunterfahren."""

from __future__ import annotations

import asyncio
import signal
from unittest.mock import AsyncMock

import pytest

from rpcgate.protocol import OperationMessage
from rpcgate.runner import run_transports
from rpcgate.transports.base import SessionHandler, Transport, TransportState


class FakeTransport(Transport):
    """Läuft bis shutdown(), endet sofort (finish) oder scheitert (fail)."""

    def __init__(
        self,
        name: str,
        *,
        finish: bool = False,
        fail: Exception | None = None,
        ignore_shutdown: bool = False,
    ) -> None:
        self._name = name
        self._finish = finish
        self._fail = fail
        self._ignore_shutdown = ignore_shutdown
        self._stop = asyncio.Event()
        self._state = TransportState.IDLE
        self.handler: SessionHandler | None = None
        self.shutdown_calls = 0
        self.cancelled = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> TransportState:
        return self._state

    async def start(self, handler: SessionHandler) -> None:
        self.handler = handler
        self._state = TransportState.RUNNING
        try:
            if self._fail is not None:
                raise self._fail
            if not self._finish:
                await self._stop.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        finally:
            self._state = TransportState.STOPPED

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        if not self._ignore_shutdown:
            self._stop.set()

    async def send(self, message: OperationMessage) -> None:
        pass


@pytest.fixture
def handler() -> AsyncMock:
    return AsyncMock(spec=SessionHandler)


class TestRunTransports:
    @pytest.mark.asyncio
    async def test_empty_list_rejected(self, handler: AsyncMock) -> None:
        with pytest.raises(ValueError):
            await run_transports([], handler, handle_signals=False)

    @pytest.mark.asyncio
    async def test_first_finished_stops_all(self, handler: AsyncMock) -> None:
        stdio = FakeTransport("stdio", finish=True)
        http = FakeTransport("http")
        await asyncio.wait_for(
            run_transports([stdio, http], handler, handle_signals=False),
            timeout=2,
        )
        assert http.state is TransportState.STOPPED
        assert http.shutdown_calls == 1
        assert stdio.handler is handler
        assert http.handler is handler

    @pytest.mark.asyncio
    async def test_stop_event(self, handler: AsyncMock) -> None:
        stop = asyncio.Event()
        transport = FakeTransport("http")
        task = asyncio.create_task(
            run_transports([transport], handler, stop_event=stop, handle_signals=False),
        )
        await asyncio.sleep(0.01)
        assert transport.state is TransportState.RUNNING

        stop.set()
        await asyncio.wait_for(task, timeout=2)
        assert transport.state is TransportState.STOPPED
        assert not transport.cancelled

    @pytest.mark.asyncio
    async def test_grace_timeout_cancels(self, handler: AsyncMock) -> None:
        stop = asyncio.Event()
        stop.set()
        stubborn = FakeTransport("stubborn", ignore_shutdown=True)
        await asyncio.wait_for(
            run_transports(
                [stubborn], handler, grace_seconds=0.05, stop_event=stop, handle_signals=False,
            ),
            timeout=2,
        )
        assert stubborn.cancelled
        assert stubborn.shutdown_calls == 1

    @pytest.mark.asyncio
    async def test_failure_propagates(self, handler: AsyncMock) -> None:
        broken = FakeTransport("http", fail=OSError("address in use"))
        other = FakeTransport("stdio")
        with pytest.raises(OSError, match="address in use"):
            await asyncio.wait_for(
                run_transports([broken, other], handler, handle_signals=False),
                timeout=2,
            )
        assert other.state is TransportState.STOPPED

    @pytest.mark.asyncio
    async def test_signal_handlers_installed_and_removed(self, handler: AsyncMock) -> None:
        loop = asyncio.get_running_loop()
        await asyncio.wait_for(
            run_transports([FakeTransport("stdio", finish=True)], handler),
            timeout=2,
        )
        # Nach dem Lauf keine verbliebenen Handler
        assert loop.remove_signal_handler(signal.SIGTERM) is False
