"""stdio-Transport: Ein JSON-Dokument pro Zeile, in beide Richtungen.

Ablauf pro Zeile:
  lesen → decode → to_internal → handler.handle → from_internal → encode → schreiben

- Leere Zeilen werden ignoriert
- Framing-Fehler (kein JSON, Zeile zu lang) werden geloggt und übersprungen
- Protokollfehler mit id werden mit einem Error-Envelope beantwortet
- Eingabeende beendet die Schleife regulär
- shutdown() bricht ein hängendes readline() ab, statt zu pollen

Logs gehen nach stderr, stdout gehört ausschließlich dem Protokoll.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
import threading
from typing import Any, Protocol

from rpcgate.errors import (
    INTERNAL_ERROR,
    FramingError,
    MissingIdError,
    ProtocolError,
)
from rpcgate.protocol import (
    OperationMessage,
    Reply,
    decode,
    encode_message,
    error_reply,
    exception_reply,
    message_id,
    to_internal,
)
from rpcgate.transports.base import SessionHandler, Transport, TransportState
from rpcgate.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_MAX_LINE_BYTES = 10 * 1024 * 1024


class BinaryWriter(Protocol):
    def write(self, data: bytes, /) -> Any: ...


class StdioTransport(Transport):
    """Zeilenbasierter JSON-RPC-Transport über stdin/stdout.

    ``reader`` und ``writer`` sind injizierbar (Tests, Einbettung). Ohne
    Angabe wird stdin an den Event-Loop gehängt und stdout.buffer beschrieben.
    """

    def __init__(
        self,
        *,
        reader: asyncio.StreamReader | None = None,
        writer: BinaryWriter | None = None,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        expose_error_details: bool = True,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._max_line_bytes = max_line_bytes
        self._expose = expose_error_details
        self._state = TransportState.IDLE
        self._stop = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._lines_read = 0
        self._replies_written = 0
        self._skipped = 0

    @property
    def name(self) -> str:
        return "stdio"

    @property
    def state(self) -> TransportState:
        return self._state

    # ------------------------------------------------------------------
    # Lebenszyklus
    # ------------------------------------------------------------------

    async def start(self, handler: SessionHandler) -> None:
        """Läuft bis Eingabeende oder shutdown()."""
        if self._state is not TransportState.IDLE:
            raise RuntimeError(f"stdio transport cannot start from state {self._state.value}")
        self._state = TransportState.RUNNING
        if self._writer is None:
            self._writer = sys.stdout.buffer
        reader = self._reader or await self._attach_stdin()
        log.info("stdio_transport_started")

        try:
            while not self._stop.is_set():
                line = await self._read_line(reader)
                if line is None:
                    break
                await self._process_line(line, handler)
        finally:
            self._state = TransportState.STOPPED
            log.info(
                "stdio_transport_stopped",
                lines=self._lines_read,
                replies=self._replies_written,
                skipped=self._skipped,
            )

    async def shutdown(self) -> None:
        if self._state is TransportState.STOPPED:
            return
        if self._state is TransportState.IDLE:
            self._state = TransportState.STOPPED
        else:
            self._state = TransportState.SHUTTING_DOWN
        self._stop.set()
        log.info("stdio_transport_shutdown_requested")

    async def send(self, message: OperationMessage) -> None:
        if self._state is not TransportState.RUNNING:
            log.warning("stdio_send_while_not_running", state=self._state.value)
            return
        await self._write(message)

    # ------------------------------------------------------------------
    # Lesen
    # ------------------------------------------------------------------

    async def _read_line(self, reader: asyncio.StreamReader) -> bytes | None:
        """Nächste Zeile, oder None bei Eingabeende bzw. Shutdown."""
        while True:
            read_task = asyncio.ensure_future(reader.readline())
            stop_task = asyncio.ensure_future(self._stop.wait())
            try:
                done, _ = await asyncio.wait(
                    {read_task, stop_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            except asyncio.CancelledError:
                read_task.cancel()
                raise
            finally:
                stop_task.cancel()
            if read_task not in done:
                read_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await read_task
                return None
            try:
                line = read_task.result()
            except ValueError:
                # StreamReader meldet Überlänge als ValueError
                self._skipped += 1
                log.warning("stdio_line_too_long", limit=self._max_line_bytes)
                continue
            if not line:
                log.info("stdio_end_of_input")
                return None
            self._lines_read += 1
            return line

    async def _attach_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=self._max_line_bytes)
        try:
            await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), sys.stdin,
            )
        except (ValueError, OSError, NotImplementedError):
            # Reguläre Dateien und manche Konsolen sind keine Pipes
            thread = threading.Thread(
                target=self._pump_stdin,
                args=(loop, reader),
                name="rpcgate-stdin",
                daemon=True,
            )
            thread.start()
        return reader

    @staticmethod
    def _pump_stdin(loop: asyncio.AbstractEventLoop, reader: asyncio.StreamReader) -> None:
        stream = sys.stdin.buffer
        try:
            for line in iter(stream.readline, b""):
                loop.call_soon_threadsafe(reader.feed_data, line)
        finally:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(reader.feed_eof)

    # ------------------------------------------------------------------
    # Verarbeiten
    # ------------------------------------------------------------------

    async def _process_line(self, line: bytes, handler: SessionHandler) -> None:
        text = line.strip()
        if not text:
            return

        try:
            envelope = decode(text)
        except FramingError as exc:
            self._skipped += 1
            log.warning("stdio_framing_error", error=str(exc))
            return

        try:
            message = to_internal(envelope)
        except MissingIdError as exc:
            self._skipped += 1
            log.warning("stdio_missing_id", error=str(exc), **exc.details)
            return
        except ProtocolError as exc:
            log.warning("stdio_protocol_error", error=str(exc), error_code=exc.error_code)
            if exc.request_id is not None:
                await self._write(exception_reply(exc.request_id, exc))
            else:
                self._skipped += 1
            return

        msg_id = None if isinstance(message, Reply) else message_id(message)
        try:
            reply = await handler.handle(message)
        except Exception as exc:
            log.exception("stdio_handler_failed", id=msg_id)
            if msg_id is not None:
                await self._write(exception_reply(msg_id, exc, expose=self._expose))
            return

        if reply is None:
            return
        if msg_id is None:
            log.warning("stdio_reply_to_notification_dropped")
            return
        await self._write(reply)

    async def _write(self, message: OperationMessage) -> None:
        try:
            data = encode_message(message)
        except (TypeError, ValueError) as exc:
            log.error("stdio_encode_failed", error=str(exc))
            msg_id = message_id(message)
            if msg_id is None:
                return
            data = encode_message(error_reply(msg_id, INTERNAL_ERROR, "Result is not JSON-serializable"))

        writer = self._writer
        if writer is None:
            writer = self._writer = sys.stdout.buffer
        async with self._write_lock:
            try:
                writer.write(data + b"\n")
                drain = getattr(writer, "drain", None)
                if drain is not None:
                    await drain()
                else:
                    flush = getattr(writer, "flush", None)
                    if flush is not None:
                        flush()
            except (BrokenPipeError, ConnectionResetError) as exc:
                log.error("stdio_output_closed", error=str(exc))
                self._stop.set()
                return
        self._replies_written += 1

    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "lines_read": self._lines_read,
            "replies_written": self._replies_written,
            "skipped": self._skipped,
        }
