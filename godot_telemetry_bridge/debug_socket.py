"""Client for the engine's remote-debug TCP port.

The socket reader is the only code that touches the connection: every chunk
it receives goes straight through the FrameDecoder into the
OutputAggregator.  Controllers never read the socket, they poll the
aggregator.

There is no automatic reconnect.  A silent reconnect could attach to a
different engine session and splice two unrelated streams together, so
reconnecting is always an explicit ``connect()`` call.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from godot_telemetry_bridge.config import DebugSocketConfig, DecoderConfig
from godot_telemetry_bridge.errors import DebugConnectionError
from godot_telemetry_bridge.frame_decoder import FrameDecoder
from godot_telemetry_bridge.output_aggregator import OutputAggregator
from godot_telemetry_bridge.records import Record, connection_ended_record

log = logging.getLogger(__name__)

RecordListener = Callable[[Record], None]
ChunkListener = Callable[[bytes], None]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


@dataclass
class Connection:
    host: str
    port: int
    state: ConnectionState = ConnectionState.CONNECTING
    bytes_received: int = 0
    chunks_received: int = 0
    records_emitted: int = 0
    connected_at: float = 0.0
    last_activity: float = 0.0
    end_reason: Optional[str] = None

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def to_dict(self, now: Optional[float] = None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "state": self.state.value,
            "bytes_received": self.bytes_received,
            "chunks_received": self.chunks_received,
            "records_emitted": self.records_emitted,
        }
        if now is not None and self.last_activity:
            data["idle_seconds"] = round(max(now - self.last_activity, 0.0), 3)
        if self.end_reason:
            data["end_reason"] = self.end_reason
        return data


class DebugSocketClient:
    """Owns one TCP connection to a Godot debug port at a time."""

    def __init__(
        self,
        aggregator: OutputAggregator,
        config: DebugSocketConfig | None = None,
        *,
        decoder_config: DecoderConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.aggregator = aggregator
        self.config = config or DebugSocketConfig()
        self.decoder_config = decoder_config or DecoderConfig()
        self._log = logger or log
        self._connection: Optional[Connection] = None
        self._last_connection: Optional[Connection] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._listeners: list[RecordListener] = []
        self._chunk_listeners: list[ChunkListener] = []

    #
    # Connection lifecycle
    #
    @property
    def state(self) -> ConnectionState:
        if self._connection is None:
            return ConnectionState.DISCONNECTED
        return self._connection.state

    @property
    def connection(self) -> Optional[Connection]:
        """The live connection, or None."""
        return self._connection

    @property
    def last_connection(self) -> Optional[Connection]:
        """The live connection, or the most recent one after it ended."""
        return self._connection or self._last_connection

    def add_listener(self, callback: RecordListener) -> None:
        """Call *callback* with every record as it is published."""
        self._listeners.append(callback)

    def add_chunk_listener(self, callback: ChunkListener) -> None:
        """Call *callback* with every raw chunk before it is decoded."""
        self._chunk_listeners.append(callback)

    async def connect(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Connection:
        """Open the debug port and start the reader task.

        An existing connection is closed first.  Raises DebugConnectionError
        when the port is refused, unreachable or does not answer in time.
        """
        if self._connection is not None:
            await self.disconnect()

        host = host or self.config.host
        port = self.config.port if port is None else port
        timeout = self.config.connect_timeout if timeout is None else timeout

        connection = Connection(host=host, port=port)
        self._connection = connection
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        except asyncio.TimeoutError as exc:
            self._abandon(connection)
            raise DebugConnectionError(host, port, "timed out", f"no answer within {timeout:g}s") from exc
        except ConnectionRefusedError as exc:
            self._abandon(connection)
            raise DebugConnectionError(
                host, port, "refused", "is the game running with remote debug enabled?"
            ) from exc
        except OSError as exc:
            self._abandon(connection)
            raise DebugConnectionError(host, port, "unreachable", str(exc)) from exc
        except asyncio.CancelledError:
            self._abandon(connection)
            raise

        loop = asyncio.get_running_loop()
        connection.state = ConnectionState.CONNECTED
        connection.connected_at = connection.last_activity = loop.time()
        self._writer = writer
        decoder = FrameDecoder(self.decoder_config, logger=self._log)
        self._reader_task = asyncio.create_task(
            self._read_loop(connection, reader, writer, decoder),
            name=f"godot-debug-reader-{connection.endpoint}",
        )
        self._log.info("connected to Godot debug port %s", connection.endpoint)
        return connection

    async def disconnect(self) -> None:
        """Close the transport and wait for the reader to emit its final record.

        Safe to call when already disconnected.
        """
        connection = self._connection
        if connection is None:
            return
        if connection.end_reason is None:
            connection.end_reason = "disconnected by controller"
        if connection.state is ConnectionState.CONNECTED:
            connection.state = ConnectionState.CLOSING

        writer = self._writer
        task = self._reader_task
        if writer is not None:
            # Closing the transport feeds EOF to the reader, which wakes it.
            writer.close()
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), self.config.close_timeout)
            except asyncio.TimeoutError:
                self._log.warning("debug reader for %s did not stop, cancelling", connection.endpoint)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if writer is not None:
            with contextlib.suppress(OSError):
                await writer.wait_closed()
        if self._connection is connection:
            # Connect never got as far as starting a reader.
            self._abandon(connection)

    async def wait_closed(self) -> None:
        """Block until the current connection's reader has finished."""
        task = self._reader_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(task)

    #
    # Reader
    #
    async def _read_loop(
        self,
        connection: Connection,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        decoder: FrameDecoder,
    ) -> None:
        loop = asyncio.get_running_loop()
        reason = "closed by engine"
        try:
            while True:
                chunk = await reader.read(self.config.read_chunk_size)
                if not chunk:
                    break
                connection.bytes_received += len(chunk)
                connection.chunks_received += 1
                connection.last_activity = loop.time()
                self._notify_chunk(chunk)
                self._publish(connection, decoder.feed(chunk))
        except asyncio.CancelledError:
            reason = "reader cancelled"
            raise
        except OSError as exc:
            reason = f"transport error: {exc}"
            self._log.warning("debug connection %s failed: %s", connection.endpoint, exc)
        finally:
            self._finish(connection, writer, decoder, connection.end_reason or reason)

    def _finish(
        self,
        connection: Connection,
        writer: asyncio.StreamWriter,
        decoder: FrameDecoder,
        reason: str,
    ) -> None:
        connection.state = ConnectionState.CLOSING
        connection.end_reason = reason
        self._publish(connection, decoder.finish())
        self._publish(connection, [connection_ended_record(reason, decoder.stream_offset)])
        writer.close()
        connection.state = ConnectionState.DISCONNECTED
        if self._connection is connection:
            self._connection = None
            self._writer = None
        self._last_connection = connection
        self._log.info(
            "debug connection %s ended (%s) after %d bytes",
            connection.endpoint,
            reason,
            connection.bytes_received,
        )

    def _publish(self, connection: Connection, records: list[Record]) -> None:
        for record in records:
            stamped = self.aggregator.append(record)
            connection.records_emitted += 1
            for listener in self._listeners:
                try:
                    listener(stamped)
                except Exception:
                    self._log.exception("debug record listener failed")

    def _notify_chunk(self, chunk: bytes) -> None:
        for listener in self._chunk_listeners:
            try:
                listener(chunk)
            except Exception:
                self._log.exception("debug chunk listener failed")

    def _abandon(self, connection: Connection) -> None:
        connection.state = ConnectionState.DISCONNECTED
        if self._connection is connection:
            self._connection = None
            self._writer = None
        self._last_connection = connection
