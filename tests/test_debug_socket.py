import asyncio
import socket
import struct

import pytest

from godot_telemetry_bridge.config import DebugSocketConfig
from godot_telemetry_bridge.debug_socket import ConnectionState, DebugSocketClient
from godot_telemetry_bridge.errors import DebugConnectionError
from godot_telemetry_bridge.output_aggregator import OutputAggregator
from godot_telemetry_bridge.records import RecordKind


def frame(text: str) -> bytes:
    payload = text.encode("utf-8")
    return struct.pack("<I", len(payload)) + payload


class FakeEngine:
    """Local TCP server that plays back chunks like a Godot debug port."""

    def __init__(self, chunks, hold_open: bool = False) -> None:
        self.chunks = list(chunks)
        self.release = asyncio.Event()
        self.hold_open = hold_open
        self.server = None
        self.port = 0

    async def __aenter__(self) -> "FakeEngine":
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc) -> None:
        self.release.set()
        self.server.close()
        await self.server.wait_closed()

    async def _handle(self, reader, writer) -> None:
        for chunk in self.chunks:
            writer.write(chunk)
            await writer.drain()
            await asyncio.sleep(0.01)
        if self.hold_open:
            await self.release.wait()
        writer.close()


def free_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_stream_is_decoded_into_records():
    data = [b"\x00\x00hello", b" world\x00" + frame("Player")[:3], frame("Player")[3:] + b"\xff"]
    async with FakeEngine(data) as engine:
        aggregator = OutputAggregator()
        client = DebugSocketClient(aggregator)
        connection = await client.connect("127.0.0.1", engine.port, timeout=2.0)
        assert client.state is ConnectionState.CONNECTED
        assert connection.endpoint == f"127.0.0.1:{engine.port}"
        await client.wait_closed()

    records = aggregator.drain_since(0)
    assert [(r.kind, r.text) for r in records[:-1]] == [
        (RecordKind.UNKNOWN, "hello world"),
        (RecordKind.LOG, "Player"),
    ]
    assert [r.sequence for r in records] == list(range(1, len(records) + 1))
    assert client.state is ConnectionState.DISCONNECTED
    assert client.last_connection.bytes_received == sum(len(c) for c in data)


@pytest.mark.asyncio
async def test_engine_closing_emits_terminal_record():
    async with FakeEngine([frame("bye")]) as engine:
        aggregator = OutputAggregator()
        client = DebugSocketClient(aggregator)
        await client.connect("127.0.0.1", engine.port)
        await client.wait_closed()

    last = aggregator.drain_since(0)[-1]
    assert last.kind is RecordKind.UNKNOWN
    assert last.fields["event"] == "connection_ended"
    assert last.fields["reason"] == "closed by engine"


@pytest.mark.asyncio
async def test_disconnect_mid_stream_flushes_and_ends():
    async with FakeEngine([b"\x20\x00\x00\x00partial", b" text"], hold_open=True) as engine:
        aggregator = OutputAggregator()
        client = DebugSocketClient(aggregator)
        await client.connect("127.0.0.1", engine.port)
        await wait_for(lambda: client.connection and client.connection.bytes_received >= 16)

        await client.disconnect()
        assert client.state is ConnectionState.DISCONNECTED
        await client.disconnect()  # idempotent

    records = aggregator.drain_since(0)
    assert "partial text" in [r.text for r in records]
    assert records[-1].fields["event"] == "connection_ended"
    assert records[-1].fields["reason"] == "disconnected by controller"
    assert sum(1 for r in records if r.fields.get("event") == "connection_ended") == 1


@pytest.mark.asyncio
async def test_connect_refused():
    client = DebugSocketClient(OutputAggregator())
    with pytest.raises(DebugConnectionError) as info:
        await client.connect("127.0.0.1", free_port(), timeout=2.0)
    assert info.value.reason == "refused"
    assert isinstance(info.value, ConnectionError)
    assert client.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_connect_timeout(monkeypatch):
    async def never_connects(host, port):
        await asyncio.sleep(10)

    monkeypatch.setattr(asyncio, "open_connection", never_connects)
    client = DebugSocketClient(OutputAggregator(), DebugSocketConfig(connect_timeout=0.05))
    with pytest.raises(DebugConnectionError) as info:
        await client.connect("127.0.0.1", 6006)
    assert info.value.reason == "timed out"
    assert client.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_reconnect_keeps_sequences_increasing():
    aggregator = OutputAggregator()
    client = DebugSocketClient(aggregator)
    async with FakeEngine([frame("first session")], hold_open=True) as engine:
        await client.connect("127.0.0.1", engine.port)
        await wait_for(lambda: len(aggregator) >= 1)
        seen = aggregator.last_sequence

        # A second connect closes the first connection before opening a new one.
        await client.connect("127.0.0.1", engine.port)
        await wait_for(lambda: any(r.text == "first session" for r in aggregator.drain_since(seen)))
        await client.disconnect()

    records = aggregator.drain_since(0)
    sequences = [r.sequence for r in records]
    assert sequences == sorted(set(sequences))
    ended = [r for r in records if r.fields.get("event") == "connection_ended"]
    assert len(ended) == 2


@pytest.mark.asyncio
async def test_listeners_see_stamped_records_and_raw_chunks():
    seen_records = []
    seen_chunks = []
    async with FakeEngine([frame("ping")]) as engine:
        client = DebugSocketClient(OutputAggregator())
        client.add_listener(seen_records.append)
        client.add_chunk_listener(seen_chunks.append)
        await client.connect("127.0.0.1", engine.port)
        await client.wait_closed()

    assert seen_chunks == [frame("ping")]
    assert seen_records[0].text == "ping"
    assert seen_records[0].sequence == 1
