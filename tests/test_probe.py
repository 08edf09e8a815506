import asyncio
import io
import socket
import struct

import pytest

from godot_telemetry_bridge.probe import build_arg_parser, format_record, run_probe
from godot_telemetry_bridge.records import Record, RecordKind
from godot_telemetry_bridge.tools import _output_summary


def free_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def test_arg_parser_defaults():
    args = build_arg_parser().parse_args([])
    assert args.port == 6006
    assert args.host == "localhost"
    assert args.hex is False

    args = build_arg_parser().parse_args(["6007", "--hex"])
    assert args.port == 6007
    assert args.hex is True


def test_format_record():
    record = Record(kind=RecordKind.ERROR, text="SCRIPT ERROR: boom", offset=12, sequence=3)
    line = format_record(record)
    assert "error" in line
    assert "@12" in line
    assert line.endswith("SCRIPT ERROR: boom")


@pytest.mark.asyncio
async def test_probe_prints_troubleshooting_when_refused(capsys):
    args = build_arg_parser().parse_args([str(free_port()), "--host", "127.0.0.1", "--timeout", "2"])
    out = io.StringIO()
    assert await run_probe(args, out) == 1
    assert "Troubleshooting" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_probe_prints_records_until_engine_closes():
    payload = b"Player spawned"

    async def handle(reader, writer):
        writer.write(struct.pack("<I", len(payload)) + payload)
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    args = build_arg_parser().parse_args([str(port), "--host", "127.0.0.1", "--hex"])
    out = io.StringIO()
    try:
        assert await run_probe(args, out) == 0
    finally:
        server.close()
        await server.wait_closed()

    text = out.getvalue()
    assert "Player spawned" in text
    assert "connection ended: closed by engine" in text
    assert "--- chunk (18 bytes) ---" in text


def test_output_summary():
    data = {
        "records": [{"kind": "log"}, {"kind": "error"}, {"kind": "log"}],
        "last_sequence": 9,
        "missed": 4,
    }
    summary = _output_summary("Debug output", data)
    assert "3 record(s)" in summary
    assert "1 error, 2 log" in summary
    assert "since=9" in summary
    assert "4 older record(s) evicted" in summary
    assert _output_summary("Game output", {"records": [], "last_sequence": 2}) == "Game output: nothing new (last seq 2)"
