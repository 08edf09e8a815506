import asyncio
import json
import socket
import struct

import pytest
from fastmcp import FastMCP

from godot_telemetry_bridge.config import BridgeConfig
from godot_telemetry_bridge.server import create_server
from godot_telemetry_bridge.session import BridgeSession


class FakeStdin:
    def __init__(self, stdout: asyncio.StreamReader) -> None:
        self.stdout = stdout
        self.replies: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.replies:
            self.stdout.feed_data(self.replies.pop(0))

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    def is_closing(self) -> bool:
        return self.closed


class EchoStdin(FakeStdin):
    """Answers every command with a successful response of the same type."""

    def write(self, data: bytes) -> None:
        action = json.loads(data.decode().split(":", 1)[1])["action"]
        self.stdout.feed_data(f'MCP_RESPONSE:{{"type":"{action}","success":true}}\n'.encode())


class FakeProcess:
    def __init__(self) -> None:
        self.stdout = asyncio.StreamReader()
        self.stdin = FakeStdin(self.stdout)
        self.pid = 4242
        self.returncode = None


def free_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.mark.asyncio
async def test_send_command_without_child_returns_error():
    session = BridgeSession(BridgeConfig())
    result = await session.send_command("click", {"x": 1, "y": 2})
    assert result["success"] is False
    assert result["action"] == "click"
    assert "GODOT_BRIDGE_CHILD" in result["error"]


@pytest.mark.asyncio
async def test_attached_child_commands_and_output():
    session = BridgeSession(BridgeConfig())
    process = FakeProcess()
    session.attach_child(process)

    process.stdin.replies.append(
        b"[INFO] level loaded\n"
        b"\n"
        b"ERROR: missing texture res://icon.png\n"
        b'MCP_RESPONSE:{"type":"screenshot","success":true,"data":"aGk=","width":2,"height":1}\n'
    )
    result = await session.send_command("screenshot", {"format": "png"})
    assert result["success"] is True
    assert result["data"] == "aGk="

    process.stdin.replies.append(b'MCP_RESPONSE:{"type":"click","success":false,"error":"no viewport"}\n')
    failed = await session.send_command("click", {"x": 1, "y": 2})
    assert failed["success"] is False
    assert failed["error"] == "no viewport"

    invalid = await session.send_command("click", {"x": "left"})
    assert invalid["success"] is False

    output = session.get_child_output(0)
    assert [(r["kind"], r["text"]) for r in output["records"]] == [
        ("log", "[INFO] level loaded"),
        ("error", "ERROR: missing texture res://icon.png"),
    ]
    assert output["last_sequence"] == 2
    assert output["attached"] is True
    assert output["pid"] == 4242
    assert session.get_child_output(2)["records"] == []

    await session.detach_child()
    assert session.get_child_output(0)["attached"] is False


@pytest.mark.asyncio
async def test_exited_child_is_reported_and_not_respawned():
    session = BridgeSession(BridgeConfig(child_command=["godot", "--headless"]))
    process = FakeProcess()
    session.attach_child(process)
    process.stdout.feed_eof()
    await asyncio.sleep(0.01)

    result = await session.send_command("screenshot")
    assert result["success"] is False
    assert "child output closed" in result["error"]
    assert session.get_child_output(0)["exit_reason"] == "child output closed"
    await session.close()


@pytest.mark.asyncio
async def test_connect_debugger_refused_returns_error():
    session = BridgeSession(BridgeConfig())
    result = await session.connect_debugger("127.0.0.1", free_port(), 2.0)
    assert result["connected"] is False
    assert "refused" in result["error"]
    assert session.debugger_status()["state"] == "disconnected"


@pytest.mark.asyncio
async def test_debugger_connect_poll_disconnect():
    payload = b"SCRIPT ERROR: Invalid call"
    release = asyncio.Event()

    async def handle(reader, writer):
        writer.write(struct.pack("<I", len(payload)) + payload)
        await writer.drain()
        await release.wait()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    session = BridgeSession(BridgeConfig())
    try:
        result = await session.connect_debugger("127.0.0.1", port, 2.0)
        assert result["connected"] is True
        assert result["connection"]["port"] == port

        for _ in range(200):
            polled = session.get_debug_output(0)
            if polled["records"]:
                break
            await asyncio.sleep(0.01)
        assert [(r["kind"], r["text"]) for r in polled["records"]] == [("error", "SCRIPT ERROR: Invalid call")]
        assert polled["state"] == "connected"

        again = session.get_debug_output(polled["last_sequence"])
        assert again["records"] == []
        assert again["last_sequence"] == polled["last_sequence"]

        status = session.debugger_status()
        assert status["state"] == "connected"
        assert status["connection"]["bytes_received"] == len(payload) + 4

        closed = await session.disconnect_debugger(polled["last_sequence"])
        assert closed["disconnected"] is True
        assert [r["text"] for r in closed["records"]] == ["connection ended: disconnected by controller"]
        assert session.get_debug_output(0)["records"] == []
        assert session.get_debug_output(0)["state"] == "disconnected"
    finally:
        release.set()
        await session.close()
        server.close()
        await server.wait_closed()


def test_config_from_env():
    config = BridgeConfig.from_env(
        {
            "GODOT_DEBUG_HOST": "192.168.1.20",
            "GODOT_DEBUG_PORT": "6007",
            "GODOT_BRIDGE_OUTPUT_CAPACITY": "50",
            "GODOT_BRIDGE_COMMAND_TIMEOUT": "2.5",
            "GODOT_BRIDGE_CHILD": "godot --path '/games/my game'",
            "DEBUG": "true",
        }
    )
    assert config.debug.host == "192.168.1.20"
    assert config.debug.port == 6007
    assert config.output_capacity == 50
    assert config.channel.default_timeout == 2.5
    assert config.child_command == ["godot", "--path", "/games/my game"]
    assert config.verbose is True

    defaults = BridgeConfig.from_env({})
    assert defaults.debug.port == 6006
    assert defaults.child_command == []
    assert defaults.verbose is False


def test_config_rejects_bad_numbers():
    with pytest.raises(ValueError):
        BridgeConfig.from_env({"GODOT_DEBUG_PORT": "six"})
    with pytest.raises(ValueError):
        BridgeConfig.from_env({"GODOT_BRIDGE_COMMAND_TIMEOUT": "soon"})


def test_create_server():
    mcp, session = create_server(BridgeConfig(output_capacity=10))
    assert isinstance(mcp, FastMCP)
    assert session.debug_output.capacity == 10


@pytest.mark.asyncio
async def test_child_is_spawned_once_for_concurrent_commands(monkeypatch):
    session = BridgeSession(BridgeConfig(child_command=["godot", "--headless"]))
    spawned = []

    async def fake_spawn(argv):
        await asyncio.sleep(0.01)
        process = FakeProcess()
        process.stdin = EchoStdin(process.stdout)
        spawned.append(list(argv))
        return process

    monkeypatch.setattr(session, "_spawn", fake_spawn)
    first, second = await asyncio.gather(
        session.send_command("screenshot"),
        session.send_command("click", {"x": 1, "y": 1}),
    )

    assert spawned == [["godot", "--headless"]]
    assert first["success"] is True
    assert second["success"] is True
    assert session.get_child_output(0)["pid"] == 4242
    await session.close()
