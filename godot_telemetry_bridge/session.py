"""Controller-owned context tying the debug socket and command channel together.

A BridgeSession is what the MCP tool layer talks to.  Nothing here is global:
the server creates one session, tests create as many as they like.

Every public coroutine returns a JSON-ready dict.  Failures come back as
``{"error": ...}`` instead of exceptions so the tool layer can hand them to
the agent unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Sequence

from godot_telemetry_bridge.command_channel import CommandChannel
from godot_telemetry_bridge.config import BridgeConfig
from godot_telemetry_bridge.debug_socket import ConnectionState, DebugSocketClient
from godot_telemetry_bridge.errors import BridgeError
from godot_telemetry_bridge.output_aggregator import OutputAggregator
from godot_telemetry_bridge.records import Record, classify_text

log = logging.getLogger(__name__)

# Child stdout can carry multi-megabyte screenshot lines.
CHILD_STREAM_LIMIT = 64 * 1024 * 1024


def _records_payload(records: list[Record], aggregator: OutputAggregator, since: int) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "records": [record.to_dict() for record in records],
        "last_sequence": records[-1].sequence if records else max(since, 0),
    }
    oldest = aggregator.oldest_sequence()
    if oldest and since + 1 < oldest:
        # The controller fell behind and capacity eviction ate some output.
        payload["missed"] = oldest - since - 1
    return payload


class BridgeSession:
    def __init__(self, config: BridgeConfig | None = None, *, logger: logging.Logger | None = None) -> None:
        self.config = config or BridgeConfig()
        self._log = logger or log
        self.debug_output = OutputAggregator(self.config.output_capacity)
        self.child_output = OutputAggregator(self.config.output_capacity)
        self.debug_client = DebugSocketClient(
            self.debug_output,
            self.config.debug,
            decoder_config=self.config.decoder,
            logger=self._log,
        )
        self._channel: Optional[CommandChannel] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._spawn_lock = asyncio.Lock()

    #
    # Debug port
    #
    async def connect_debugger(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Attach to the engine's debug port, starting with an empty output buffer."""
        await self.debug_client.disconnect()
        self.debug_output.clear()
        try:
            connection = await self.debug_client.connect(host, port, timeout)
        except BridgeError as exc:
            return {"error": str(exc), "connected": False}
        return {
            "connected": True,
            "connection": connection.to_dict(),
            "since": self.debug_output.last_sequence,
        }

    def get_debug_output(self, since: int = 0, limit: Optional[int] = None) -> dict[str, Any]:
        """Records newer than *since*.  Never touches the socket."""
        records = self.debug_output.drain_since(since, limit)
        payload = _records_payload(records, self.debug_output, since)
        payload["state"] = self.debug_client.state.value
        return payload

    async def disconnect_debugger(self, since: int = 0) -> dict[str, Any]:
        """Close the debug connection.

        Returns the records newer than *since*, ending with the "connection
        ended" record, then clears the buffer so a later connect does not mix
        stale and fresh output.
        """
        was_connected = self.debug_client.state is not ConnectionState.DISCONNECTED
        await self.debug_client.disconnect()
        records = self.debug_output.drain_since(since)
        self.debug_output.clear()
        return {
            "disconnected": was_connected,
            "records": [record.to_dict() for record in records],
            "last_sequence": self.debug_output.last_sequence,
        }

    def debugger_status(self) -> dict[str, Any]:
        connection = self.debug_client.last_connection
        status: dict[str, Any] = {
            "state": self.debug_client.state.value,
            "buffered_records": len(self.debug_output),
            "last_sequence": self.debug_output.last_sequence,
            "evicted_records": self.debug_output.evicted,
        }
        if connection is not None:
            status["connection"] = connection.to_dict(self._now())
        return status

    #
    # Child command channel
    #
    def attach_child(self, process: asyncio.subprocess.Process) -> CommandChannel:
        """Attach the command channel to an already running child process."""
        channel = CommandChannel.from_process(
            process,
            self.config.channel,
            on_output=self._record_child_line,
            logger=self._log,
        )
        return self.attach_channel(channel, process)

    def attach_channel(
        self,
        channel: CommandChannel,
        process: Optional[asyncio.subprocess.Process] = None,
    ) -> CommandChannel:
        if self._channel is not None and not self._channel.closed:
            raise BridgeError("a child is already attached; detach it first")
        self._channel = channel
        self._process = process
        channel.start()
        return channel

    async def detach_child(self) -> None:
        channel = self._channel
        self._channel = None
        self._process = None
        if channel is not None:
            await channel.close("detached by controller")

    async def send_command(
        self,
        action: str,
        parameters: Mapping[str, Any] | None = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Send one command to the child and return its response as a dict."""
        try:
            channel = await self._ensure_channel()
            response = await channel.send(action, parameters, timeout)
        except BridgeError as exc:
            return {"error": str(exc), "action": action, "success": False}
        result = response.to_dict()
        if not response.success:
            result["error"] = response.error
        return result

    def get_child_output(self, since: int = 0, limit: Optional[int] = None) -> dict[str, Any]:
        records = self.child_output.drain_since(since, limit)
        payload = _records_payload(records, self.child_output, since)
        payload["attached"] = self._channel is not None and not self._channel.closed
        if self._process is not None:
            payload["pid"] = self._process.pid
            payload["returncode"] = self._process.returncode
        if self._channel is not None and self._channel.closed:
            payload["exit_reason"] = self._channel.exit_reason
        return payload

    async def close(self) -> None:
        await self.detach_child()
        await self.debug_client.disconnect()

    async def _ensure_channel(self) -> CommandChannel:
        if self._channel is not None:
            return self._channel
        if not self.config.child_command:
            raise BridgeError(
                "no child process attached; set GODOT_BRIDGE_CHILD or attach one before sending commands"
            )
        async with self._spawn_lock:
            if self._channel is not None:
                return self._channel
            process = await self._spawn(self.config.child_command)
            return self.attach_child(process)

    async def _spawn(self, argv: Sequence[str]) -> asyncio.subprocess.Process:
        self._log.info("starting child: %s", " ".join(argv))
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                limit=CHILD_STREAM_LIMIT,
            )
        except OSError as exc:
            raise BridgeError(f"could not start child {argv[0]!r}: {exc}") from exc

    def _record_child_line(self, line: str) -> None:
        if not line.strip():
            return
        self.child_output.append(Record(kind=classify_text(line), text=line, fields={"source": "stdout"}))

    @staticmethod
    def _now() -> Optional[float]:
        try:
            return asyncio.get_running_loop().time()
        except RuntimeError:
            return None
