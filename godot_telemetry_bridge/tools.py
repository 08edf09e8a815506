"""MCP tool definitions for the Godot telemetry & command bridge.

Debugger tools (debugger_*) attach to the engine's remote-debug port and
expose the decoded log/warning/error stream for polling.  Game tools (game_*)
send commands to the in-engine dispatcher over the child's stdin/stdout.
"""

from __future__ import annotations

from typing import Any, Optional

from fastmcp import FastMCP

from godot_telemetry_bridge.session import BridgeSession
from godot_telemetry_bridge.utils import b64_image as _b64_image


NOT_CONNECTED_MSG = "Debugger is not connected. Use debugger_connect() first."


def _count_kinds(records: list[dict[str, Any]]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for record in records:
        counts[record["kind"]] = counts.get(record["kind"], 0) + 1
    return counts


def _output_summary(label: str, data: dict[str, Any]) -> str:
    records = data.get("records", [])
    if not records:
        return f"{label}: nothing new (last seq {data.get('last_sequence', 0)})"
    counts = _count_kinds(records)
    parts = [f"{n} {kind}" for kind, n in sorted(counts.items())]
    missed = data.get("missed")
    missed_hint = f", {missed} older record(s) evicted" if missed else ""
    return (
        f"{label}: {len(records)} record(s) ({', '.join(parts)}), "
        f"next since={data.get('last_sequence', 0)}{missed_hint}"
    )


def register_bridge_tools(mcp: FastMCP, session: BridgeSession) -> None:
    """Register all bridge tools with the MCP server."""

    # --- Debug port ---

    @mcp.tool
    async def debugger_connect(host: str = "", port: int = 0, timeout: float = 0.0) -> dict[str, Any]:
        """Attach to the running game's remote-debug port.

        Godot's script debugger listens on 6006 by default, editor sync on 6007.
        Connecting clears previously buffered output. The connection is never
        re-established automatically: if it drops, call this again.

        Args:
            host: Host name (default from GODOT_DEBUG_HOST, normally 127.0.0.1).
            port: Debug port (default from GODOT_DEBUG_PORT, normally 6006).
            timeout: Connect timeout in seconds (default 5).
        """
        result = await session.connect_debugger(host or None, port or None, timeout or None)
        if "error" in result:
            result["_description"] = (
                f"❌ {result['error']}. Make sure the game is running, or try port 6007"
            )
        else:
            conn = result["connection"]
            result["_description"] = f"🔌 Connected to debug port {conn['host']}:{conn['port']}"
        return result

    @mcp.tool
    async def debugger_output(since: int = 0, limit: int = 200) -> dict[str, Any]:
        """Get decoded debug output newer than a sequence number.

        Poll with the `last_sequence` of the previous call as `since` to get only
        new records. Reads are repeatable: the same `since` returns the same records.
        Each record has a kind (log, warning, error, unknown), its text, a
        sequence number, and the byte offset it came from.

        Args:
            since: Return records with a sequence number greater than this (default 0 = all).
            limit: Maximum number of records to return (default 200).
        """
        data = session.get_debug_output(since, limit)
        if not data["records"] and data["state"] == "disconnected" and data["last_sequence"] == 0:
            data["_description"] = NOT_CONNECTED_MSG
        else:
            data["_description"] = _output_summary("📟 Debug output", data)
        return data

    @mcp.tool
    async def debugger_disconnect(since: int = 0) -> dict[str, Any]:
        """Disconnect from the debug port.

        Returns the records newer than `since` (the last one is the
        "connection ended" record) and clears the buffer.
        """
        result = await session.disconnect_debugger(since)
        if result["disconnected"]:
            result["_description"] = f"🔌 Disconnected ({len(result['records'])} final record(s))"
        else:
            result["_description"] = "Debugger was not connected"
        return result

    @mcp.tool
    async def debugger_status() -> dict[str, Any]:
        """Show the debug connection state, byte counters and buffer usage."""
        status = session.debugger_status()
        conn = status.get("connection")
        if status["state"] == "connected" and conn:
            status["_description"] = (
                f"🟢 Connected to {conn['host']}:{conn['port']} — "
                f"{conn['bytes_received']} bytes, {status['buffered_records']} buffered record(s)"
            )
        else:
            status["_description"] = f"⚪ Debugger {status['state']}"
        return status

    # --- Child commands ---

    @mcp.tool
    async def game_command(
        action: str,
        parameters: Optional[dict[str, Any]] = None,
        timeout: float = 0.0,
    ) -> dict[str, Any]:
        """Send a raw command to the in-game command dispatcher and wait for its response.

        Prefer game_screenshot / game_click for those actions. Only one request
        per action can be outstanding at a time.

        Args:
            action: Command name, e.g. 'screenshot' or 'click'.
            parameters: Flat mapping of parameter names to strings, numbers, or booleans.
            timeout: Seconds to wait for the response (default 10).
        """
        result = await session.send_command(action, parameters or {}, timeout or None)
        if "_description" not in result:
            if result.get("success"):
                result["_description"] = f"✅ {action} succeeded"
            else:
                result["_description"] = f"❌ {action} failed: {result.get('error', 'unknown error')}"
        return result

    @mcp.tool
    async def game_screenshot(format: str = "png", timeout: float = 0.0) -> list[Any]:
        """Capture the running game viewport as a screenshot.

        Args:
            format: Image format — 'png', 'jpg', or 'webp' (default 'png').
            timeout: Seconds to wait for the screenshot (default 10).
        """
        result = await session.send_command("screenshot", {"format": format}, timeout or None)
        if not result.get("success"):
            return [f"❌ Screenshot failed: {result.get('error', 'unknown error')}"]
        image_data = result.pop("data", "")
        summary = f"Game screenshot ({result.get('width', '?')}x{result.get('height', '?')}, {format})"
        if not image_data:
            return [f"{summary} — response carried no image data", result]
        return [summary, _b64_image(image_data, format)]

    @mcp.tool
    async def game_click(x: int, y: int, button: str = "left", timeout: float = 0.0) -> dict[str, Any]:
        """Click at specific screen coordinates in the running game.

        Args:
            x: X coordinate in screen space.
            y: Y coordinate in screen space.
            button: Mouse button — 'left', 'right', or 'middle'.
            timeout: Seconds to wait for the acknowledgement (default 10).
        """
        result = await session.send_command("click", {"x": x, "y": y, "button": button}, timeout or None)
        if "_description" not in result:
            if result.get("success"):
                result["_description"] = f"🖱️ Clicked {button} at ({x}, {y})"
            else:
                result["_description"] = f"❌ Click failed: {result.get('error', 'unknown error')}"
        return result

    @mcp.tool
    async def game_output(since: int = 0, limit: int = 200) -> dict[str, Any]:
        """Get ordinary (non-command) output printed by the game process.

        Args:
            since: Return lines with a sequence number greater than this (default 0 = all).
            limit: Maximum number of lines to return (default 200).
        """
        data = session.get_child_output(since, limit)
        data["_description"] = _output_summary("📜 Game output", data)
        return data
