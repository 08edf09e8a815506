#!/usr/bin/env python3
"""Godot Telemetry Bridge — MCP Server.

An MCP server that lets an agent watch a running Godot game through its
remote-debug port and drive it through marker-line commands on the game's
stdin/stdout.

Run with: godot-telemetry-bridge
Or configure as an MCP server:
{
    "mcpServers": {
        "godot-telemetry": {
            "command": "godot-telemetry-bridge",
            "env": {
                "GODOT_DEBUG_PORT": "6006",
                "GODOT_BRIDGE_CHILD": "godot --path /path/to/project",
                "DEBUG": "true"
            }
        }
    }
}
"""

from __future__ import annotations

import logging
import sys

from fastmcp import FastMCP

from godot_telemetry_bridge.config import BridgeConfig
from godot_telemetry_bridge.session import BridgeSession
from godot_telemetry_bridge.tools import register_bridge_tools

INSTRUCTIONS = (
    "You have access to tools for observing and steering a running Godot game.\n\n"
    "Debugger tools (debugger_*) read the engine's remote-debug stream. Call "
    "debugger_connect() once the game is running, then poll debugger_output(since=N) "
    "with the last_sequence from the previous call to see only new log, warning "
    "and error records. The connection is never re-established automatically; "
    "if debugger_output reports 'disconnected', call debugger_connect() again.\n\n"
    "Game tools (game_*) send commands to the game process: game_screenshot, "
    "game_click, or game_command for other actions. Only one request per action "
    "can be outstanding. game_output shows what the game printed to stdout.\n\n"
    "When you see error records, read them, fix the cause, and check the "
    "output again — do not stop at reporting them."
)


def configure_logging(verbose: bool) -> None:
    """Log to stderr only; stdout carries the MCP stdio transport."""
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_server(config: BridgeConfig | None = None) -> tuple[FastMCP, BridgeSession]:
    """Build the MCP server and the session its tools talk to."""
    session = BridgeSession(config or BridgeConfig.from_env())
    mcp = FastMCP("godot-telemetry-bridge", instructions=INSTRUCTIONS)
    register_bridge_tools(mcp, session)
    return mcp, session


def main() -> None:
    config = BridgeConfig.from_env()
    configure_logging(config.verbose)
    mcp, _session = create_server(config)
    mcp.run()


if __name__ == "__main__":
    main()
