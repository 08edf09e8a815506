"""Configuration for the bridge components.

Defaults mirror what Godot exposes out of the box: the script debugger
listens on 6006 and editor sync on 6007.  ``BridgeConfig.from_env`` lets the
MCP client configuration override the interesting knobs through the
server's environment.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Mapping

SCRIPT_DEBUGGER_PORT = 6006
EDITOR_SYNC_PORT = 6007

COMMAND_MARKER = "MCP_COMMAND:"
RESPONSE_MARKER = "MCP_RESPONSE:"


@dataclass
class DecoderConfig:
    max_frame_size: int = 1000
    max_buffer_size: int = 8192
    trim_tail: int = 4096
    min_run_length: int = 3
    max_run_length: int = 1024


@dataclass
class DebugSocketConfig:
    host: str = "127.0.0.1"
    port: int = SCRIPT_DEBUGGER_PORT
    connect_timeout: float = 5.0
    read_chunk_size: int = 4096
    close_timeout: float = 2.0


@dataclass
class ChannelConfig:
    command_marker: str = COMMAND_MARKER
    response_marker: str = RESPONSE_MARKER
    default_timeout: float = 10.0
    # Screenshot responses carry base64 image data on a single line.
    max_line_length: int = 32 * 1024 * 1024
    read_chunk_size: int = 65536


@dataclass
class BridgeConfig:
    debug: DebugSocketConfig = field(default_factory=DebugSocketConfig)
    decoder: DecoderConfig = field(default_factory=DecoderConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    output_capacity: int = 1000
    child_command: list[str] = field(default_factory=list)
    verbose: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BridgeConfig":
        """Build a config from ``GODOT_*`` environment variables."""
        env = os.environ if environ is None else environ
        config = cls()
        if env.get("GODOT_DEBUG_HOST"):
            config.debug.host = env["GODOT_DEBUG_HOST"]
        if env.get("GODOT_DEBUG_PORT"):
            config.debug.port = _int_setting(env, "GODOT_DEBUG_PORT")
        if env.get("GODOT_BRIDGE_OUTPUT_CAPACITY"):
            config.output_capacity = _int_setting(env, "GODOT_BRIDGE_OUTPUT_CAPACITY")
        if env.get("GODOT_BRIDGE_COMMAND_TIMEOUT"):
            raw = env["GODOT_BRIDGE_COMMAND_TIMEOUT"]
            try:
                config.channel.default_timeout = float(raw)
            except ValueError:
                raise ValueError(f"GODOT_BRIDGE_COMMAND_TIMEOUT must be a number, got {raw!r}") from None
        if env.get("GODOT_BRIDGE_CHILD"):
            config.child_command = shlex.split(env["GODOT_BRIDGE_CHILD"])
        config.verbose = env.get("DEBUG", "").strip().lower() in ("1", "true", "yes", "on")
        return config


def _int_setting(env: Mapping[str, str], name: str) -> int:
    raw = env[name]
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
