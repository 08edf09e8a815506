"""Godot telemetry & command bridge.

Lets an MCP controller observe a running Godot game through its remote-debug
port and send it commands over stdin/stdout without ever blocking on either:

    frame_decoder.py      → debug byte stream to Records (two heuristic passes)
    output_aggregator.py  → bounded, sequence-numbered record buffer
    debug_socket.py       → debug-port connection and reader task
    command_channel.py    → marker-line command/response multiplexing
    session.py            → controller-owned context over all of the above
    tools.py / server.py  → FastMCP surface
"""

from .command_channel import (  # noqa: F401
    CommandChannel,
    CommandEnvelope,
    LineTokenizer,
    PendingRequest,
    RequestState,
    ResponseEnvelope,
    normalize_command,
)
from .config import BridgeConfig, ChannelConfig, DebugSocketConfig, DecoderConfig  # noqa: F401
from .debug_socket import Connection, ConnectionState, DebugSocketClient  # noqa: F401
from .errors import (  # noqa: F401
    BridgeError,
    ChildExited,
    CommandError,
    DebugConnectionError,
    RequestInFlightError,
    RequestTimeout,
    TransportError,
)
from .frame_decoder import FrameDecoder, LengthPrefixedPass, PrintableRunPass  # noqa: F401
from .output_aggregator import OutputAggregator  # noqa: F401
from .records import Record, RecordKind  # noqa: F401
from .session import BridgeSession  # noqa: F401

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "BridgeSession",
    "ChannelConfig",
    "ChildExited",
    "CommandChannel",
    "CommandEnvelope",
    "CommandError",
    "Connection",
    "ConnectionState",
    "DebugConnectionError",
    "DebugSocketClient",
    "DebugSocketConfig",
    "DecoderConfig",
    "FrameDecoder",
    "LengthPrefixedPass",
    "LineTokenizer",
    "OutputAggregator",
    "PendingRequest",
    "PrintableRunPass",
    "Record",
    "RecordKind",
    "RequestInFlightError",
    "RequestState",
    "RequestTimeout",
    "ResponseEnvelope",
    "TransportError",
    "normalize_command",
]

__version__ = "0.1.0"
