"""godot-debug-probe: watch what a Godot debug port is sending.

Connects to the remote-debug port and prints every decoded record as it
arrives, optionally with a hex dump of the raw chunks.  Useful for checking
that the game is reachable before wiring up the MCP server.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, TextIO

from godot_telemetry_bridge.config import (
    EDITOR_SYNC_PORT,
    SCRIPT_DEBUGGER_PORT,
    DebugSocketConfig,
    DecoderConfig,
)
from godot_telemetry_bridge.debug_socket import DebugSocketClient
from godot_telemetry_bridge.errors import DebugConnectionError
from godot_telemetry_bridge.output_aggregator import OutputAggregator
from godot_telemetry_bridge.records import Record
from godot_telemetry_bridge.utils import hex_dump


TROUBLESHOOTING = (
    "Troubleshooting:\n"
    "  1. Make sure the Godot editor is running\n"
    "  2. Press F5 in Godot to start your game\n"
    f"  3. Try port {EDITOR_SYNC_PORT} instead: godot-debug-probe {EDITOR_SYNC_PORT}\n"
    "  4. Check Editor > Editor Settings > Network > Debug\n"
)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print decoded output from a Godot remote-debug port")
    parser.add_argument(
        "port",
        nargs="?",
        type=int,
        default=SCRIPT_DEBUGGER_PORT,
        help=f"Debug port (default {SCRIPT_DEBUGGER_PORT}, script debugger)",
    )
    parser.add_argument("--host", default="localhost", help="Engine host (default localhost)")
    parser.add_argument("--timeout", type=float, default=5.0, help="Connect timeout in seconds")
    parser.add_argument("--hex", action="store_true", help="Also dump every raw chunk as hex")
    parser.add_argument("--max-frame-size", type=int, default=DecoderConfig.max_frame_size)
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default WARNING)")
    return parser


def format_record(record: Record) -> str:
    return f"[{record.sequence:>6}] {record.kind.value:<7} @{record.offset:<8} {record.text}"


async def run_probe(args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    aggregator = OutputAggregator()
    client = DebugSocketClient(
        aggregator,
        DebugSocketConfig(host=args.host, port=args.port, connect_timeout=args.timeout),
        decoder_config=DecoderConfig(max_frame_size=args.max_frame_size),
    )
    client.add_listener(lambda record: print(format_record(record), file=out, flush=True))
    if args.hex:
        def dump(chunk: bytes) -> None:
            print(f"--- chunk ({len(chunk)} bytes) ---", file=out)
            for row in hex_dump(chunk):
                print(f"  {row}", file=out)
            out.flush()

        client.add_chunk_listener(dump)

    print(f"=== Godot Remote Debugger Probe ===\nConnecting to {args.host}:{args.port}", file=out)
    try:
        await client.connect()
    except DebugConnectionError as exc:
        print(f"✗ {exc}\n\n{TROUBLESHOOTING}", file=sys.stderr)
        return 1
    print("✓ Connected. Waiting for data (Ctrl+C to exit)\n", file=out, flush=True)
    try:
        await client.wait_closed()
    finally:
        await client.disconnect()
    return 0


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(run_probe(args))
    except KeyboardInterrupt:
        print("\nDisconnecting...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
