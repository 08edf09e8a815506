"""Exception taxonomy for the telemetry & command bridge.

Only the controller-facing failures are exceptions.  Decode anomalies are
recovered inside the frame decoder and protocol mismatches are logged;
neither ever reaches a caller.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class TransportError(BridgeError, ConnectionError):
    """Raised when the debug socket transport fails (refused, reset, closed)."""


class DebugConnectionError(TransportError):
    """Raised when connecting to the engine's debug port fails."""

    def __init__(self, host: str, port: int, reason: str, detail: str = "") -> None:
        self.host = host
        self.port = port
        self.reason = reason
        message = f"could not connect to {host}:{port} ({reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CommandError(BridgeError, ValueError):
    """Raised for a malformed command (unknown parameter types, bad values)."""


class RequestInFlightError(BridgeError):
    """Raised when an action already has an unresolved request outstanding."""


class RequestTimeout(BridgeError, TimeoutError):
    """Raised when no matching response arrives before the request deadline."""

    def __init__(self, action: str, timeout: float) -> None:
        self.action = action
        self.timeout = timeout
        super().__init__(f"no '{action}' response within {timeout:g}s")


class ChildExited(BridgeError):
    """Raised when the child's output closes (or the channel is torn down) with a request pending."""
