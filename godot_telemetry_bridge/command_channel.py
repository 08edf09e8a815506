"""Command/response multiplexing over a child process's stdin/stdout.

Commands go out as single lines::

    MCP_COMMAND:{"id": 3, "action": "screenshot", "params": {"format": "png"}}

and the in-engine dispatcher answers with single lines::

    MCP_RESPONSE:{"type": "screenshot", "success": true, "data": "...", "width": 640, "height": 480}

Everything else on stdout is ordinary program output and is handed to the
``on_output`` sink untouched.

Responses are typed only by ``type`` (or ``action``).  The id embedded in
each command is not echoed by the dispatcher, so at most one request per
action may be in flight and a response is matched to the pending request of
the same type.  If a dispatcher does echo ``id``, it is used to reject stale
responses.  Proper concurrent correlation needs the child side to echo ids.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from godot_telemetry_bridge.config import ChannelConfig
from godot_telemetry_bridge.errors import (
    ChildExited,
    CommandError,
    RequestInFlightError,
    RequestTimeout,
)

log = logging.getLogger(__name__)

OutputSink = Callable[[str], None]

SCREENSHOT_FORMATS = ("png", "jpg", "jpeg", "webp")
MOUSE_BUTTONS = {"left": 1, "right": 2, "middle": 3}
_PRIMITIVES = (str, int, float, bool, type(None))


#
# Envelopes
#
@dataclass(frozen=True)
class CommandEnvelope:
    action: str
    parameters: Mapping[str, Any]
    correlation_id: int

    def to_line(self, marker: str) -> str:
        body = {"id": self.correlation_id, "action": self.action, "params": dict(self.parameters)}
        # json.dumps escapes embedded newlines, so this is always one line.
        return f"{marker}{json.dumps(body, separators=(',', ':'))}\n"


@dataclass(frozen=True)
class ResponseEnvelope:
    type: str
    success: bool
    payload: dict[str, Any] = field(default_factory=dict)
    correlation_id: Any = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResponseEnvelope":
        type_tag = data.get("type") or data.get("action") or ""
        success = data.get("success")
        if not isinstance(success, bool):
            success = type_tag != "error"
        correlation_id = data.get("id")
        if isinstance(correlation_id, bool) or not isinstance(correlation_id, (int, str)):
            correlation_id = None
        return cls(
            type=str(type_tag),
            success=success,
            payload={k: v for k, v in data.items() if k not in ("type", "action", "success", "id")},
            correlation_id=correlation_id,
        )

    @property
    def is_error(self) -> bool:
        return self.type == "error"

    @property
    def error(self) -> Optional[str]:
        if self.success:
            return None
        message = self.payload.get("error") or self.payload.get("message")
        return str(message) if message else f"'{self.type}' failed"

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        data = {"type": self.type, "success": self.success, **self.payload}
        if self.correlation_id is not None:
            data["id"] = self.correlation_id
        return data


#
# Command validation
#
def _coerce_int(params: dict[str, Any], key: str) -> int:
    if key not in params:
        raise CommandError(f"'{key}' is required")
    value = params[key]
    if isinstance(value, bool):
        raise CommandError(f"'{key}' must be an integer, got {value!r}")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if not isinstance(value, int):
        raise CommandError(f"'{key}' must be an integer, got {value!r}")
    return value


def _normalize_screenshot(params: dict[str, Any]) -> dict[str, Any]:
    fmt = str(params.get("format") or "png").lower()
    if fmt not in SCREENSHOT_FORMATS:
        raise CommandError(f"format must be one of {', '.join(SCREENSHOT_FORMATS)}, got {fmt!r}")
    params["format"] = fmt
    return params


def _normalize_click(params: dict[str, Any]) -> dict[str, Any]:
    params["x"] = _coerce_int(params, "x")
    params["y"] = _coerce_int(params, "y")
    button = params.get("button", "left")
    if isinstance(button, str):
        if button.lower() not in MOUSE_BUTTONS:
            raise CommandError(f"button must be one of {', '.join(MOUSE_BUTTONS)} or a button code, got {button!r}")
        button = MOUSE_BUTTONS[button.lower()]
    else:
        params["button"] = button
        button = _coerce_int(params, "button")
        if button < 1:
            raise CommandError(f"button code must be positive, got {button}")
    params["button"] = button
    return params


_NORMALIZERS: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
    "screenshot": _normalize_screenshot,
    "click": _normalize_click,
}


def normalize_command(action: str, parameters: Mapping[str, Any] | None) -> dict[str, Any]:
    """Validate a command and fill in defaults for the actions we know."""
    if not isinstance(action, str) or not action.strip():
        raise CommandError("action must be a non-empty string")
    params = dict(parameters or {})
    for key, value in params.items():
        if not isinstance(key, str):
            raise CommandError(f"parameter names must be strings, got {key!r}")
        if not isinstance(value, _PRIMITIVES):
            raise CommandError(f"parameter '{key}' must be a string, number, boolean or null")
    normalizer = _NORMALIZERS.get(action)
    return normalizer(params) if normalizer else params


#
# Pending requests
#
class RequestState(str, enum.Enum):
    ISSUED = "issued"
    MATCHED = "matched"
    TIMED_OUT = "timed_out"
    CHILD_EXITED = "child_exited"
    CANCELLED = "cancelled"


@dataclass
class PendingRequest:
    """Result slot for one issued command.  Resolved at most once."""

    correlation_id: int
    action: str
    deadline: float
    future: asyncio.Future
    state: RequestState = RequestState.ISSUED

    @property
    def resolved(self) -> bool:
        return self.state is not RequestState.ISSUED

    def match(self, response: ResponseEnvelope) -> bool:
        if self.resolved:
            return False
        self.state = RequestState.MATCHED
        if not self.future.done():
            self.future.set_result(response)
        return True

    def fail(self, state: RequestState, error: BaseException) -> bool:
        if self.resolved:
            return False
        self.state = state
        if not self.future.done():
            self.future.set_exception(error)
        return True

    def abandon(self, state: RequestState) -> bool:
        """Resolve without a result; used when the waiter itself gave up."""
        if self.resolved:
            return False
        self.state = state
        self.future.cancel()
        return True


#
# Line tokenizer
#
class LineTokenizer:
    """Splits a byte stream into text lines, bounding the partial-line buffer."""

    def __init__(self, max_line_length: int = 32 * 1024 * 1024, logger: logging.Logger | None = None) -> None:
        self.max_line_length = max_line_length
        self._log = logger or log
        self._buffer = bytearray()
        self._search_from = 0
        self._discarding = False

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += chunk
        lines: list[str] = []
        while True:
            newline = self._buffer.find(b"\n", self._search_from)
            if newline < 0:
                self._search_from = len(self._buffer)
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[:newline + 1]
            self._search_from = 0
            if self._discarding:
                self._discarding = False
                continue
            lines.append(self._decode(raw))
        if len(self._buffer) > self.max_line_length:
            self._log.warning("dropping child output line longer than %d bytes", self.max_line_length)
            self._buffer.clear()
            self._search_from = 0
            self._discarding = True
        return lines

    def flush(self) -> list[str]:
        """Return the unterminated last line, if any."""
        raw = bytes(self._buffer)
        self._buffer.clear()
        self._search_from = 0
        discarding, self._discarding = self._discarding, False
        if not raw or discarding:
            return []
        return [self._decode(raw)]

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").rstrip("\r")


#
# Channel
#
class CommandChannel:
    """Sends marker-line commands to a child and correlates its responses.

    One reader task owns the child's stdout.  ``send`` only waits for its own
    response or its own deadline.  ``close`` (or the child's stdout reaching
    EOF) resolves every outstanding request as failed.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: ChannelConfig | None = None,
        *,
        on_output: Optional[OutputSink] = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or ChannelConfig()
        self._reader = reader
        self._writer = writer
        self._on_output = on_output
        self._log = logger or log
        self._tokenizer = LineTokenizer(self.config.max_line_length, self._log)
        self._pending: dict[str, PendingRequest] = {}
        self._expired: Counter[str] = Counter()
        self._next_id = 0
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._closed = False
        self._exit_reason: Optional[str] = None

    @classmethod
    def from_process(
        cls,
        process: asyncio.subprocess.Process,
        config: ChannelConfig | None = None,
        *,
        on_output: Optional[OutputSink] = None,
        logger: logging.Logger | None = None,
    ) -> "CommandChannel":
        if process.stdin is None or process.stdout is None:
            raise ValueError("child process needs stdin and stdout pipes")
        return cls(process.stdout, process.stdin, config, on_output=on_output, logger=logger)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exit_reason(self) -> Optional[str]:
        return self._exit_reason

    @property
    def pending_actions(self) -> list[str]:
        return list(self._pending)

    def start(self) -> None:
        """Start the stdout reader; must be called from a running loop."""
        if self._reader_task is None and not self._closed:
            self._reader_task = asyncio.create_task(self._read_loop(), name="godot-command-reader")

    async def send(
        self,
        action: str,
        parameters: Mapping[str, Any] | None = None,
        timeout: Optional[float] = None,
    ) -> ResponseEnvelope:
        """Issue *action* and wait for its response.

        Raises CommandError for invalid input, RequestInFlightError if the
        action is already outstanding, RequestTimeout when the deadline
        passes and ChildExited when the child goes away first.
        """
        params = normalize_command(action, parameters)
        timeout = self.config.default_timeout if timeout is None else timeout
        if timeout <= 0:
            raise CommandError("timeout must be positive")
        if self._closed:
            raise ChildExited(f"cannot send '{action}': {self._exit_reason or 'channel closed'}")
        if action in self._pending:
            raise RequestInFlightError(f"a '{action}' request is already waiting for its response")
        self.start()

        loop = asyncio.get_running_loop()
        self._next_id += 1
        envelope = CommandEnvelope(action, params, self._next_id)
        request = PendingRequest(
            correlation_id=envelope.correlation_id,
            action=action,
            deadline=loop.time() + timeout,
            future=loop.create_future(),
        )
        self._pending[action] = request
        try:
            try:
                self._writer.write(envelope.to_line(self.config.command_marker).encode("utf-8"))
                await self._writer.drain()
            except OSError as exc:
                request.abandon(RequestState.CHILD_EXITED)
                raise ChildExited(f"could not write '{action}' command: {exc}") from exc
            self._log.debug("sent %s command #%d", action, envelope.correlation_id)

            try:
                remaining = max(request.deadline - loop.time(), 0.0)
                return await asyncio.wait_for(asyncio.shield(request.future), remaining)
            except asyncio.TimeoutError:
                if not request.abandon(RequestState.TIMED_OUT):
                    # Resolved in the same loop iteration the deadline fired.
                    return request.future.result()
                self._expired[action] += 1
                self._log.warning("'%s' command #%d timed out after %gs", action, envelope.correlation_id, timeout)
                raise RequestTimeout(action, timeout) from None
            except asyncio.CancelledError:
                if request.abandon(RequestState.CANCELLED):
                    self._expired[action] += 1
                raise
        finally:
            if self._pending.get(action) is request:
                del self._pending[action]

    async def close(self, reason: str = "channel closed") -> None:
        """Stop the reader and fail everything still pending.  Idempotent."""
        if self._exit_reason is None:
            self._exit_reason = reason
        with contextlib.suppress(OSError, RuntimeError):
            self._writer.close()
        task = self._reader_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._shutdown(self._exit_reason or reason)

    #
    # Reader side
    #
    async def _read_loop(self) -> None:
        reason = "child output closed"
        try:
            while True:
                chunk = await self._reader.read(self.config.read_chunk_size)
                if not chunk:
                    break
                for line in self._tokenizer.feed(chunk):
                    self._handle_line(line)
            for line in self._tokenizer.flush():
                self._handle_line(line)
        except asyncio.CancelledError:
            reason = "channel closed"
            raise
        except OSError as exc:
            reason = f"child output failed: {exc}"
            self._log.warning("reading child output failed: %s", exc)
        finally:
            self._shutdown(self._exit_reason or reason)

    def _shutdown(self, reason: str) -> None:
        if self._closed and not self._pending:
            return
        self._closed = True
        self._exit_reason = reason
        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            request.fail(
                RequestState.CHILD_EXITED,
                ChildExited(f"'{request.action}' got no response: {reason}"),
            )
        if pending:
            self._log.warning("%s with %d request(s) pending", reason, len(pending))
        else:
            self._log.info("command channel stopped: %s", reason)

    def _handle_line(self, line: str) -> None:
        text = line.lstrip()
        marker = self.config.response_marker
        if not text.startswith(marker):
            self._emit_output(line)
            return
        try:
            data = json.loads(text[len(marker):])
        except json.JSONDecodeError as exc:
            self._log.warning("malformed response line (%s): %.200s", exc, line)
            self._emit_output(line)
            return
        if not isinstance(data, dict):
            self._log.warning("response line is not a JSON object: %.200s", line)
            self._emit_output(line)
            return
        self._dispatch(ResponseEnvelope.from_dict(data), line)

    def _dispatch(self, response: ResponseEnvelope, line: str) -> None:
        request = self._pending.get(response.type)
        if request is None and response.is_error:
            request = self._owner_of_error(response)

        if request is None:
            if self._expired[response.type] > 0:
                self._expired[response.type] -= 1
                self._log.warning("discarding late '%s' response; its request already gave up", response.type)
                return
            self._log.warning(
                "protocol mismatch: unsolicited '%s' response while waiting for %s",
                response.type,
                ", ".join(self._pending) or "nothing",
            )
            self._emit_output(line)
            return

        if response.correlation_id is not None and response.correlation_id != request.correlation_id:
            self._log.warning(
                "discarding stale '%s' response #%s (waiting on #%d)",
                response.type,
                response.correlation_id,
                request.correlation_id,
            )
            return

        if request.match(response):
            self._pending.pop(request.action, None)
            # A late reply to an expired request is now indistinguishable from this one.
            self._expired.pop(request.action, None)
            self._log.debug("'%s' command #%d resolved", request.action, request.correlation_id)

    def _owner_of_error(self, response: ResponseEnvelope) -> Optional[PendingRequest]:
        """Pick the request an ``error`` response belongs to, if that is unambiguous."""
        if response.correlation_id is not None:
            for request in self._pending.values():
                if request.correlation_id == response.correlation_id:
                    return request
            return None
        if len(self._pending) == 1:
            return next(iter(self._pending.values()))
        return None

    def _emit_output(self, line: str) -> None:
        if self._on_output is None:
            self._log.debug("child: %s", line)
            return
        try:
            self._on_output(line)
        except Exception:
            self._log.exception("child output sink failed")
