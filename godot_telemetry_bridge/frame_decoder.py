"""Incremental decoder for the Godot remote-debug byte stream.

The debug port carries an undocumented mix of length-prefixed binary frames
and plain text, and a client may attach mid-frame.  Decoding is therefore a
best-effort, two-pass affair over an internal RawBuffer:

1. ``LengthPrefixedPass`` reads a 4-byte little-endian length at each byte
   offset and claims the span if the following bytes are plausible text.
2. ``PrintableRunPass`` turns every region the first pass did not claim into
   runs of printable characters, so something readable always comes out.

Both passes only commit a decision once more bytes can no longer change it.
Feeding a stream in arbitrary chunks yields exactly the records the same
stream would yield in one piece; the only exception is the lossy trim that
kicks in when the buffer grows past ``max_buffer_size`` without progress.

Nothing in here raises on bad input.  Garbage becomes Unknown records or is
dropped.
"""

from __future__ import annotations

import logging
import string
import struct
from dataclasses import dataclass
from typing import Optional, Union, cast

from godot_telemetry_bridge.config import DecoderConfig
from godot_telemetry_bridge.records import Record, RecordKind, classify_text

log = logging.getLogger(__name__)

_PREFIX = struct.Struct("<I")
PREFIX_SIZE = _PREFIX.size

PRINTABLE_PUNCTUATION = "_:.,!?-/()'\" "
PRINTABLE_BYTES = frozenset(
    (string.ascii_letters + string.digits + PRINTABLE_PUNCTUATION).encode("ascii")
)

# C0 controls other than tab / LF / CR disqualify a length-prefixed payload.
_DISALLOWED_CONTROLS = frozenset(chr(c) for c in range(32) if c not in (9, 10, 13)) | {"\x7f"}


class _Incomplete:
    def __repr__(self) -> str:
        return "INCOMPLETE"


# Returned by a pass when the answer depends on bytes that have not arrived yet.
INCOMPLETE = _Incomplete()


@dataclass(frozen=True)
class Span:
    """A claimed region of the buffer, in buffer-local indexes."""

    start: int
    end: int
    text: str


MatchResult = Union[Span, None, _Incomplete]


class RawBuffer:
    """Append-only byte accumulator that forgets its consumed prefix.

    ``base`` is the stream offset of the first retained byte, so offsets
    handed out in records stay meaningful after trimming.
    """

    def __init__(self) -> None:
        self._data = bytearray()
        self._base = 0

    def __len__(self) -> int:
        return len(self._data)

    @property
    def data(self) -> bytearray:
        return self._data

    @property
    def base(self) -> int:
        return self._base

    @property
    def end(self) -> int:
        return self._base + len(self._data)

    def append(self, chunk: bytes) -> None:
        self._data += chunk

    def discard_until(self, offset: int) -> int:
        """Drop every byte before stream *offset*; return how many were dropped."""
        count = min(offset - self._base, len(self._data))
        if count <= 0:
            return 0
        del self._data[:count]
        self._base += count
        return count

    def keep_tail(self, size: int) -> int:
        return self.discard_until(self.end - max(size, 0))


def _decode_text(payload: bytes) -> Optional[str]:
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if any(ch in _DISALLOWED_CONTROLS for ch in text):
        return None
    if not any(ch.isalpha() for ch in text):
        return None
    return text


class LengthPrefixedPass:
    """Pass 1: ``<u32 little-endian length><UTF-8 text>`` frames."""

    name = "length_prefixed"

    def __init__(self, max_frame_size: int = 1000) -> None:
        self.max_frame_size = max_frame_size

    def match(self, data: bytearray, index: int, final: bool) -> MatchResult:
        """Try to read a frame starting at *index*."""
        if len(data) - index < PREFIX_SIZE:
            return None if final else INCOMPLETE
        (length,) = _PREFIX.unpack_from(data, index)
        if not 0 < length < self.max_frame_size:
            return None
        end = index + PREFIX_SIZE + length
        if end > len(data):
            return None if final else INCOMPLETE
        text = _decode_text(bytes(data[index + PREFIX_SIZE:end]))
        if text is None:
            return None
        return Span(index, end, text)

    def to_record(self, span: Span, base: int) -> Record:
        text = span.text.rstrip("\r\n")
        return Record(
            kind=classify_text(text),
            text=text,
            offset=base + span.start,
            fields={"source": self.name, "length": span.end - span.start - PREFIX_SIZE},
        )


class PrintableRunPass:
    """Pass 2: maximal runs of whitelisted characters in unclaimed regions.

    Runs longer than ``max_run_length`` are cut into pieces of exactly that
    length counted from the start of the run; pieces shorter than
    ``min_run_length`` are dropped.
    """

    name = "printable_run"

    def __init__(self, min_run_length: int = 3, max_run_length: int = 1024) -> None:
        self.min_run_length = min_run_length
        self.max_run_length = max(max_run_length, min_run_length)

    def scan(self, data: bytearray, start: int, stop: int, hard_stop: bool) -> tuple[list[Span], int]:
        """Extract runs from ``data[start:stop]``.

        With ``hard_stop`` the region is known to end at *stop* (a frame
        starts there, or the stream ended).  Otherwise a run touching *stop*
        may still grow, so only its whole pieces are committed.

        Returns the committed spans and the index up to which bytes are
        consumed.
        """
        spans: list[Span] = []
        consumed = start
        i = start
        while i < stop:
            if data[i] not in PRINTABLE_BYTES:
                i += 1
                consumed = i
                continue
            run_start = i
            while i < stop and data[i] in PRINTABLE_BYTES:
                i += 1
            if i < stop or hard_stop:
                spans.extend(self._pieces(data, run_start, i))
                consumed = i
            else:
                whole = (i - run_start) // self.max_run_length * self.max_run_length
                if whole:
                    spans.extend(self._pieces(data, run_start, run_start + whole))
                consumed = run_start + whole
        return spans, consumed

    def _pieces(self, data: bytearray, start: int, end: int) -> list[Span]:
        pieces = []
        for piece_start in range(start, end, self.max_run_length):
            piece_end = min(piece_start + self.max_run_length, end)
            if piece_end - piece_start >= self.min_run_length:
                text = bytes(data[piece_start:piece_end]).decode("ascii")
                pieces.append(Span(piece_start, piece_end, text))
        return pieces

    def to_record(self, span: Span, base: int) -> Record:
        return Record(
            kind=RecordKind.UNKNOWN,
            text=span.text,
            offset=base + span.start,
            fields={"source": self.name},
        )


@dataclass
class DecoderStats:
    bytes_fed: int = 0
    frames: int = 0
    runs: int = 0
    bytes_dropped: int = 0
    trims: int = 0


class FrameDecoder:
    """Turns debug-port bytes into Records, one chunk at a time.

    Owned by a single reader; not safe to feed from several tasks at once.
    """

    def __init__(
        self,
        config: DecoderConfig | None = None,
        *,
        frame_pass: LengthPrefixedPass | None = None,
        text_pass: PrintableRunPass | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or DecoderConfig()
        self._frame_pass = frame_pass or LengthPrefixedPass(self.config.max_frame_size)
        self._text_pass = text_pass or PrintableRunPass(
            self.config.min_run_length, self.config.max_run_length
        )
        self._log = logger or log
        self._buffer = RawBuffer()
        # Stream offsets: start of the unclaimed region, next offset for pass 1.
        self._consumed = 0
        self._scan = 0
        self.stats = DecoderStats()

    @property
    def pending_bytes(self) -> int:
        """Bytes held back waiting for more input."""
        return len(self._buffer)

    @property
    def stream_offset(self) -> int:
        """Total number of bytes fed so far."""
        return self._buffer.end

    def feed(self, chunk: bytes) -> list[Record]:
        """Append *chunk* and return every record it completes."""
        if chunk:
            self._buffer.append(chunk)
            self.stats.bytes_fed += len(chunk)
        records = self._decode(final=False)
        self._trim()
        return records

    def finish(self) -> list[Record]:
        """Flush everything still buffered; used once the stream has ended."""
        records = self._decode(final=True)
        self._buffer.discard_until(self._buffer.end)
        self._consumed = self._scan = self._buffer.end
        return records

    def _decode(self, final: bool) -> list[Record]:
        data = self._buffer.data
        base = self._buffer.base
        index = self._scan - base
        region = self._consumed - base
        records: list[Record] = []

        while index < len(data):
            match = self._frame_pass.match(data, index, final)
            if match is INCOMPLETE:
                break
            if match is None:
                index += 1
                continue
            span = cast(Span, match)
            records.extend(self._text_records(data, region, span.start, True, base))
            records.append(self._frame_pass.to_record(span, base))
            self.stats.frames += 1
            index = region = span.end

        spans, consumed = self._text_pass.scan(data, region, index, final)
        records.extend(self._text_pass.to_record(span, base) for span in spans)
        self.stats.runs += len(spans)

        self._scan = base + index
        self._consumed = base + consumed
        self._buffer.discard_until(self._consumed)
        return records

    def _text_records(self, data: bytearray, start: int, stop: int, hard_stop: bool, base: int) -> list[Record]:
        spans, _ = self._text_pass.scan(data, start, stop, hard_stop)
        self.stats.runs += len(spans)
        return [self._text_pass.to_record(span, base) for span in spans]

    def _trim(self) -> None:
        if len(self._buffer) <= self.config.max_buffer_size:
            return
        dropped = self._buffer.keep_tail(self.config.trim_tail)
        self._consumed = self._buffer.base
        self._scan = max(self._scan, self._buffer.base)
        self.stats.bytes_dropped += dropped
        self.stats.trims += 1
        self._log.warning(
            "debug stream made no progress for %d bytes; dropped %d oldest bytes",
            dropped + len(self._buffer),
            dropped,
        )
