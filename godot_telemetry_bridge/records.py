"""Decoded debug-stream records.

A Record is the unit everything downstream of the frame decoder works
with: the aggregator stores them, the controller polls them.  Records are
frozen; the aggregator stamps the sequence number by producing a copy.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Any

from godot_telemetry_bridge.utils import is_error_line, is_warning_line


class RecordKind(str, enum.Enum):
    LOG = "log"
    WARNING = "warning"
    ERROR = "error"
    UNKNOWN = "unknown"


# Sequence value carried by records that have not been through an aggregator yet.
UNSEQUENCED = 0


@dataclass(frozen=True)
class Record:
    kind: RecordKind
    text: str
    offset: int = -1
    sequence: int = UNSEQUENCED
    fields: dict[str, Any] = field(default_factory=dict)

    def with_sequence(self, sequence: int) -> "Record":
        return replace(self, sequence=sequence)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "seq": self.sequence,
            "kind": self.kind.value,
            "text": self.text,
            "offset": self.offset,
        }
        if self.fields:
            data["fields"] = dict(self.fields)
        return data


def classify_text(text: str) -> RecordKind:
    """Pick Error / Warning / Log for a piece of decoded text."""
    if is_error_line(text):
        return RecordKind.ERROR
    if is_warning_line(text):
        return RecordKind.WARNING
    return RecordKind.LOG


def connection_ended_record(reason: str, offset: int = -1) -> Record:
    """The terminal record emitted once per connection when the stream ends."""
    return Record(
        kind=RecordKind.UNKNOWN,
        text=f"connection ended: {reason}",
        offset=offset,
        fields={"event": "connection_ended", "reason": reason},
    )
