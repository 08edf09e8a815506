"""Shared utilities for the bridge modules."""

from __future__ import annotations


_IMAGE_MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}


def b64_image(b64_data: str, image_format: str = "png") -> dict[str, str]:
    """Return base64 image data as an MCP image content block dict.

    FastMCP can't serialize Image objects inside list[Any] returns,
    so we return the MCP-protocol image content block directly.
    """
    mime = _IMAGE_MIME_TYPES.get(image_format.lower(), "image/png")
    return {"type": "image", "data": b64_data, "mimeType": mime}


# Markers that indicate an error line in Godot console / log output.
ERROR_MARKERS = ("error", "exception", "traceback", "script error", "node not found")

# Godot prints "WARNING:" for push_warning() and engine warnings.
WARNING_MARKERS = ("warning", "warn:")


def is_error_line(line: str) -> bool:
    """Return True if *line* looks like an error in Godot output."""
    stripped = line.strip()
    if not stripped:
        return False
    lowered = stripped.lower()
    return any(m in lowered for m in ERROR_MARKERS)


def is_warning_line(line: str) -> bool:
    """Return True if *line* looks like a warning in Godot output."""
    lowered = line.strip().lower()
    if not lowered:
        return False
    return any(m in lowered for m in WARNING_MARKERS)


def hex_dump(data: bytes, width: int = 16) -> list[str]:
    """Format *data* as hex rows of *width* bytes each."""
    return [data[i:i + width].hex() for i in range(0, len(data), width)]
