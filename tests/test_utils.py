from godot_telemetry_bridge.records import RecordKind, classify_text, connection_ended_record
from godot_telemetry_bridge.utils import b64_image, hex_dump, is_error_line, is_warning_line


def test_b64_image_picks_mime_type_from_format():
    assert b64_image("abc") == {"type": "image", "data": "abc", "mimeType": "image/png"}
    assert b64_image("abc", "jpg")["mimeType"] == "image/jpeg"
    assert b64_image("abc", "WEBP")["mimeType"] == "image/webp"


def test_error_and_warning_lines():
    assert is_error_line("SCRIPT ERROR: Invalid call. Nonexistent function 'jump'")
    assert is_error_line("  Node not found: Player/Sprite")
    assert not is_error_line("")
    assert is_warning_line("WARNING: The local variable 'speed' is declared but never used")
    assert not is_warning_line("Player ready")


def test_classify_text_prefers_error_over_warning():
    assert classify_text("WARNING: error while loading") is RecordKind.ERROR
    assert classify_text("WARNING: deprecated") is RecordKind.WARNING
    assert classify_text("Level 2 loaded") is RecordKind.LOG


def test_connection_ended_record():
    record = connection_ended_record("closed by engine", offset=42)
    assert record.kind is RecordKind.UNKNOWN
    assert record.text == "connection ended: closed by engine"
    assert record.fields["event"] == "connection_ended"
    assert record.to_dict()["offset"] == 42


def test_hex_dump_rows():
    assert hex_dump(bytes(range(18)), width=8) == ["0001020304050607", "08090a0b0c0d0e0f", "1011"]
