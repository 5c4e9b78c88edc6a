"""Content detection as an ordered chain of predicate-plus-decoder stages.

Each stage either returns a :class:`ContentMatch`, returns ``None`` when the
bytes are not in its format, or raises :class:`DecodeError` when the format was
recognised but could not be decoded. :func:`detect` walks the chain in order
and always ends with the binary stage, which accepts anything.
"""

from __future__ import annotations

import json
import logging
import struct
from typing import Any, Callable

from google.protobuf import empty_pb2
from google.protobuf.message import DecodeError as ProtobufDecodeError
from google.protobuf.unknown_fields import UnknownFieldSet
import msgpack

from ..config import DisplaySettings
from ..errors import DecodeError
from . import hexdump, jsonview
from .compression import is_printable
from .models import ContentKind, ContentMatch, DecodeNote

LOG = logging.getLogger(__name__)

Stage = Callable[[bytes, DisplaySettings], "ContentMatch | None"]

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SIGNATURE = b"\xff\xd8\xff"
GIF_SIGNATURES = (b"GIF87a", b"GIF89a")

# Field numbers above this are treated as noise rather than a real schema.
MAX_PROTOBUF_FIELD = 1 << 16
MAX_PROTOBUF_DEPTH = 8

_MSGPACK_CONTAINER_BYTES = frozenset(range(0x80, 0xA0)) | {0xDC, 0xDD, 0xDE, 0xDF}

_WIRE_FIXED64 = 1
_WIRE_LENGTH = 2
_WIRE_GROUP = 3
_WIRE_FIXED32 = 5


def detect_image(data: bytes, settings: DisplaySettings) -> ContentMatch | None:
    fmt: str | None = None
    size: tuple[int, int] | None = None
    if data.startswith(PNG_SIGNATURE):
        fmt = "png"
        if len(data) >= 24 and data[12:16] == b"IHDR":
            size = struct.unpack(">II", data[16:24])
    elif data.startswith(JPEG_SIGNATURE):
        fmt = "jpeg"
    elif data.startswith(GIF_SIGNATURES):
        fmt = "gif"
        if len(data) >= 10:
            size = struct.unpack("<HH", data[6:10])
    elif len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        fmt = "webp"
    elif _looks_like_svg(data):
        fmt = "svg"
    if fmt is None:
        return None
    text = f"{fmt.upper()} image, {len(data)} bytes"
    if size is not None:
        text = f"{fmt.upper()} image, {size[0]}x{size[1]}, {len(data)} bytes"
    return ContentMatch(ContentKind.IMAGE, text, image_format=fmt, image_size=size)


def _looks_like_svg(data: bytes) -> bool:
    head = data[:1024].lstrip()
    if not head.startswith(b"<"):
        return False
    if head.startswith(b"<?xml"):
        head = head[head.find(b"?>") + 2 :].lstrip() if b"?>" in head else b""
    return head.startswith(b"<svg") or (head.startswith(b"<!DOCTYPE svg"))


def detect_json(data: bytes, settings: DisplaySettings) -> ContentMatch | None:
    stripped = data.lstrip()
    if stripped[:1] not in (b"{", b"["):
        return None
    try:
        value = json.loads(data.decode("utf-8"), parse_constant=_reject_constant)
        text, truncated = jsonview.render(value, settings.json_string_limit)
    except (UnicodeDecodeError, ValueError) as exc:
        raise DecodeError("json", f"Looks like JSON but does not parse: {exc}") from exc
    except RecursionError as exc:
        raise DecodeError("json", "JSON is nested too deeply to display") from exc
    return ContentMatch(ContentKind.JSON, text, truncated=truncated, value=value)


def detect_msgpack(data: bytes, settings: DisplaySettings) -> ContentMatch | None:
    # Only container top-levels; scalar msgpack bytes collide with almost anything.
    if not data or data[0] not in _MSGPACK_CONTAINER_BYTES:
        return None
    try:
        value = msgpack.unpackb(data, raw=False, strict_map_key=False)
    except (ValueError, TypeError, RecursionError, msgpack.UnpackException):
        return None
    try:
        text, truncated = jsonview.render(jsonview.jsonable(value), settings.json_string_limit)
    except RecursionError as exc:
        raise DecodeError("msgpack", "MessagePack value is nested too deeply to display") from exc
    return ContentMatch(ContentKind.MSGPACK, text, truncated=truncated, value=value)


def detect_protobuf(data: bytes, settings: DisplaySettings) -> ContentMatch | None:
    if not data or is_printable(data):
        return None
    fields = _parse_protobuf(data)
    if fields is None:
        return None
    lines = _render_fields(fields, 0, settings.json_string_limit)
    return ContentMatch(ContentKind.PROTOBUF, "\n".join(lines))


def detect_text(data: bytes, settings: DisplaySettings) -> ContentMatch | None:
    if not is_printable(data):
        return None
    text = data.decode("utf-8")
    return ContentMatch(ContentKind.TEXT, text)


def render_binary(data: bytes, settings: DisplaySettings) -> ContentMatch:
    text = hexdump.render(data, wide_threshold=settings.hex_wide_threshold, max_bytes=settings.hex_max_bytes)
    return ContentMatch(ContentKind.BINARY, text, truncated=len(data) > settings.hex_max_bytes)


STAGES: tuple[tuple[str, Stage], ...] = (
    ("image", detect_image),
    ("json", detect_json),
    ("msgpack", detect_msgpack),
    ("protobuf", detect_protobuf),
    ("text", detect_text),
)


def detect(
    data: bytes,
    settings: DisplaySettings | None = None,
    stages: tuple[tuple[str, Stage], ...] = STAGES,
) -> tuple[ContentMatch, list[DecodeNote]]:
    """Run the stages in precedence order; binary is the terminal fallback."""

    settings = settings or DisplaySettings()
    notes: list[DecodeNote] = []
    for name, stage in stages:
        try:
            match = stage(data, settings)
        except DecodeError as exc:
            notes.append(DecodeNote(exc.layer or name, str(exc)))
            continue
        except Exception as exc:
            LOG.warning("Content stage %s failed unexpectedly: %s", name, exc)
            notes.append(DecodeNote(name, f"{name}: {type(exc).__name__}: {exc}"))
            continue
        if match is not None:
            return match, notes
    return render_binary(data, settings), notes


def _parse_protobuf(data: bytes) -> list[tuple[int, int, object]] | None:
    message = empty_pb2.Empty()
    try:
        consumed = message.ParseFromString(data)
    except (ProtobufDecodeError, RuntimeError, ValueError):
        return None
    if consumed is not None and consumed != len(data):
        return None
    fields = [(field.field_number, field.wire_type, field.data) for field in UnknownFieldSet(message)]
    if not fields or any(number > MAX_PROTOBUF_FIELD for number, _, _ in fields):
        return None
    return fields


def _render_fields(fields: list[tuple[int, int, object]], depth: int, limit: int) -> list[str]:
    indent = "  " * depth
    lines: list[str] = []
    for number, wire_type, value in fields:
        if wire_type == _WIRE_GROUP:
            nested = [(field.field_number, field.wire_type, field.data) for field in value]  # type: ignore[attr-defined]
            lines.append(f"{indent}{number} {{")
            lines.extend(_render_fields(nested, depth + 1, limit))
            lines.append(f"{indent}}}")
        elif wire_type == _WIRE_LENGTH:
            lines.extend(_render_length_delimited(number, bytes(value), depth, limit))  # type: ignore[arg-type]
        elif wire_type == _WIRE_FIXED32:
            lines.append(f"{indent}{number}: 0x{int(value):08x}")  # type: ignore[call-overload]
        elif wire_type == _WIRE_FIXED64:
            lines.append(f"{indent}{number}: 0x{int(value):016x}")  # type: ignore[call-overload]
        else:
            lines.append(f"{indent}{number}: {value}")
    return lines


def _render_length_delimited(number: int, payload: bytes, depth: int, limit: int) -> list[str]:
    indent = "  " * depth
    if payload and not is_printable(payload) and depth < MAX_PROTOBUF_DEPTH:
        nested = _parse_protobuf(payload)
        if nested is not None:
            return [f"{indent}{number} {{", *_render_fields(nested, depth + 1, limit), f"{indent}}}"]
    if is_printable(payload):
        text, _ = jsonview.truncate_strings(payload.decode("utf-8"), limit)
        return [f"{indent}{number}: {json.dumps(text, ensure_ascii=False)}"]
    return [f"{indent}{number}: 0x{payload.hex()}"]


__all__ = [
    "STAGES",
    "Stage",
    "detect",
    "detect_image",
    "detect_json",
    "detect_msgpack",
    "detect_protobuf",
    "detect_text",
    "render_binary",
]
