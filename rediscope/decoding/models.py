"""Value envelope types produced by the decoding pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class CompressionKind(str, Enum):
    NONE = "none"
    GZIP = "gzip"
    ZSTD = "zstd"
    LZ4 = "lz4"
    SNAPPY = "snappy"


class ContentKind(str, Enum):
    JSON = "json"
    MSGPACK = "msgpack"
    PROTOBUF = "protobuf"
    IMAGE = "image"
    TEXT = "text"
    BINARY = "binary"


@dataclass(frozen=True, slots=True)
class DecodeNote:
    """A layer that recognised the bytes but failed to decode them."""

    layer: str
    message: str


@dataclass(frozen=True, slots=True)
class ContentMatch:
    """Result of the first content stage that accepted the payload."""

    kind: ContentKind
    text: str
    truncated: bool = False
    image_format: str | None = None
    image_size: tuple[int, int] | None = None
    value: Any = None


@dataclass(frozen=True, slots=True)
class ValueEnvelope:
    """Everything known about one stored value; replaced, never mutated."""

    raw: bytes
    compression: CompressionKind
    payload: bytes
    content: ContentKind
    text: str
    truncated: bool = False
    image_format: str | None = None
    image_size: tuple[int, int] | None = None
    notes: tuple[DecodeNote, ...] = ()
    hexdump: str | None = None

    @property
    def size(self) -> int:
        return len(self.raw)

    @property
    def compressed(self) -> bool:
        return self.compression is not CompressionKind.NONE


__all__ = [
    "CompressionKind",
    "ContentKind",
    "ContentMatch",
    "DecodeNote",
    "ValueEnvelope",
]
