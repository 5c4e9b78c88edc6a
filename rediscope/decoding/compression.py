"""Compression sniffing by magic bytes, plus the matching (de)compressors."""

from __future__ import annotations

import gzip
import zlib

import lz4.frame
import snappy
import zstandard

from ..errors import DecodeError
from .models import CompressionKind

GZIP_MAGIC = b"\x1f\x8b"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
LZ4_FRAME_MAGIC = b"\x04\x22\x4d\x18"
SNAPPY_FRAMED_MAGIC = b"\xff\x06\x00\x00sNaPpY"

_MAGICS: tuple[tuple[bytes, CompressionKind], ...] = (
    (GZIP_MAGIC, CompressionKind.GZIP),
    (ZSTD_MAGIC, CompressionKind.ZSTD),
    (LZ4_FRAME_MAGIC, CompressionKind.LZ4),
    (SNAPPY_FRAMED_MAGIC, CompressionKind.SNAPPY),
)

_FAILURES = (
    OSError,
    EOFError,
    ValueError,
    RuntimeError,
    zlib.error,
    zstandard.ZstdError,
    snappy.UncompressError,
)

_TEXT_CONTROL = frozenset(b"\t\n\r")

# Raw snappy has no magic bytes, so only longer blocks that actually shrank are accepted.
RAW_SNAPPY_MIN_BYTES = 16


def is_printable(data: bytes) -> bool:
    """True for valid UTF-8 without control characters other than whitespace."""

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return all(char >= " " or ord(char) in _TEXT_CONTROL for char in text) and "\x7f" not in text


def sniff(data: bytes) -> CompressionKind:
    """Identify the compression format of ``data`` without decompressing."""

    for magic, kind in _MAGICS:
        if data.startswith(magic):
            return kind
    if _looks_like_raw_snappy(data):
        return CompressionKind.SNAPPY
    return CompressionKind.NONE


def _looks_like_raw_snappy(data: bytes) -> bool:
    if len(data) < RAW_SNAPPY_MIN_BYTES or is_printable(data):
        return False
    declared = _varint_prefix(data)
    if declared is None or declared < len(data):
        return False
    return bool(snappy.isValidCompressed(data))


def _varint_prefix(data: bytes) -> int | None:
    """Uncompressed length from the varint header of a raw snappy block."""

    result = 0
    for index, byte in enumerate(data[:5]):
        result |= (byte & 0x7F) << (7 * index)
        if not byte & 0x80:
            return result
    return None


def decompress(data: bytes) -> tuple[CompressionKind, bytes]:
    """Return ``(kind, payload)``; raises DecodeError when a matched format fails."""

    kind = sniff(data)
    if kind is CompressionKind.NONE:
        return kind, data
    try:
        return kind, _DECOMPRESSORS[kind](data)
    except _FAILURES as exc:
        raise DecodeError(kind.value, f"{kind.value} data is corrupt: {exc}") from exc


def compress(kind: CompressionKind, data: bytes) -> bytes:
    """Compress ``data`` in the format identified by ``kind`` (snappy uses framing)."""

    if kind is CompressionKind.NONE:
        return data
    if kind is CompressionKind.GZIP:
        return gzip.compress(data)
    if kind is CompressionKind.ZSTD:
        return zstandard.ZstdCompressor().compress(data)
    if kind is CompressionKind.LZ4:
        return lz4.frame.compress(data)
    return snappy.StreamCompressor().add_chunk(data)


def _gunzip(data: bytes) -> bytes:
    return gzip.decompress(data)


def _unzstd(data: bytes) -> bytes:
    # decompressobj copes with frames that omit the content size.
    return zstandard.ZstdDecompressor().decompressobj().decompress(data)


def _unlz4(data: bytes) -> bytes:
    return lz4.frame.decompress(data)


def _unsnappy(data: bytes) -> bytes:
    if data.startswith(SNAPPY_FRAMED_MAGIC):
        decompressor = snappy.StreamDecompressor()
        payload = decompressor.decompress(data)
        decompressor.flush()
        return payload
    return snappy.uncompress(data)


_DECOMPRESSORS = {
    CompressionKind.GZIP: _gunzip,
    CompressionKind.ZSTD: _unzstd,
    CompressionKind.LZ4: _unlz4,
    CompressionKind.SNAPPY: _unsnappy,
}


__all__ = [
    "GZIP_MAGIC",
    "LZ4_FRAME_MAGIC",
    "SNAPPY_FRAMED_MAGIC",
    "ZSTD_MAGIC",
    "compress",
    "decompress",
    "is_printable",
    "sniff",
]
