"""Tests for compression sniffing and content detection."""

from __future__ import annotations

import gzip
import json
import struct

import msgpack
import pytest
import snappy

from rediscope.config import DisplaySettings
from rediscope.decoding import CompressionKind, ContentKind, ValueDecoder
from rediscope.decoding import hexdump
from rediscope.decoding.compression import GZIP_MAGIC, compress, sniff
from rediscope.decoding.content import PNG_SIGNATURE
from rediscope.decoding.jsonview import truncate_strings
from rediscope.errors import DecodeError

TEXT = "The quick brown fox jumps over the lazy dog. " * 20


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.parametrize(
    "kind",
    [CompressionKind.GZIP, CompressionKind.ZSTD, CompressionKind.LZ4, CompressionKind.SNAPPY],
)
def test_compressed_text_is_unwrapped(kind: CompressionKind) -> None:
    raw = compress(kind, TEXT.encode())

    envelope = ValueDecoder().decode(raw)

    assert sniff(raw) is kind
    assert envelope.compression is kind
    assert envelope.compressed is True
    assert envelope.payload == TEXT.encode()
    assert envelope.content is ContentKind.TEXT
    assert envelope.notes == ()


def test_raw_snappy_block_is_recognised() -> None:
    raw = snappy.compress(b"hello world " * 50)

    envelope = ValueDecoder().decode(raw)

    assert envelope.compression is CompressionKind.SNAPPY
    assert envelope.text == "hello world " * 50


def test_plain_text_is_not_mistaken_for_snappy() -> None:
    assert sniff(b"hello") is CompressionKind.NONE


def test_corrupt_gzip_falls_back_to_raw_bytes_with_note() -> None:
    raw = GZIP_MAGIC + b"\x08\x00garbage-not-deflate"

    envelope = ValueDecoder().decode(raw)

    assert envelope.compression is CompressionKind.NONE
    assert envelope.payload == raw
    assert envelope.notes[0].layer == "gzip"
    assert envelope.hexdump is not None


def test_gzipped_json_is_pretty_printed() -> None:
    envelope = ValueDecoder().decode(gzip.compress(b'{"a": 1, "b": [true, null]}'))

    assert envelope.compression is CompressionKind.GZIP
    assert envelope.content is ContentKind.JSON
    assert envelope.text == json.dumps({"a": 1, "b": [True, None]}, indent=2)


def test_long_json_strings_are_truncated_but_output_stays_valid() -> None:
    decoder = ValueDecoder(DisplaySettings(json_string_limit=10))
    long_key = "k" * 40

    envelope = decoder.decode(json.dumps({long_key: "x" * 50, "short": "ok"}).encode())

    assert envelope.truncated is True
    parsed = json.loads(envelope.text)
    assert parsed[long_key] == "x" * 10 + "…[+40 chars]"
    assert parsed["short"] == "ok"


def test_truncate_strings_reports_untouched_values() -> None:
    assert truncate_strings({"a": ["abc", 1]}, 5) == ({"a": ["abc", 1]}, False)


def test_json_lookalike_that_fails_to_parse_becomes_text_with_note() -> None:
    envelope = ValueDecoder().decode(b"{not json at all")

    assert envelope.content is ContentKind.TEXT
    assert envelope.text == "{not json at all"
    assert [note.layer for note in envelope.notes] == ["json"]


def test_msgpack_map_is_rendered_as_json() -> None:
    raw = msgpack.packb({"id": 7, "tags": ["a", "b"], "blob": b"\xff\x00"})

    envelope = ValueDecoder().decode(raw)

    assert envelope.content is ContentKind.MSGPACK
    assert json.loads(envelope.text) == {"id": 7, "tags": ["a", "b"], "blob": "0xff00"}
    assert envelope.hexdump is not None


def test_single_msgpack_scalar_byte_is_binary() -> None:
    envelope = ValueDecoder().decode(b"\x05")

    assert envelope.content is ContentKind.BINARY
    assert envelope.text.startswith("00000000  05")


def test_protobuf_wire_format_is_rendered_schemaless() -> None:
    envelope = ValueDecoder().decode(b"\x08\x96\x01\x12\x05hello")

    assert envelope.content is ContentKind.PROTOBUF
    assert envelope.text.splitlines() == ["1: 150", '2: "hello"']


def test_png_header_reports_dimensions() -> None:
    raw = PNG_SIGNATURE + b"\x00\x00\x00\rIHDR" + struct.pack(">II", 640, 480) + b"\x08\x06\x00\x00\x00"

    envelope = ValueDecoder().decode(raw)

    assert envelope.content is ContentKind.IMAGE
    assert envelope.image_format == "png"
    assert envelope.image_size == (640, 480)


def test_svg_document_is_an_image() -> None:
    raw = b'<?xml version="1.0"?>\n<svg xmlns="http://www.w3.org/2000/svg" width="1" height="1"></svg>'

    envelope = ValueDecoder().decode(raw)

    assert envelope.content is ContentKind.IMAGE
    assert envelope.image_format == "svg"


def test_non_utf8_bytes_are_binary() -> None:
    envelope = ValueDecoder().decode(bytes(range(0x80, 0x90)) + b"\x00\x01")

    assert envelope.content is ContentKind.BINARY
    assert envelope.hexdump == envelope.text


def test_hexdump_widens_rows_for_large_values() -> None:
    small = hexdump.render(bytes(20), wide_threshold=256)
    large = hexdump.render(bytes(300), wide_threshold=256)

    assert len(small.splitlines()) == 3
    assert len(large.splitlines()) == 19
    assert large.splitlines()[1].startswith("00000010  ")


def test_hexdump_notes_hidden_bytes() -> None:
    dump = hexdump.render(bytes(100), max_bytes=32)

    assert dump.splitlines()[-1] == "... 68 more bytes"


def test_failing_stage_is_recorded_and_pipeline_continues() -> None:
    def explode(data: bytes, settings: DisplaySettings) -> None:
        raise DecodeError("custom", "cannot decode")

    decoder = ValueDecoder(stages=(("custom", explode),))

    envelope = decoder.decode(b"anything")

    assert envelope.content is ContentKind.BINARY
    assert envelope.notes[0].layer == "custom"


@pytest.mark.anyio
async def test_decode_async_matches_sync_result() -> None:
    decoder = ValueDecoder()

    assert await decoder.decode_async(b'["x"]') == decoder.decode(b'["x"]')


def test_deeply_nested_json_falls_back_to_text() -> None:
    raw = b"[" * 100000 + b"]" * 100000

    envelope = ValueDecoder().decode(raw)

    assert envelope.content is ContentKind.TEXT
    assert envelope.notes[0].layer == "json"
    assert "nested too deeply" in envelope.notes[0].message


@pytest.mark.parametrize("raw", [b'{"a": NaN, "b": Infinity}', b"[-Infinity]", b"[1e999]"])
def test_non_standard_json_numbers_are_not_rendered_as_json(raw: bytes) -> None:
    envelope = ValueDecoder().decode(raw)

    assert envelope.content is ContentKind.TEXT
    assert envelope.text == raw.decode()
    assert envelope.notes[0].layer == "json"


def test_msgpack_non_finite_floats_render_as_strings() -> None:
    envelope = ValueDecoder().decode(msgpack.packb({"x": float("nan"), "y": float("inf")}))

    def _reject(name: str) -> None:
        raise ValueError(name)

    assert envelope.content is ContentKind.MSGPACK
    assert json.loads(envelope.text, parse_constant=_reject) == {"x": "nan", "y": "inf"}


def test_unexpected_stage_exception_becomes_a_note() -> None:
    def broken(data: bytes, settings: DisplaySettings) -> None:
        raise KeyError("boom")

    decoder = ValueDecoder(stages=(("broken", broken),))

    envelope = decoder.decode(b"\x00\x01")

    assert envelope.content is ContentKind.BINARY
    assert envelope.notes[0].layer == "broken"
    assert "KeyError" in envelope.notes[0].message


@pytest.mark.parametrize("raw", [b"\x02\x04ab", b"\x10\x0cshort-binary\x00"])
def test_short_blocks_are_not_taken_for_raw_snappy(raw: bytes) -> None:
    assert sniff(raw) is CompressionKind.NONE
