"""Two-layer value decoding: decompression, then content detection."""

from __future__ import annotations

import asyncio
import logging

from ..config import DisplaySettings
from ..errors import DecodeError
from . import hexdump
from .compression import decompress
from .content import STAGES, Stage, detect
from .models import CompressionKind, ContentKind, DecodeNote, ValueEnvelope

LOG = logging.getLogger(__name__)

_HEX_KINDS = frozenset({ContentKind.BINARY, ContentKind.PROTOBUF, ContentKind.MSGPACK, ContentKind.IMAGE})


class ValueDecoder:
    """Turns raw value bytes into a :class:`ValueEnvelope`; never raises on bad data."""

    def __init__(
        self,
        settings: DisplaySettings | None = None,
        stages: tuple[tuple[str, Stage], ...] = STAGES,
    ) -> None:
        self._settings = settings or DisplaySettings()
        self._stages = stages

    @property
    def settings(self) -> DisplaySettings:
        return self._settings

    def decode(self, raw: bytes) -> ValueEnvelope:
        raw = bytes(raw)
        notes: list[DecodeNote] = []
        try:
            compression, payload = decompress(raw)
        except DecodeError as exc:
            LOG.debug("Decompression failed, showing raw bytes: %s", exc)
            notes.append(DecodeNote(exc.layer, str(exc)))
            compression, payload = CompressionKind.NONE, raw
        match, content_notes = detect(payload, self._settings, self._stages)
        notes.extend(content_notes)
        if match.kind is ContentKind.BINARY:
            dump = match.text
        elif match.kind in _HEX_KINDS:
            dump = hexdump.render(
                payload,
                wide_threshold=self._settings.hex_wide_threshold,
                max_bytes=self._settings.hex_max_bytes,
            )
        else:
            dump = None
        return ValueEnvelope(
            raw=raw,
            compression=compression,
            payload=payload,
            content=match.kind,
            text=match.text,
            truncated=match.truncated,
            image_format=match.image_format,
            image_size=match.image_size,
            notes=tuple(notes),
            hexdump=dump,
        )

    async def decode_async(self, raw: bytes) -> ValueEnvelope:
        """Decode in a worker thread so the event loop keeps serving scans."""

        return await asyncio.to_thread(self.decode, raw)


__all__ = ["ValueDecoder"]
