"""Value decoding pipeline: compression sniffing and content detection."""

from .models import CompressionKind, ContentKind, ContentMatch, DecodeNote, ValueEnvelope
from .pipeline import ValueDecoder

__all__ = [
    "CompressionKind",
    "ContentKind",
    "ContentMatch",
    "DecodeNote",
    "ValueDecoder",
    "ValueEnvelope",
]
