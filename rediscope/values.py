"""Per-key inspection: type, TTL, size and decoded value envelopes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any

from .client import RedisClient
from .config import DisplaySettings
from .decoding import ValueDecoder, ValueEnvelope
from .errors import ProtocolError

LOG = logging.getLogger(__name__)


class KeyType(str, Enum):
    STRING = "string"
    LIST = "list"
    SET = "set"
    ZSET = "zset"
    HASH = "hash"
    STREAM = "stream"
    VECTORSET = "vectorset"
    OTHER = "other"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> KeyType:
        text = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)
        try:
            return cls(text.lower())
        except ValueError:
            return cls.OTHER


_SIZE_COMMANDS = {
    KeyType.STRING: "STRLEN",
    KeyType.LIST: "LLEN",
    KeyType.SET: "SCARD",
    KeyType.ZSET: "ZCARD",
    KeyType.HASH: "HLEN",
    KeyType.STREAM: "XLEN",
    KeyType.VECTORSET: "VCARD",
}


@dataclass(frozen=True, slots=True)
class CollectionEntry:
    """One element of a collection value; ``field`` for hashes, ``score`` for sorted sets."""

    value: ValueEnvelope
    field: bytes | None = None
    score: float | None = None
    index: int | None = None


@dataclass(frozen=True, slots=True)
class KeyInspection:
    key: bytes
    key_type: KeyType
    ttl_ms: int | None = None
    size: int | None = None
    value: ValueEnvelope | None = None
    entries: tuple[CollectionEntry, ...] = ()
    has_more: bool = False

    @property
    def exists(self) -> bool:
        return self.key_type is not KeyType.NONE


class ValueFetcher:
    """Loads a key's metadata and first page of content through a client."""

    def __init__(
        self,
        client: RedisClient,
        decoder: ValueDecoder | None = None,
        settings: DisplaySettings | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or (decoder.settings if decoder else DisplaySettings())
        self._decoder = decoder or ValueDecoder(self._settings)

    async def fetch(self, key: bytes | str) -> KeyInspection:
        key_bytes = key.encode("utf-8") if isinstance(key, str) else bytes(key)
        key_type = KeyType.parse(await self._client.execute("TYPE", key_bytes))
        if key_type is KeyType.NONE:
            return KeyInspection(key_bytes, KeyType.NONE)
        pttl = int(await self._client.execute("PTTL", key_bytes))
        if pttl == -2:
            return KeyInspection(key_bytes, KeyType.NONE)
        ttl_ms = None if pttl < 0 else pttl
        size = await self._size(key_type, key_bytes)
        if key_type is KeyType.STRING:
            raw = await self._client.execute("GET", key_bytes)
            if raw is None:
                return KeyInspection(key_bytes, KeyType.NONE)
            envelope = await self._decoder.decode_async(raw)
            return KeyInspection(key_bytes, key_type, ttl_ms, size, value=envelope)
        loader = {
            KeyType.HASH: self._hash_entries,
            KeyType.SET: self._set_entries,
            KeyType.ZSET: self._zset_entries,
            KeyType.LIST: self._list_entries,
        }.get(key_type)
        if loader is None:
            return KeyInspection(key_bytes, key_type, ttl_ms, size)
        entries = await loader(key_bytes)
        has_more = size is not None and size > len(entries)
        return KeyInspection(key_bytes, key_type, ttl_ms, size, entries=entries, has_more=has_more)

    async def _size(self, key_type: KeyType, key: bytes) -> int | None:
        command = _SIZE_COMMANDS.get(key_type)
        if command is None:
            return None
        reply = await self._client.execute(command, key)
        return int(reply) if isinstance(reply, int) else None

    async def _hash_entries(self, key: bytes) -> tuple[CollectionEntry, ...]:
        flat = await self._scan_page("HSCAN", key)
        pairs = list(zip(flat[0::2], flat[1::2]))[: self._page_size]
        return tuple([CollectionEntry(await self._decode(value), field=_as_bytes(field)) for field, value in pairs])

    async def _set_entries(self, key: bytes) -> tuple[CollectionEntry, ...]:
        members = (await self._scan_page("SSCAN", key))[: self._page_size]
        return tuple([CollectionEntry(await self._decode(member)) for member in members])

    async def _zset_entries(self, key: bytes) -> tuple[CollectionEntry, ...]:
        reply = await self._client.execute("ZRANGE", key, 0, self._page_size - 1, "WITHSCORES")
        if not isinstance(reply, list):
            raise ProtocolError(f"Unexpected ZRANGE reply: {reply!r}")
        if reply and isinstance(reply[0], list):
            pairs = [(item[0], item[1]) for item in reply]
        else:
            pairs = list(zip(reply[0::2], reply[1::2]))
        return tuple(
            [CollectionEntry(await self._decode(member), score=float(score)) for member, score in pairs]
        )

    async def _list_entries(self, key: bytes) -> tuple[CollectionEntry, ...]:
        reply = await self._client.execute("LRANGE", key, 0, self._page_size - 1)
        if not isinstance(reply, list):
            raise ProtocolError(f"Unexpected LRANGE reply: {reply!r}")
        return tuple([CollectionEntry(await self._decode(item), index=index) for index, item in enumerate(reply)])

    async def _scan_page(self, command: str, key: bytes) -> list[Any]:
        reply = await self._client.execute(command, key, 0, "COUNT", self._page_size)
        if not isinstance(reply, list) or len(reply) != 2 or not isinstance(reply[1], list):
            raise ProtocolError(f"Unexpected {command} reply: {reply!r}")
        return reply[1]

    async def _decode(self, value: Any) -> ValueEnvelope:
        return await self._decoder.decode_async(_as_bytes(value))

    @property
    def _page_size(self) -> int:
        return self._settings.collection_page_size


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return str(value).encode("utf-8")


__all__ = ["CollectionEntry", "KeyInspection", "KeyType", "ValueFetcher"]
