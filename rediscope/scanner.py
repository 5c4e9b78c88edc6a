"""Cursor-driven, per-shard keyspace enumeration."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import logging
from typing import AsyncIterator

from .client import RedisClient
from .config import ScanSettings
from .errors import ProtocolError
from .models import NodeAddress

LOG = logging.getLogger(__name__)

_GLOB_SPECIAL = frozenset("*?[]\\")


class QueryMode(str, Enum):
    """How a search box query turns into a SCAN pattern."""

    ALL = "*"
    PREFIX = "^"
    EXACT = "="

    @classmethod
    def from_symbol(cls, symbol: str) -> QueryMode:
        for mode in cls:
            if mode.value == symbol:
                return mode
        return cls.ALL


def escape_glob(text: str) -> str:
    return "".join("\\" + char if char in _GLOB_SPECIAL else char for char in text)


def build_pattern(query: str, mode: QueryMode = QueryMode.ALL) -> str:
    """Translate user input into a MATCH pattern with glob characters escaped."""

    if not query:
        return "*"
    escaped = escape_glob(query)
    if mode is QueryMode.PREFIX:
        return f"{escaped}*"
    if mode is QueryMode.EXACT:
        return escaped
    return f"*{escaped}*"


@dataclass(frozen=True, slots=True)
class ScanCursor:
    """Resumption point of one enumeration; replaced after every step."""

    shards: tuple[NodeAddress, ...]
    pattern: str = "*"
    type_filter: str | None = None
    count: int = 500
    shard_index: int = 0
    cursor: int = 0

    @property
    def done(self) -> bool:
        return self.shard_index >= len(self.shards)

    @property
    def shard(self) -> NodeAddress | None:
        return None if self.done else self.shards[self.shard_index]


@dataclass(frozen=True, slots=True)
class ScanPage:
    keys: tuple[bytes, ...]
    cursor: ScanCursor

    @property
    def done(self) -> bool:
        return self.cursor.done


class KeyScanner:
    """Runs SCAN steps for callers that each own their cursor."""

    def __init__(self, client: RedisClient, settings: ScanSettings | None = None) -> None:
        self._client = client
        self._settings = settings or ScanSettings()

    def start(self, pattern: str = "*", type_filter: str | None = None, count: int | None = None) -> ScanCursor:
        return ScanCursor(
            shards=self._client.shards(),
            pattern=pattern or "*",
            type_filter=type_filter or None,
            count=count or self._settings.batch_size,
        )

    async def step(self, cursor: ScanCursor) -> ScanPage:
        """Issue one SCAN on the cursor's current shard."""

        shard = cursor.shard
        if shard is None:
            return ScanPage(keys=(), cursor=cursor)
        args: list[object] = ["SCAN", cursor.cursor, "MATCH", cursor.pattern, "COUNT", cursor.count]
        if cursor.type_filter:
            args += ["TYPE", cursor.type_filter]
        if self._client.is_cluster:
            reply = await self._client.execute_on(shard, *args)
        else:
            # Single-shard deployments route through the client so sentinel failovers are followed.
            reply = await self._client.execute(*args)
        if not isinstance(reply, list) or len(reply) != 2 or not isinstance(reply[1], list):
            raise ProtocolError(f"Unexpected SCAN reply: {reply!r}")
        try:
            server_cursor = int(reply[0])
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f"Invalid SCAN cursor: {reply[0]!r}") from exc
        keys = tuple(_as_bytes(key) for key in reply[1])
        LOG.debug("SCAN %s on %s returned %d key(s), cursor %d", cursor.pattern, shard, len(keys), server_cursor)
        if server_cursor == 0:
            next_cursor = replace(cursor, shard_index=cursor.shard_index + 1, cursor=0)
        else:
            next_cursor = replace(cursor, cursor=server_cursor)
        return ScanPage(keys=keys, cursor=next_cursor)

    async def fetch(self, cursor: ScanCursor, limit: int | None = None) -> ScanPage:
        """Accumulate steps until ``limit`` keys are collected or enumeration completes."""

        limit = limit or self._settings.page_limit
        collected: dict[bytes, None] = {}
        while not cursor.done and len(collected) < limit:
            page = await self.step(cursor)
            collected.update(dict.fromkeys(page.keys))
            cursor = page.cursor
        return ScanPage(keys=tuple(collected), cursor=cursor)

    async def iter_keys(
        self,
        pattern: str = "*",
        type_filter: str | None = None,
        count: int | None = None,
    ) -> AsyncIterator[bytes]:
        """Lazily yield every matching key once."""

        seen: set[bytes] = set()
        cursor = self.start(pattern, type_filter, count)
        while not cursor.done:
            page = await self.step(cursor)
            for key in page.keys:
                if key not in seen:
                    seen.add(key)
                    yield key
            cursor = page.cursor

    async def list_keys(
        self,
        query: str = "",
        mode: QueryMode = QueryMode.ALL,
        type_filter: str | None = None,
        cursor: ScanCursor | None = None,
        limit: int | None = None,
    ) -> ScanPage:
        """One page of keys for a search box query; pass the returned cursor to continue."""

        if mode is QueryMode.EXACT and query and cursor is None:
            return await self._lookup(query, type_filter)
        if cursor is None:
            cursor = self.start(build_pattern(query, mode), type_filter)
        return await self.fetch(cursor, limit)

    async def _lookup(self, key: str, type_filter: str | None) -> ScanPage:
        shards = self._client.shards()
        finished = ScanCursor(shards=shards, pattern=escape_glob(key), type_filter=type_filter, shard_index=len(shards))
        exists = await self._client.execute("EXISTS", key)
        if not exists:
            return ScanPage(keys=(), cursor=finished)
        if type_filter:
            kind = await self._client.execute("TYPE", key)
            if _as_bytes(kind).decode("utf-8", errors="replace").lower() != type_filter.lower():
                return ScanPage(keys=(), cursor=finished)
        return ScanPage(keys=(key.encode("utf-8"),), cursor=finished)


def _as_bytes(value: object) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return str(value).encode("utf-8")


__all__ = [
    "KeyScanner",
    "QueryMode",
    "ScanCursor",
    "ScanPage",
    "build_pattern",
    "escape_glob",
]
