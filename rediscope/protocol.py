"""RESP2/RESP3 command encoding and incremental reply parsing.

Replies map onto plain Python values:

* simple / verbatim strings -> ``str``
* errors (simple and blob) -> :class:`ErrorReply`
* integers and big numbers -> ``int``
* bulk strings -> ``bytes`` (``None`` for the null bulk)
* arrays -> ``list`` (``None`` for the null array)
* maps -> ``dict``; sets -> ``set`` (``list`` when members are unhashable)
* doubles -> ``float``; booleans -> ``bool``; nulls -> ``None``
* push frames -> :class:`PushReply`

The parser keeps partial frames buffered until they are complete, so a reply
may arrive across any number of socket reads.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from .errors import ConnectError, ProtocolError

CRLF = b"\r\n"
MAX_BULK_LENGTH = 512 * 1024 * 1024
MAX_AGGREGATE_LENGTH = 1 << 32
MAX_NESTING_DEPTH = 128


class _NeedMore:
    """Sentinel type returned by :meth:`RespParser.gets` for incomplete frames."""

    _instance: _NeedMore | None = None

    def __new__(cls) -> _NeedMore:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NEED_MORE"

    def __bool__(self) -> bool:
        return False


NEED_MORE = _NeedMore()


@dataclass(frozen=True, slots=True)
class ErrorReply:
    """Error returned by the server (``-ERR ...`` or ``!<len>``)."""

    message: str

    @property
    def code(self) -> str:
        return self.message.split(" ", 1)[0]

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class PushReply:
    """Out-of-band RESP3 push frame (pubsub messages, invalidations)."""

    kind: str
    data: tuple[Any, ...]


class _Incomplete(Exception):
    pass


def encode_command(*args: object) -> bytes:
    """Encode a command as a RESP array of bulk strings."""

    if not args:
        raise ValueError("Cannot encode an empty command.")
    parts: list[bytes] = [b"*%d\r\n" % len(args)]
    for arg in args:
        data = _to_bytes(arg)
        parts.append(b"$%d\r\n" % len(data))
        parts.append(data)
        parts.append(CRLF)
    return b"".join(parts)


def _to_bytes(value: object) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, bool):
        return b"1" if value else b"0"
    if isinstance(value, (int, float)):
        return repr(value).encode("ascii")
    raise TypeError(f"Unsupported argument type: {type(value).__name__}")


class RespParser:
    """Incremental RESP reply parser.

    Usage::

        parser = RespParser()
        parser.feed(chunk)
        reply = parser.gets()
        if reply is NEED_MORE:
            ...  # read more bytes and feed them
    """

    __slots__ = ("_buffer", "_pos")

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._pos = 0

    def feed(self, data: bytes) -> None:
        if data:
            self._buffer.extend(data)

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet consumed by a complete frame."""

        return len(self._buffer) - self._pos

    def reset(self) -> None:
        self._buffer.clear()
        self._pos = 0

    def gets(self) -> Any:
        """Return the next complete reply, or ``NEED_MORE``."""

        if self._pos >= len(self._buffer):
            return NEED_MORE
        start = self._pos
        try:
            value = self._parse()
        except _Incomplete:
            self._pos = start
            return NEED_MORE
        if self._pos > 4096 and self._pos * 2 > len(self._buffer):
            del self._buffer[: self._pos]
            self._pos = 0
        return value

    def _readline(self) -> bytes:
        end = self._buffer.find(CRLF, self._pos)
        if end == -1:
            raise _Incomplete
        line = bytes(self._buffer[self._pos : end])
        self._pos = end + 2
        return line

    def _read_exact(self, length: int) -> bytes:
        end = self._pos + length
        if end + 2 > len(self._buffer):
            raise _Incomplete
        if self._buffer[end : end + 2] != CRLF:
            raise ProtocolError("Bulk payload is not terminated by CRLF.")
        data = bytes(self._buffer[self._pos : end])
        self._pos = end + 2
        return data

    def _parse(self, depth: int = 0) -> Any:
        if depth > MAX_NESTING_DEPTH:
            raise ProtocolError(f"Reply nested deeper than {MAX_NESTING_DEPTH} levels.")
        while True:
            line = self._readline()
            if not line:
                raise ProtocolError("Empty reply line.")
            marker, body = line[:1], line[1:]
            if marker == b"|":
                # Attribute frames annotate the following reply; drop them.
                count = _parse_length(body, MAX_AGGREGATE_LENGTH)
                for _ in range(max(count, 0) * 2):
                    self._parse(depth + 1)
                continue
            return self._parse_typed(marker, body, depth)

    def _parse_typed(self, marker: bytes, body: bytes, depth: int) -> Any:
        if marker == b"+":
            return body.decode("utf-8", errors="replace")
        if marker == b"-":
            return ErrorReply(body.decode("utf-8", errors="replace"))
        if marker == b":" or marker == b"(":
            return _parse_int(body)
        if marker == b"$":
            length = _parse_length(body, MAX_BULK_LENGTH)
            if length == -1:
                return None
            return self._read_exact(length)
        if marker == b"*":
            length = _parse_length(body, MAX_AGGREGATE_LENGTH)
            if length == -1:
                return None
            return [self._parse(depth + 1) for _ in range(length)]
        if marker == b"%":
            length = _parse_length(body, MAX_AGGREGATE_LENGTH, nullable=False)
            result: dict[Any, Any] = {}
            for _ in range(length):
                key = self._parse(depth + 1)
                result[_hashable(key)] = self._parse(depth + 1)
            return result
        if marker == b"~":
            length = _parse_length(body, MAX_AGGREGATE_LENGTH, nullable=False)
            items = [self._parse(depth + 1) for _ in range(length)]
            try:
                return set(items)
            except TypeError:
                return items
        if marker == b">":
            length = _parse_length(body, MAX_AGGREGATE_LENGTH, nullable=False)
            items = [self._parse(depth + 1) for _ in range(length)]
            if not items:
                raise ProtocolError("Push frame without a kind.")
            kind = items[0]
            if isinstance(kind, bytes):
                kind = kind.decode("utf-8", errors="replace")
            return PushReply(kind=str(kind), data=tuple(items[1:]))
        if marker == b",":
            return _parse_double(body)
        if marker == b"#":
            if body == b"t":
                return True
            if body == b"f":
                return False
            raise ProtocolError(f"Invalid boolean frame: {body!r}")
        if marker == b"_":
            if body:
                raise ProtocolError(f"Invalid null frame: {body!r}")
            return None
        if marker == b"!":
            length = _parse_length(body, MAX_BULK_LENGTH, nullable=False)
            return ErrorReply(self._read_exact(length).decode("utf-8", errors="replace"))
        if marker == b"=":
            length = _parse_length(body, MAX_BULK_LENGTH, nullable=False)
            payload = self._read_exact(length)
            # Verbatim strings carry a three letter format prefix, e.g. "txt:".
            if len(payload) >= 4 and payload[3:4] == b":":
                payload = payload[4:]
            return payload.decode("utf-8", errors="replace")
        raise ProtocolError(f"Unknown reply type byte: {marker!r}")


def _parse_int(body: bytes) -> int:
    try:
        return int(body)
    except ValueError as exc:
        raise ProtocolError(f"Invalid integer frame: {body!r}") from exc


def _parse_double(body: bytes) -> float:
    try:
        return float(body)
    except ValueError as exc:
        raise ProtocolError(f"Invalid double frame: {body!r}") from exc


def _parse_length(body: bytes, limit: int, *, nullable: bool = True) -> int:
    if body == b"?":
        raise ProtocolError("Streamed aggregates are not supported.")
    digits = body[1:] if body.startswith(b"-") else body
    if not digits.isdigit():
        raise ProtocolError(f"Malformed length prefix: {body!r}")
    length = int(body)
    if length == -1 and nullable:
        return -1
    if length < 0 or length > limit:
        raise ProtocolError(f"Invalid length prefix: {length}")
    return length


def _hashable(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_hashable(item) for item in value)
    if isinstance(value, dict):
        return tuple((key, _hashable(item)) for key, item in value.items())
    if isinstance(value, set):
        return frozenset(value)
    return value


class ReadableStream(Protocol):
    async def read(self, n: int = ...) -> bytes: ...


async def read_reply(stream: ReadableStream, parser: RespParser) -> Any:
    """Read from ``stream`` until ``parser`` yields one complete reply."""

    while True:
        reply = parser.gets()
        if reply is not NEED_MORE:
            return reply
        chunk = await stream.read(65536)
        if not chunk:
            raise ConnectError("Connection closed by server.")
        parser.feed(chunk)


__all__ = [
    "ErrorReply",
    "NEED_MORE",
    "PushReply",
    "RespParser",
    "encode_command",
    "read_reply",
]
