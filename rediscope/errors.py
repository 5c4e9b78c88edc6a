"""Error taxonomy shared by the transport, protocol, and session layers."""

from __future__ import annotations


class RediscopeError(RuntimeError):
    """Base error for every failure raised by the engine."""


class ConnectError(RediscopeError):
    """Raised when a node cannot be reached (DNS, TCP, TLS, SSH, timeouts)."""


class ProtocolError(RediscopeError):
    """Raised on malformed frames or replies with an unexpected shape."""


class ReadOnlyViolation(RediscopeError):
    """Raised client-side when a mutating command is issued under a read-only profile."""

    def __init__(self, command: str) -> None:
        super().__init__(f"'{command}' is not allowed on a read-only connection.")
        self.command = command


class RedirectLoop(RediscopeError):
    """Raised when cluster redirects exceed the retry budget."""


class DecodeError(RediscopeError):
    """Raised by a single decoding layer; always recovered by the pipeline."""

    def __init__(self, layer: str, message: str) -> None:
        super().__init__(f"{layer}: {message}")
        self.layer = layer


class ResponseError(RediscopeError):
    """Raised when the server answers a command with an error reply."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.code = message.split(" ", 1)[0] if message else ""


__all__ = [
    "ConnectError",
    "DecodeError",
    "ProtocolError",
    "ReadOnlyViolation",
    "RedirectLoop",
    "RediscopeError",
    "ResponseError",
]
