"""Byte streams to Redis nodes over TCP, TLS, or an SSH tunnel."""

from __future__ import annotations

import asyncio
import io
import logging
import os
import select
import socket
import ssl
import threading
from typing import Protocol, runtime_checkable

import paramiko

from .errors import ConnectError
from .models import ConnectionProfile, NodeAddress, SshAuthMethod, SshTunnelSettings, TlsSettings

LOG = logging.getLogger(__name__)

READ_CHUNK = 65536


@runtime_checkable
class Stream(Protocol):
    """Bidirectional byte stream bound to one node."""

    async def read(self, n: int = READ_CHUNK) -> bytes:
        """Return up to ``n`` bytes; an empty result means EOF."""

    async def write(self, data: bytes) -> None:
        """Write all of ``data``."""

    async def close(self) -> None:
        """Close the stream (idempotent)."""


class AsyncioStream:
    """Stream backed by an asyncio reader/writer pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        label: str,
        response_timeout: float,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._label = label
        self._timeout = response_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, n: int = READ_CHUNK) -> bytes:
        try:
            return await asyncio.wait_for(self._reader.read(n), self._timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectError(f"Timed out waiting for a reply from {self._label}.") from exc
        except OSError as exc:
            raise ConnectError(f"Read from {self._label} failed: {exc}") from exc

    async def write(self, data: bytes) -> None:
        try:
            self._writer.write(data)
            await asyncio.wait_for(self._writer.drain(), self._timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectError(f"Timed out writing to {self._label}.") from exc
        except OSError as exc:
            raise ConnectError(f"Write to {self._label} failed: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ssl.SSLError):  # pragma: no cover - best effort cleanup
            pass


def build_ssl_context(settings: TlsSettings) -> ssl.SSLContext:
    """Create a client SSL context for verifying or skip-verify mode."""

    try:
        context = ssl.create_default_context(cafile=settings.ca_file)
        if not settings.verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        if settings.cert_file:
            context.load_cert_chain(settings.cert_file, settings.key_file)
    except (OSError, ssl.SSLError) as exc:
        raise ConnectError(f"Invalid TLS settings: {exc}") from exc
    return context


class StreamOpener:
    """Opens node streams for a profile and owns the SSH sessions they ride on."""

    def __init__(self) -> None:
        self._ssh_sessions: dict[str, paramiko.SSHClient] = {}
        self._ssh_lock = asyncio.Lock()

    async def __call__(self, profile: ConnectionProfile, address: NodeAddress) -> Stream:
        return await self.open(profile, address)

    async def open(self, profile: ConnectionProfile, address: NodeAddress) -> Stream:
        """Open a stream to ``address`` using the profile's transport settings."""

        context = build_ssl_context(profile.tls) if profile.tls is not None else None
        kwargs: dict[str, object] = {"ssl": context}
        if context is not None:
            kwargs["server_hostname"] = (profile.tls.server_hostname if profile.tls else None) or address.host
        if profile.ssh is not None:
            kwargs["sock"] = await self._open_tunnel(profile.ssh, address, profile.connect_timeout)
        else:
            kwargs["host"] = address.host
            kwargs["port"] = address.port
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(**kwargs),  # type: ignore[arg-type]
                profile.connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectError(f"Timed out connecting to {address}.") from exc
        except ssl.SSLError as exc:
            raise ConnectError(f"TLS handshake with {address} failed: {exc}") from exc
        except OSError as exc:
            raise ConnectError(f"Failed to connect to {address}: {exc}") from exc
        return AsyncioStream(reader, writer, label=str(address), response_timeout=profile.response_timeout)

    async def close(self) -> None:
        """Close every cached SSH session."""

        async with self._ssh_lock:
            sessions = list(self._ssh_sessions.values())
            self._ssh_sessions.clear()
        for client in sessions:
            await asyncio.to_thread(client.close)

    async def _open_tunnel(self, settings: SshTunnelSettings, address: NodeAddress, timeout: float) -> socket.socket:
        client = await self._ssh_session(settings, timeout)
        try:
            channel = await asyncio.wait_for(
                asyncio.to_thread(_open_channel, client, address, timeout),
                timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectError(f"Timed out opening an SSH channel to {address}.") from exc
        except (paramiko.SSHException, OSError) as exc:
            raise ConnectError(f"SSH channel to {address} failed: {exc}") from exc
        local, remote = socket.socketpair()
        bridge = threading.Thread(
            target=_pump,
            args=(remote, channel),
            name=f"rediscope-ssh-{address}",
            daemon=True,
        )
        bridge.start()
        return local

    async def _ssh_session(self, settings: SshTunnelSettings, timeout: float) -> paramiko.SSHClient:
        async with self._ssh_lock:
            cached = self._ssh_sessions.get(settings.session_id)
            if cached is not None:
                transport = cached.get_transport()
                if transport is not None and transport.is_active():
                    return cached
                self._ssh_sessions.pop(settings.session_id, None)
                await asyncio.to_thread(cached.close)
            try:
                client = await asyncio.wait_for(asyncio.to_thread(_connect_ssh, settings, timeout), timeout * 2)
            except asyncio.TimeoutError as exc:
                raise ConnectError(f"Timed out connecting to SSH host {settings.host}.") from exc
            except paramiko.BadHostKeyException as exc:
                raise ConnectError(f"SSH host key mismatch for {settings.host}: {exc}") from exc
            except paramiko.AuthenticationException as exc:
                raise ConnectError(f"SSH authentication failed for {settings.session_id}: {exc}") from exc
            except (paramiko.SSHException, OSError) as exc:
                raise ConnectError(f"SSH connection to {settings.host} failed: {exc}") from exc
            LOG.info("SSH session established: %s", settings.session_id)
            self._ssh_sessions[settings.session_id] = client
            return client


def _connect_ssh(settings: SshTunnelSettings, timeout: float) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.load_system_host_keys()
    if settings.known_hosts:
        client.load_host_keys(os.path.expanduser(settings.known_hosts))
    if settings.verify_host_key:
        client.set_missing_host_key_policy(paramiko.RejectPolicy())
    else:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    kwargs: dict[str, object] = {
        "hostname": settings.host,
        "port": settings.port,
        "username": settings.username,
        "timeout": timeout,
        "banner_timeout": timeout,
        "auth_timeout": timeout,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if settings.auth is SshAuthMethod.PASSWORD:
        if not settings.password:
            raise paramiko.AuthenticationException("Password authentication requires a password.")
        kwargs["password"] = settings.password
    elif settings.auth is SshAuthMethod.AGENT:
        kwargs["allow_agent"] = True
    else:
        if not settings.private_key:
            raise paramiko.AuthenticationException("Key authentication requires a private key.")
        path = os.path.expanduser(settings.private_key)
        if os.path.exists(path):
            kwargs["key_filename"] = path
            kwargs["passphrase"] = settings.passphrase
        else:
            kwargs["pkey"] = _load_private_key(settings.private_key, settings.passphrase)
    try:
        client.connect(**kwargs)  # type: ignore[arg-type]
    except BaseException:
        client.close()
        raise
    return client


def _load_private_key(text: str, passphrase: str | None) -> paramiko.PKey:
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.SSHException:
            continue
    raise paramiko.SSHException("Unsupported private key format.")


def _open_channel(client: paramiko.SSHClient, address: NodeAddress, timeout: float) -> paramiko.Channel:
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise paramiko.SSHException("SSH session is not active.")
    return transport.open_channel(
        "direct-tcpip",
        (address.host, address.port),
        ("127.0.0.1", 0),
        timeout=timeout,
    )


def _pump(sock: socket.socket, channel: paramiko.Channel) -> None:
    """Copy bytes between the local socket pair end and the SSH channel."""

    try:
        while True:
            readable, _, _ = select.select([sock, channel], [], [], 1.0)
            if sock in readable:
                data = sock.recv(READ_CHUNK)
                if not data:
                    break
                channel.sendall(data)
            if channel in readable:
                data = channel.recv(READ_CHUNK)
                if not data:
                    break
                sock.sendall(data)
    except (OSError, paramiko.SSHException) as exc:
        LOG.debug("SSH bridge closed: %s", exc)
    finally:
        channel.close()
        sock.close()


__all__ = [
    "AsyncioStream",
    "Stream",
    "StreamOpener",
    "build_ssl_context",
]
