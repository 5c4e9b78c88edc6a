"""Shared dataclasses used across connection/session modules."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


@dataclass(frozen=True, slots=True, order=True)
class NodeAddress:
    """A single Redis node endpoint."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, value: str) -> NodeAddress:
        """Parse ``host:port`` or the ``ip:port@cport`` form used by CLUSTER NODES."""

        addr = value.split("@", 1)[0]
        host, sep, port = addr.rpartition(":")
        if not sep or not host:
            raise ValueError(f"Invalid address format: {value}")
        try:
            number = int(port)
        except ValueError as exc:
            raise ValueError(f"Invalid port '{port}' in {value}") from exc
        if not 0 < number < 65536:
            raise ValueError(f"Invalid port '{port}' in {value}")
        return cls(host=host, port=number)


class SshAuthMethod(str, Enum):
    """Ways to authenticate against an SSH bastion."""

    PASSWORD = "password"
    PRIVATE_KEY = "private_key"
    AGENT = "agent"


@dataclass(frozen=True, slots=True)
class TlsSettings:
    """TLS options for a profile; ``verify=False`` skips certificate checks."""

    ca_file: str | None = None
    cert_file: str | None = None
    key_file: str | None = None
    verify: bool = True
    server_hostname: str | None = None


@dataclass(frozen=True, slots=True)
class SshTunnelSettings:
    """Bastion settings used to tunnel node connections."""

    host: str
    username: str
    port: int = 22
    auth: SshAuthMethod = SshAuthMethod.PRIVATE_KEY
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None
    known_hosts: str | None = None
    verify_host_key: bool = True

    @property
    def session_id(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class ConnectionProfile:
    """Runtime representation of a connection profile."""

    name: str
    host: str = "127.0.0.1"
    port: int = 6379
    seeds: tuple[NodeAddress, ...] = ()
    username: str | None = None
    password: str | None = None
    tls: TlsSettings | None = None
    ssh: SshTunnelSettings | None = None
    readonly: bool = False
    database: int = 0
    key_separator: str = ":"
    master_name: str | None = None
    connect_timeout: float = 5.0
    response_timeout: float = 30.0
    protocol: int = 2

    @property
    def entry_points(self) -> tuple[NodeAddress, ...]:
        """Addresses used to probe the deployment, seeds first."""

        if self.seeds:
            return self.seeds
        return (NodeAddress(self.host, self.port),)

    def with_database(self, database: int) -> ConnectionProfile:
        return replace(self, database=database)

    def with_readonly(self, readonly: bool) -> ConnectionProfile:
        return replace(self, readonly=readonly)


__all__ = [
    "ConnectionProfile",
    "NodeAddress",
    "SshAuthMethod",
    "SshTunnelSettings",
    "TlsSettings",
]
