"""Session manager exposing connection state and browsing requests to the UI."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable

from .client import AccessMode, RedisClient
from .config import AppConfig, ConnectionProfileConfig
from .errors import ConnectError, RediscopeError
from .models import ConnectionProfile, NodeAddress, SshAuthMethod, SshTunnelSettings, TlsSettings
from .scanner import KeyScanner, QueryMode, ScanCursor, ScanPage
from .topology import TopologyStatus
from .values import KeyInspection, ValueFetcher

LOG = logging.getLogger(__name__)

SessionListener = Callable[["SessionState"], None]
ClientFactory = Callable[[ConnectionProfile, AppConfig], Awaitable[RedisClient]]


@dataclass(frozen=True, slots=True)
class SessionState:
    """Current session snapshot (active profile + deployment status)."""

    profile: ConnectionProfile
    connected: bool
    refreshed_at: datetime
    topology: TopologyStatus | None = None
    access_mode: AccessMode | None = None
    version: str | None = None
    dbsize: int | None = None
    status: str = "Connected"
    latency_ms: int | None = None
    last_error: str | None = None


async def _open_client(profile: ConnectionProfile, config: AppConfig) -> RedisClient:
    return await RedisClient.open(profile, config)


class SessionManager:
    """Owns the active client and turns UI requests into engine calls."""

    def __init__(self, *, config: AppConfig, client_factory: ClientFactory | None = None) -> None:
        self._config = config
        self._profiles = tuple(profile_from_config(entry) for entry in config.profiles)
        self._listeners: set[SessionListener] = set()
        self._state: SessionState | None = None
        self._client: RedisClient | None = None
        self._scanner: KeyScanner | None = None
        self._fetcher: ValueFetcher | None = None
        self._client_factory = client_factory or _open_client

    @property
    def profiles(self) -> tuple[ConnectionProfile, ...]:
        """Profiles available in the current config."""

        return self._profiles

    @property
    def state(self) -> SessionState | None:
        return self._state

    @property
    def client(self) -> RedisClient | None:
        return self._client

    @property
    def active_profile_name(self) -> str | None:
        if self._state:
            return self._state.profile.name
        return None

    async def connect_default(self) -> SessionState | None:
        """Connect the configured active profile, or the first one."""

        name = self._config.active_profile or (self._profiles[0].name if self._profiles else None)
        if name is None:
            return None
        return await self.connect(name)

    async def connect(self, name: str) -> SessionState:
        """Activate the requested profile."""

        return await self._activate(self._profile_by_name(name))

    async def refresh_active_profile(self) -> SessionState | None:
        """Re-resolve topology and refresh latency / key counts for the active profile."""

        if not self._state or self._client is None:
            return None
        try:
            await self._client.resolver.refresh()
            await self._publish(self._state.profile)
        except RediscopeError as exc:
            self._fail(self._state.profile, exc, connected=True, status="Refresh failed")
            raise
        return self._state

    async def list_keys(
        self,
        query: str = "",
        mode: QueryMode = QueryMode.ALL,
        type_filter: str | None = None,
        cursor: ScanCursor | None = None,
        limit: int | None = None,
    ) -> ScanPage:
        """One page of keys; pass the returned cursor back to continue."""

        scanner = self._require(self._scanner)
        return await scanner.list_keys(query, mode, type_filter, cursor, limit)

    async def fetch_value(self, key: bytes | str) -> KeyInspection:
        fetcher = self._require(self._fetcher)
        return await fetcher.fetch(key)

    async def toggle_readonly(self) -> SessionState:
        """Flip the read-only flag of the active profile and reconnect."""

        state = self._require(self._state)
        profile = state.profile.with_readonly(not state.profile.readonly)
        return await self._activate(profile)

    async def select_database(self, index: int) -> SessionState:
        """Switch database index and reconnect; clusters only have database 0."""

        state = self._require(self._state)
        if index < 0:
            raise ValueError(f"Invalid database index: {index}")
        if self._client is not None and self._client.is_cluster:
            raise ValueError("Cluster deployments only support database 0.")
        return await self._activate(state.profile.with_database(index))

    async def disconnect(self) -> None:
        await self._close_client()
        if self._state:
            self._state = replace(
                self._state,
                connected=False,
                status="Disconnected",
                refreshed_at=datetime.now(tz=timezone.utc),
            )
            self._notify()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to session updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        if self._state:
            listener(self._state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def _activate(self, profile: ConnectionProfile) -> SessionState:
        await self._close_client()
        try:
            client = await self._client_factory(profile, self._config)
        except RediscopeError as exc:
            self._fail(profile, exc, connected=False, status="Connection failed")
            raise
        self._client = client
        self._scanner = KeyScanner(client, self._config.scan)
        self._fetcher = ValueFetcher(client, settings=self._config.display)
        self._replace_profile(profile)
        try:
            await self._publish(profile)
        except RediscopeError as exc:
            self._fail(profile, exc, connected=True, status="Connected with errors")
            raise
        return self._state  # type: ignore[return-value]

    async def _publish(self, profile: ConnectionProfile) -> None:
        client = self._require(self._client)
        latency = await client.ping()
        dbsize = await client.dbsize()
        self._state = SessionState(
            profile=profile,
            connected=True,
            refreshed_at=datetime.now(tz=timezone.utc),
            topology=client.status(),
            access_mode=client.access_mode,
            version=client.version,
            dbsize=dbsize,
            status=_status_text(client),
            latency_ms=int(round(latency)),
        )
        self._notify()

    def _fail(self, profile: ConnectionProfile, exc: Exception, *, connected: bool, status: str) -> None:
        LOG.warning("%s: %s", status, exc)
        topology = self._client.status() if self._client is not None and connected else None
        self._state = SessionState(
            profile=profile,
            connected=connected,
            refreshed_at=datetime.now(tz=timezone.utc),
            topology=topology,
            status=status,
            last_error=str(exc),
        )
        self._notify()

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        self._scanner = None
        self._fetcher = None
        if client is not None:
            await client.close()

    def _replace_profile(self, profile: ConnectionProfile) -> None:
        self._profiles = tuple(profile if entry.name == profile.name else entry for entry in self._profiles)

    def _profile_by_name(self, name: str) -> ConnectionProfile:
        for profile in self._profiles:
            if profile.name == name:
                return profile
        raise ValueError(f"Profile '{name}' not found.")

    @staticmethod
    def _require(value):  # type: ignore[no-untyped-def]
        if value is None:
            raise ConnectError("No active connection.")
        return value

    def _notify(self) -> None:
        if not self._state:
            return
        for listener in tuple(self._listeners):
            listener(self._state)


def _status_text(client: RedisClient) -> str:
    parts = [client.status().summary]
    if client.version:
        parts.append(f"v{client.version}")
    if client.access_mode is not AccessMode.READ_WRITE:
        parts.append(client.access_mode.value.replace("_", " "))
    return "Connected: " + ", ".join(parts)


def profile_from_config(profile: ConnectionProfileConfig) -> ConnectionProfile:
    """Build the runtime profile from its config entry."""

    tls = TlsSettings(**profile.tls.model_dump()) if profile.tls is not None else None
    ssh = None
    if profile.ssh is not None:
        values = profile.ssh.model_dump()
        values["auth"] = SshAuthMethod(values["auth"])
        ssh = SshTunnelSettings(**values)
    return ConnectionProfile(
        name=profile.name,
        host=profile.host,
        port=profile.port,
        seeds=tuple(NodeAddress.parse(seed) for seed in profile.seeds),
        username=profile.username,
        password=profile.password,
        tls=tls,
        ssh=ssh,
        readonly=profile.readonly,
        database=profile.database,
        key_separator=profile.key_separator,
        master_name=profile.master_name,
        connect_timeout=profile.connect_timeout,
        response_timeout=profile.response_timeout,
        protocol=profile.protocol,
    )


__all__ = [
    "ClientFactory",
    "SessionManager",
    "SessionState",
    "profile_from_config",
]
