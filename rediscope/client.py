"""Routes commands through the resolved topology and the connection manager."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging
import time
from typing import Any, Callable

from .commands import command_name, first_key
from .config import AppConfig, ClusterSettings
from .connections import ConnectionManager, Opener
from .errors import ConnectError, ProtocolError, RedirectLoop, ResponseError
from .models import ConnectionProfile, NodeAddress
from .protocol import ErrorReply
from .topology import Sentinel, Topology, TopologyResolver, TopologyStatus, parse_redirect

LOG = logging.getLogger(__name__)

_DRYRUN_PROBE_KEY = "__rediscope_write_probe__"


class AccessMode(str, Enum):
    """Effective write capability of an open client."""

    READ_WRITE = "read_write"
    SAFE_MODE = "safe_mode"
    STRICT_READ_ONLY = "strict_read_only"


class RedisClient:
    """Open connection to one deployment, independent of its shape."""

    def __init__(
        self,
        manager: ConnectionManager,
        resolver: TopologyResolver,
        settings: ClusterSettings | None = None,
    ) -> None:
        self._manager = manager
        self._resolver = resolver
        self._settings = settings or ClusterSettings()
        self._refresh_task: asyncio.Task[None] | None = None
        self.version: str | None = None
        self.access_mode = AccessMode.SAFE_MODE if manager.readonly else AccessMode.READ_WRITE

    @classmethod
    async def open(
        cls,
        profile: ConnectionProfile,
        config: AppConfig | None = None,
        *,
        opener: Opener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> RedisClient:
        """Resolve the deployment behind ``profile`` and return a ready client."""

        config = config or AppConfig()
        manager = ConnectionManager(profile, config.pool, opener=opener, clock=clock)
        resolver = TopologyResolver(manager, config.cluster, clock=clock)
        client = cls(manager, resolver, config.cluster)
        try:
            await resolver.resolve()
            manager.start()
            await client._load_server_info()
        except BaseException:
            await manager.close()
            raise
        return client

    @property
    def profile(self) -> ConnectionProfile:
        return self._manager.profile

    @property
    def manager(self) -> ConnectionManager:
        return self._manager

    @property
    def resolver(self) -> TopologyResolver:
        return self._resolver

    @property
    def topology(self) -> Topology | None:
        return self._resolver.topology

    @property
    def is_cluster(self) -> bool:
        return self._resolver.is_cluster

    def status(self) -> TopologyStatus:
        return self._resolver.status()

    def shards(self) -> tuple[NodeAddress, ...]:
        return self._resolver.shards()

    async def execute(self, *args: object) -> Any:
        """Run a command against whichever node owns it; error replies raise ResponseError."""

        reply = await self._route(args)
        if isinstance(reply, ErrorReply):
            raise ResponseError(reply.message)
        return reply

    async def execute_on(self, address: NodeAddress, *args: object) -> Any:
        """Run a command against one specific node."""

        reply = await self._manager.execute(address, *args)
        if isinstance(reply, ErrorReply):
            raise ResponseError(reply.message)
        return reply

    async def dbsize(self) -> int:
        total = 0
        for address in self._resolver.shards():
            total += int(await self.execute_on(address, "DBSIZE"))
        return total

    async def ping(self) -> float:
        """Round-trip a PING to the first shard; returns latency in milliseconds."""

        start = time.perf_counter()
        await self.execute_on(self._resolver.shards()[0], "PING")
        return (time.perf_counter() - start) * 1000

    async def close(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        await self._manager.close()

    async def _route(self, args: tuple[object, ...]) -> Any:
        if self._resolver.needs_refresh:
            self._schedule_refresh()
        topology = self._resolver.topology
        if isinstance(topology, Sentinel):
            return await self._execute_on_master(args)
        if not self._resolver.is_cluster:
            return await self._manager.execute(self._resolver.node_for_key(None), *args)
        return await self._execute_clustered(args)

    async def _execute_clustered(self, args: tuple[object, ...]) -> Any:
        address = self._resolver.node_for_key(first_key(args))
        if self._resolver.needs_refresh:
            self._schedule_refresh()
        asking = False
        for _ in range(self._settings.max_redirects + 1):
            try:
                reply = await self._manager.execute(address, *args, asking=asking)
            except ConnectError:
                self._resolver.mark_stale()
                self._schedule_refresh()
                raise
            if not isinstance(reply, ErrorReply):
                return reply
            redirect = parse_redirect(reply, address)
            if redirect is None:
                return reply
            LOG.debug("%s redirect for slot %d -> %s", redirect.kind, redirect.slot, redirect.address)
            if redirect.is_ask:
                asking = True
            else:
                asking = False
                if self._resolver.record_moved(redirect.slot, redirect.address):
                    self._schedule_refresh()
            address = redirect.address
        raise RedirectLoop(f"{command_name(args)} was redirected more than {self._settings.max_redirects} times.")

    async def _execute_on_master(self, args: tuple[object, ...]) -> Any:
        master = self._resolver.node_for_key(None)
        try:
            reply = await self._manager.execute(master, *args)
        except ConnectError as exc:
            LOG.info("Master %s unreachable (%s); asking sentinels", master, exc)
            master = await self._resolver.resolve_master()
            return await self._manager.execute(master, *args)
        if isinstance(reply, ErrorReply) and reply.code == "READONLY":
            LOG.info("%s is no longer the master; asking sentinels", master)
            master = await self._resolver.resolve_master()
            reply = await self._manager.execute(master, *args)
        return reply

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        loop = asyncio.get_running_loop()
        self._refresh_task = loop.create_task(self._refresh(), name="rediscope-topology-refresh")

    async def _refresh(self) -> None:
        try:
            await self._resolver.refresh()
        except (ConnectError, ProtocolError) as exc:
            LOG.warning("Topology refresh failed: %s", exc)

    async def _load_server_info(self) -> None:
        address = self._resolver.shards()[0]
        info = await self._manager.execute(address, "INFO", "server")
        if isinstance(info, (bytes, str)):
            self.version = _parse_version(info)
        if self._manager.readonly:
            self.access_mode = AccessMode.SAFE_MODE
            return
        user = await self._current_user(address)
        reply = await self._manager.execute(address, "ACL", "DRYRUN", user, "SET", _DRYRUN_PROBE_KEY, "1")
        if isinstance(reply, ErrorReply) and reply.code == "NOPERM":
            LOG.info("User %s may not run ACL DRYRUN on %s; strict read-only", user, address)
            self.access_mode = AccessMode.STRICT_READ_ONLY
        elif isinstance(reply, ErrorReply):
            # Servers before 7.0 have no ACL DRYRUN.
            LOG.debug("ACL DRYRUN unavailable on %s: %s", address, reply)
            self.access_mode = AccessMode.READ_WRITE
        elif reply == "OK" or reply == b"OK":
            self.access_mode = AccessMode.READ_WRITE
        else:
            LOG.info("User %s cannot write on %s; strict read-only", user, address)
            self.access_mode = AccessMode.STRICT_READ_ONLY

    async def _current_user(self, address: NodeAddress) -> str:
        reply = await self._manager.execute(address, "ACL", "WHOAMI")
        if isinstance(reply, ErrorReply) or reply is None:
            LOG.debug("ACL WHOAMI unavailable on %s: %s", address, reply)
            return self._manager.profile.username or "default"
        return reply.decode("utf-8", errors="replace") if isinstance(reply, bytes) else str(reply)


def _parse_version(info: bytes | str) -> str | None:
    text = info.decode("utf-8", errors="replace") if isinstance(info, bytes) else info
    fields: dict[str, str] = {}
    for line in text.splitlines():
        name, sep, value = line.partition(":")
        if sep:
            fields[name.strip()] = value.strip()
    return fields.get("valkey_version") or fields.get("redis_version")


__all__ = ["AccessMode", "RedisClient"]
