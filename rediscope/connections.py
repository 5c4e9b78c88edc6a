"""Pooled node connections powering the client and scanner."""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator

from .commands import command_name, is_mutating
from .config import PoolSettings
from .errors import ConnectError, ProtocolError, ReadOnlyViolation
from .models import ConnectionProfile, NodeAddress
from .protocol import ErrorReply, PushReply, RespParser, encode_command, read_reply
from .transport import Stream, StreamOpener

LOG = logging.getLogger(__name__)

Opener = Callable[[ConnectionProfile, NodeAddress], Awaitable[Stream]]
Clock = Callable[[], float]
PushListener = Callable[[NodeAddress, PushReply], None]


class NodeConnection:
    """One live stream plus parser bound to a node address.

    Owned by :class:`ConnectionManager`; callers only ever see it inside a
    checkout. Any failure mid-exchange marks it broken so it is closed instead
    of being reused with a half-read frame.
    """

    def __init__(
        self,
        address: NodeAddress,
        stream: Stream,
        *,
        readonly: bool,
        clock: Clock,
        on_push: Callable[[PushReply], None] | None = None,
    ) -> None:
        self.address = address
        self.readonly = readonly
        self.authenticated = False
        self.database = 0
        self.protocol = 2
        self.broken = False
        self._stream = stream
        self._parser = RespParser()
        self._clock = clock
        self._on_push = on_push
        self.created_at = clock()
        self.last_used = self.created_at
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def idle_for(self, now: float) -> float:
        return now - self.last_used

    async def execute(self, *args: object) -> Any:
        """Send one command and return its reply (error replies are returned, not raised)."""

        try:
            await self._stream.write(encode_command(*args))
            while True:
                reply = await read_reply(self._stream, self._parser)
                if isinstance(reply, PushReply):
                    if self._on_push is not None:
                        self._on_push(reply)
                    continue
                return reply
        except BaseException:
            self.broken = True
            raise
        finally:
            self.last_used = self._clock()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._stream.close()
        except (ConnectError, OSError):  # pragma: no cover - best effort cleanup
            pass


class NodePool:
    """Idle and in-use connections for a single node address."""

    def __init__(self, address: NodeAddress, max_size: int) -> None:
        self.address = address
        self.max_size = max_size
        self.idle: deque[NodeConnection] = deque()
        self.in_use: set[NodeConnection] = set()
        self.slots = asyncio.Semaphore(max_size)

    def __len__(self) -> int:
        return len(self.idle) + len(self.in_use)


class ConnectionPool:
    """Mapping from node address to its reusable connections."""

    def __init__(self, max_per_node: int) -> None:
        self._max_per_node = max_per_node
        self._nodes: dict[NodeAddress, NodePool] = {}

    def node(self, address: NodeAddress) -> NodePool:
        pool = self._nodes.get(address)
        if pool is None:
            pool = NodePool(address, self._max_per_node)
            self._nodes[address] = pool
        return pool

    @property
    def total(self) -> int:
        return sum(len(pool) for pool in self._nodes.values())

    def addresses(self) -> tuple[NodeAddress, ...]:
        return tuple(self._nodes)

    def connections(self, address: NodeAddress | None = None) -> Iterator[NodeConnection]:
        pools = [self._nodes[address]] if address in self._nodes else [] if address else list(self._nodes.values())
        for pool in pools:
            yield from pool.idle
            yield from pool.in_use

    def __contains__(self, conn: object) -> bool:
        return any(conn is candidate for candidate in self.connections())

    def prune(self, now: float, idle_timeout: float) -> list[NodeConnection]:
        """Detach idle connections unused for longer than ``idle_timeout``."""

        removed: list[NodeConnection] = []
        for pool in self._nodes.values():
            keep: deque[NodeConnection] = deque()
            for conn in pool.idle:
                if conn.idle_for(now) > idle_timeout:
                    removed.append(conn)
                else:
                    keep.append(conn)
            pool.idle = keep
        return removed

    def drain(self) -> list[NodeConnection]:
        """Detach every idle connection and flag in-use ones for closing on return."""

        drained: list[NodeConnection] = []
        for pool in self._nodes.values():
            drained.extend(pool.idle)
            pool.idle.clear()
            for conn in pool.in_use:
                conn.broken = True
        return drained


class ConnectionManager:
    """Hands out ready-to-use node connections for a single profile."""

    def __init__(
        self,
        profile: ConnectionProfile,
        settings: PoolSettings | None = None,
        *,
        opener: Opener | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._profile = profile
        self._settings = settings or PoolSettings()
        self._owned_opener = StreamOpener() if opener is None else None
        self._opener: Opener = opener or self._owned_opener  # type: ignore[assignment]
        self._clock = clock
        self._pool = ConnectionPool(self._settings.max_connections_per_node)
        self._push_listeners: set[PushListener] = set()
        self._failures: dict[NodeAddress, str] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        self._closed = False
        self.cluster_mode = False

    @property
    def profile(self) -> ConnectionProfile:
        return self._profile

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def readonly(self) -> bool:
        return self._profile.readonly

    def node_failures(self) -> dict[NodeAddress, str]:
        """Last connection error per address that has not recovered since."""

        return dict(self._failures)

    def subscribe_push(self, listener: PushListener) -> Callable[[], None]:
        """Subscribe to RESP3 push frames; returns an unsubscribe handle."""

        self._push_listeners.add(listener)

        def _unsubscribe() -> None:
            self._push_listeners.discard(listener)

        return _unsubscribe

    def start(self) -> None:
        """Start the periodic idle-pruning and health sweep."""

        if self._sweep_task is None or self._sweep_task.done():
            loop = asyncio.get_running_loop()
            self._sweep_task = loop.create_task(self._sweep_loop(), name=f"rediscope-sweep-{self._profile.name}")

    async def close(self) -> None:
        """Stop background work and close every pooled connection."""

        self._closed = True
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        for conn in self._pool.drain():
            await conn.close()
        if self._owned_opener is not None:
            await self._owned_opener.close()

    async def execute(self, address: NodeAddress, *args: object, asking: bool = False) -> Any:
        """Run one command against ``address``.

        Mutating commands are rejected before any bytes are written when the
        profile is read-only. Transport and framing failures are retried once
        on a freshly opened connection.
        """

        if self._profile.readonly and is_mutating(args):
            raise ReadOnlyViolation(command_name(args))
        try:
            return await self._execute_once(address, args, asking=asking, fresh=False)
        except (ConnectError, ProtocolError) as exc:
            LOG.info("Retrying %s on %s after error: %s", command_name(args), address, exc)
            return await self._execute_once(address, args, asking=asking, fresh=True)

    async def _execute_once(self, address: NodeAddress, args: tuple[object, ...], *, asking: bool, fresh: bool) -> Any:
        async with self.checkout(address, fresh=fresh) as conn:
            if asking:
                reply = await conn.execute("ASKING")
                if isinstance(reply, ErrorReply):
                    return reply
            return await conn.execute(*args)

    @asynccontextmanager
    async def checkout(self, address: NodeAddress, *, fresh: bool = False) -> AsyncIterator[NodeConnection]:
        """Borrow an exclusive connection for the duration of one exchange."""

        if self._closed:
            raise ConnectError("Connection manager is closed.")
        node = self._pool.node(address)
        async with node.slots:
            conn = await self._acquire(node, fresh=fresh)
            node.in_use.add(conn)
            try:
                yield conn
            finally:
                node.in_use.discard(conn)
                if conn.broken or self._closed or len(node.idle) >= node.max_size:
                    await conn.close()
                else:
                    node.idle.append(conn)

    async def prune(self) -> tuple[int, int]:
        """Close idle connections past the idle threshold; returns (removed, total)."""

        removed = self._pool.prune(self._clock(), self._settings.idle_timeout)
        for conn in removed:
            await conn.close()
        total = self._pool.total
        if removed:
            LOG.info("Pruned %d idle connection(s), %d remaining", len(removed), total)
        return len(removed), total

    async def sweep(self) -> tuple[int, int]:
        """Prune expired connections, then probe idle ones past the grace period."""

        removed, _ = await self.prune()
        now = self._clock()
        for pool in [self._pool.node(address) for address in self._pool.addresses()]:
            stale = [conn for conn in pool.idle if conn.idle_for(now) > self._settings.health_check_grace]
            for conn in stale:
                if not await self._probe_idle(pool, conn):
                    removed += 1
        return removed, self._pool.total

    async def _probe_idle(self, pool: NodePool, conn: NodeConnection) -> bool:
        """PING an idle connection while it holds a checkout slot; closes it unless healthy."""

        async with pool.slots:
            if conn not in pool.idle:
                return True
            pool.idle.remove(conn)
            pool.in_use.add(conn)
            healthy = False
            try:
                healthy = await self._probe(conn)
            finally:
                pool.in_use.discard(conn)
                if healthy and not conn.broken and not self._closed:
                    pool.idle.append(conn)
                else:
                    await conn.close()
        return healthy

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.prune_interval)
            await self.sweep()

    async def _acquire(self, node: NodePool, *, fresh: bool) -> NodeConnection:
        while node.idle and not fresh:
            conn = node.idle.pop()
            idle = conn.idle_for(self._clock())
            if idle > self._settings.idle_timeout:
                await conn.close()
                continue
            if idle > self._settings.health_check_grace and not await self._probe(conn):
                LOG.info("Health check failed for %s; reconnecting", node.address)
                await conn.close()
                continue
            return conn
        return await self._open(node.address)

    async def _probe(self, conn: NodeConnection) -> bool:
        try:
            reply = await conn.execute("PING")
        except (ConnectError, ProtocolError):
            return False
        return not isinstance(reply, ErrorReply)

    async def _open(self, address: NodeAddress) -> NodeConnection:
        try:
            stream = await self._opener(self._profile, address)
        except ConnectError as exc:
            self._failures[address] = str(exc)
            raise
        conn = NodeConnection(
            address,
            stream,
            readonly=self._profile.readonly,
            clock=self._clock,
            on_push=lambda reply: self._dispatch_push(address, reply),
        )
        try:
            await self._handshake(conn)
        except BaseException as exc:
            await conn.close()
            if isinstance(exc, ConnectError):
                self._failures[address] = str(exc)
            raise
        self._failures.pop(address, None)
        return conn

    async def _handshake(self, conn: NodeConnection) -> None:
        profile = self._profile
        if profile.protocol == 3:
            args: list[object] = ["HELLO", 3]
            if profile.password:
                args += ["AUTH", profile.username or "default", profile.password]
            reply = await conn.execute(*args)
            if isinstance(reply, ErrorReply):
                LOG.warning("RESP3 unavailable on %s (%s); using RESP2", conn.address, reply)
            else:
                conn.protocol = 3
                conn.authenticated = bool(profile.password)
        if profile.password and not conn.authenticated:
            auth: list[object] = ["AUTH", profile.password]
            if profile.username:
                auth.insert(1, profile.username)
            reply = await conn.execute(*auth)
            if isinstance(reply, ErrorReply):
                # Sentinels frequently run without the data nodes' password.
                if "without any password configured" not in reply.message:
                    raise ConnectError(f"Authentication to {conn.address} failed: {reply}")
                LOG.debug("%s does not require a password", conn.address)
            else:
                conn.authenticated = True
        if profile.database and not self.cluster_mode:
            reply = await conn.execute("SELECT", profile.database)
            if isinstance(reply, ErrorReply):
                if "cluster mode" not in reply.message:
                    raise ConnectError(f"Cannot select database {profile.database} on {conn.address}: {reply}")
                LOG.warning("%s is a cluster node; staying on database 0", conn.address)
            else:
                conn.database = profile.database

    def _dispatch_push(self, address: NodeAddress, reply: PushReply) -> None:
        for listener in tuple(self._push_listeners):
            listener(address, reply)


__all__ = [
    "ConnectionManager",
    "ConnectionPool",
    "NodeConnection",
    "NodePool",
    "Opener",
]
