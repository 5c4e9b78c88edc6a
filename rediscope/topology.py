"""Deployment shape discovery, cluster slot maps and sentinel master tracking."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
import logging
import time
from typing import Any, Callable, Union

from .config import ClusterSettings
from .connections import ConnectionManager
from .errors import ConnectError, ProtocolError
from .models import NodeAddress
from .protocol import ErrorReply

LOG = logging.getLogger(__name__)

SLOT_COUNT = 16384


def _crc16_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte << 8
        for _ in range(8):
            crc = ((crc << 1) ^ 0x1021) if crc & 0x8000 else (crc << 1)
        table.append(crc & 0xFFFF)
    return tuple(table)


_CRC16_TABLE = _crc16_table()


def crc16(data: bytes) -> int:
    """CRC16/XMODEM as used by Redis Cluster."""

    crc = 0
    for byte in data:
        crc = ((crc << 8) & 0xFFFF) ^ _CRC16_TABLE[((crc >> 8) ^ byte) & 0xFF]
    return crc


def key_slot(key: bytes | str) -> int:
    """Return the cluster slot for ``key``, honouring ``{hash tag}`` sections."""

    data = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    start = data.find(b"{")
    if start != -1:
        end = data.find(b"}", start + 1)
        if end > start + 1:
            data = data[start + 1 : end]
    return crc16(data) % SLOT_COUNT


class TopologyKind(str, Enum):
    STANDALONE = "standalone"
    CLUSTER = "cluster"
    SENTINEL = "sentinel"


class TopologyState(str, Enum):
    """Resolver lifecycle: UNRESOLVED -> PROBING -> shape -> STALE -> PROBING."""

    UNRESOLVED = "unresolved"
    PROBING = "probing"
    STANDALONE = "standalone"
    CLUSTER = "cluster"
    SENTINEL = "sentinel"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class Standalone:
    address: NodeAddress

    kind = TopologyKind.STANDALONE


@dataclass(frozen=True, slots=True)
class SlotRange:
    start: int
    end: int
    master: NodeAddress
    replicas: tuple[NodeAddress, ...] = ()

    def __contains__(self, slot: object) -> bool:
        return isinstance(slot, int) and self.start <= slot <= self.end


@dataclass(frozen=True, slots=True)
class ClusterNode:
    """One line of ``CLUSTER NODES`` output."""

    node_id: str
    address: NodeAddress
    flags: tuple[str, ...]
    master_id: str | None
    link_state: str = "connected"

    @property
    def is_master(self) -> bool:
        return "master" in self.flags

    @property
    def healthy(self) -> bool:
        if "fail" in self.flags or "fail?" in self.flags:
            return False
        return self.link_state == "connected"


@dataclass(frozen=True, slots=True)
class Cluster:
    ranges: tuple[SlotRange, ...]
    nodes: tuple[ClusterNode, ...] = ()

    kind = TopologyKind.CLUSTER

    @property
    def covered_slots(self) -> int:
        return sum(item.end - item.start + 1 for item in self.ranges)

    @property
    def complete(self) -> bool:
        return self.covered_slots == SLOT_COUNT

    @property
    def degraded(self) -> bool:
        return not self.complete


@dataclass(frozen=True, slots=True)
class Sentinel:
    master: NodeAddress
    master_name: str
    replicas: tuple[NodeAddress, ...] = ()
    sentinels: tuple[NodeAddress, ...] = ()

    kind = TopologyKind.SENTINEL


Topology = Union[Standalone, Cluster, Sentinel]


@dataclass(frozen=True, slots=True)
class Redirect:
    """Parsed ``MOVED``/``ASK`` error reply."""

    kind: str
    slot: int
    address: NodeAddress

    @property
    def is_ask(self) -> bool:
        return self.kind == "ASK"


def parse_redirect(reply: ErrorReply, origin: NodeAddress | None = None) -> Redirect | None:
    """Return the redirect carried by ``reply`` or ``None`` for other errors.

    A target written as ``:port`` means the same host as ``origin``, the node
    that sent the redirect.
    """

    parts = reply.message.split()
    if len(parts) != 3 or parts[0] not in ("MOVED", "ASK"):
        return None
    target = parts[2]
    if target.startswith(":") and origin is not None:
        target = origin.host + target
    try:
        slot = int(parts[1])
        address = NodeAddress.parse(target)
    except ValueError as exc:
        raise ProtocolError(f"Malformed redirect: {reply.message}") from exc
    return Redirect(kind=parts[0], slot=slot, address=address)


def parse_cluster_nodes(text: str, *, default_host: str = "127.0.0.1") -> Cluster:
    """Build a :class:`Cluster` from ``CLUSTER NODES`` output."""

    nodes: list[ClusterNode] = []
    slots_by_node: dict[str, list[tuple[int, int]]] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 8:
            continue
        node_id, raw_address, raw_flags, master_id = parts[:4]
        flags = tuple(raw_flags.split(","))
        if "noaddr" in flags or "handshake" in flags:
            continue
        # Newer servers append ",hostname" after the bus port.
        raw_address = raw_address.split(",", 1)[0]
        if raw_address.startswith(":"):
            raw_address = default_host + raw_address
        try:
            address = NodeAddress.parse(raw_address)
        except ValueError:
            LOG.debug("Skipping cluster node with unusable address %r", raw_address)
            continue
        nodes.append(
            ClusterNode(
                node_id=node_id,
                address=address,
                flags=flags,
                master_id=None if master_id == "-" else master_id,
                link_state=parts[7],
            )
        )
        spans: list[tuple[int, int]] = []
        for token in parts[8:]:
            if token.startswith("["):
                continue  # migrating / importing marker
            start, _, end = token.partition("-")
            try:
                spans.append((int(start), int(end or start)))
            except ValueError as exc:
                raise ProtocolError(f"Malformed slot range {token!r} in CLUSTER NODES") from exc
        slots_by_node[node_id] = spans

    replicas: dict[str, list[NodeAddress]] = {}
    for node in nodes:
        if node.master_id is not None and not node.is_master:
            replicas.setdefault(node.master_id, []).append(node.address)

    ranges: list[SlotRange] = []
    for node in nodes:
        for start, end in slots_by_node.get(node.node_id, ()):
            ranges.append(SlotRange(start, end, node.address, tuple(replicas.get(node.node_id, ()))))
    ranges.sort(key=lambda item: item.start)
    return Cluster(ranges=tuple(ranges), nodes=tuple(nodes))


@dataclass(frozen=True, slots=True)
class NodeHealth:
    address: NodeAddress
    role: str
    healthy: bool
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class TopologyStatus:
    """Snapshot of deployment shape and node health for display."""

    kind: TopologyKind | None
    state: TopologyState
    nodes: tuple[NodeHealth, ...] = ()
    degraded: bool = False
    master_name: str | None = None
    refreshed_at: datetime | None = None

    @property
    def summary(self) -> str:
        if self.kind is None:
            return self.state.value
        healthy = sum(1 for node in self.nodes if node.healthy)
        text = f"{self.kind.value} ({healthy}/{len(self.nodes)} nodes healthy)"
        return text + (" degraded" if self.degraded else "")


class TopologyResolver:
    """Classifies the deployment behind a profile and keeps its routing map current."""

    def __init__(
        self,
        manager: ConnectionManager,
        settings: ClusterSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = manager
        self._settings = settings or ClusterSettings()
        self._clock = clock
        self._state = TopologyState.UNRESOLVED
        self._topology: Topology | None = None
        self._slots: list[NodeAddress | None] = []
        self._moved_at: deque[float] = deque()
        self._refreshed_at: datetime | None = None

    @property
    def state(self) -> TopologyState:
        return self._state

    @property
    def topology(self) -> Topology | None:
        return self._topology

    @property
    def needs_refresh(self) -> bool:
        return self._state is TopologyState.STALE

    @property
    def is_cluster(self) -> bool:
        return isinstance(self._topology, Cluster)

    async def resolve(self) -> Topology:
        """Probe the entry points and install the discovered topology."""

        previous = self._state
        self._state = TopologyState.PROBING
        errors: list[str] = []
        try:
            for address in self._manager.profile.entry_points:
                try:
                    topology = await self._probe(address)
                except ConnectError as exc:
                    LOG.info("Entry point %s unavailable: %s", address, exc)
                    errors.append(f"{address}: {exc}")
                    continue
                self._install(topology)
                return topology
        except BaseException:
            self._state = previous if self._topology is not None else TopologyState.UNRESOLVED
            raise
        self._state = TopologyState.STALE if self._topology is not None else TopologyState.UNRESOLVED
        raise ConnectError("No entry point answered: " + "; ".join(errors))

    async def refresh(self) -> Topology:
        """Re-probe unless a probe is already running."""

        if self._state is TopologyState.PROBING and self._topology is not None:
            return self._topology
        return await self.resolve()

    def mark_stale(self) -> None:
        if self._topology is not None:
            self._state = TopologyState.STALE

    def record_moved(self, slot: int, address: NodeAddress) -> bool:
        """Point ``slot`` at ``address``; returns True when a redirect storm marks the map stale."""

        if not self._slots:
            return False
        self._slots[slot] = address
        now = self._clock()
        self._moved_at.append(now)
        while self._moved_at and now - self._moved_at[0] > self._settings.storm_window:
            self._moved_at.popleft()
        LOG.debug("Slot %d moved to %s", slot, address)
        if len(self._moved_at) >= self._settings.storm_threshold and self._state is not TopologyState.STALE:
            LOG.warning(
                "%d redirects within %.1fs; cluster map marked stale",
                len(self._moved_at),
                self._settings.storm_window,
            )
            self._state = TopologyState.STALE
            return True
        return False

    def node_for_slot(self, slot: int) -> NodeAddress:
        """Owner of ``slot``; unowned slots go to any master so a MOVED reply can fill them in."""

        if not self._slots:
            raise ConnectError("Cluster slot map is not resolved.")
        owner = self._slots[slot]
        if owner is None:
            fallback = self.shards()[0]
            LOG.info("Slot %d has no owner in the cluster map; trying %s and marking the map stale", slot, fallback)
            self._state = TopologyState.STALE
            return fallback
        return owner

    def node_for_key(self, key: bytes | str | None) -> NodeAddress:
        """Address that should receive a command for ``key`` (None for keyless commands)."""

        topology = self._require()
        if isinstance(topology, Standalone):
            return topology.address
        if isinstance(topology, Sentinel):
            return topology.master
        if key is None:
            return self.shards()[0]
        return self.node_for_slot(key_slot(key))

    def shards(self) -> tuple[NodeAddress, ...]:
        """Master addresses in ascending order of their first slot."""

        topology = self._require()
        if isinstance(topology, Standalone):
            return (topology.address,)
        if isinstance(topology, Sentinel):
            return (topology.master,)
        ordered: list[NodeAddress] = []
        for item in topology.ranges:
            if item.master not in ordered:
                ordered.append(item.master)
        if not ordered:
            raise ConnectError("Cluster has no slot owners.")
        return tuple(ordered)

    async def resolve_master(self) -> NodeAddress:
        """Ask the known sentinels which address currently holds the master role."""

        topology = self._require()
        if not isinstance(topology, Sentinel):
            raise ConnectError("Master re-resolution requires a sentinel deployment.")
        errors: list[str] = []
        for sentinel in topology.sentinels:
            try:
                reply = await self._manager.execute(
                    sentinel, "SENTINEL", "GET-MASTER-ADDR-BY-NAME", topology.master_name
                )
            except ConnectError as exc:
                errors.append(f"{sentinel}: {exc}")
                continue
            if isinstance(reply, list) and len(reply) == 2:
                master = NodeAddress(_text(reply[0]), int(_text(reply[1])))
                if master != topology.master:
                    LOG.info("Sentinel master %s moved: %s -> %s", topology.master_name, topology.master, master)
                self._topology = replace(topology, master=master)
                self._state = TopologyState.SENTINEL
                return master
            errors.append(f"{sentinel}: {reply}")
        raise ConnectError(f"No sentinel knows master {topology.master_name!r}: " + "; ".join(errors))

    def status(self) -> TopologyStatus:
        topology = self._topology
        failures = self._manager.node_failures()
        nodes: list[NodeHealth] = []
        degraded = False
        if isinstance(topology, Standalone):
            nodes.append(_health(topology.address, "master", True, failures))
        elif isinstance(topology, Sentinel):
            nodes.append(_health(topology.master, "master", True, failures))
            nodes.extend(_health(addr, "replica", True, failures) for addr in topology.replicas)
            nodes.extend(_health(addr, "sentinel", True, failures) for addr in topology.sentinels)
        elif isinstance(topology, Cluster):
            degraded = topology.degraded
            for node in topology.nodes:
                role = "master" if node.is_master else "replica"
                nodes.append(_health(node.address, role, node.healthy, failures))
        return TopologyStatus(
            kind=topology.kind if topology is not None else None,
            state=self._state,
            nodes=tuple(nodes),
            degraded=degraded,
            master_name=topology.master_name if isinstance(topology, Sentinel) else None,
            refreshed_at=self._refreshed_at,
        )

    def _require(self) -> Topology:
        if self._topology is None:
            raise ConnectError("Topology has not been resolved.")
        return self._topology

    def _install(self, topology: Topology) -> None:
        self._topology = topology
        self._manager.cluster_mode = isinstance(topology, Cluster)
        self._moved_at.clear()
        self._refreshed_at = datetime.now(timezone.utc)
        if isinstance(topology, Cluster):
            slots: list[NodeAddress | None] = [None] * SLOT_COUNT
            for item in topology.ranges:
                for slot in range(item.start, min(item.end, SLOT_COUNT - 1) + 1):
                    slots[slot] = item.master
            self._slots = slots
            self._state = TopologyState.CLUSTER
            if topology.degraded:
                LOG.warning("Cluster slot coverage is partial: %d/%d slots", topology.covered_slots, SLOT_COUNT)
            LOG.info("Resolved cluster with %d shard(s)", len({item.master for item in topology.ranges}))
        elif isinstance(topology, Sentinel):
            self._slots = []
            self._state = TopologyState.SENTINEL
            LOG.info("Resolved sentinel master %s at %s", topology.master_name, topology.master)
        else:
            self._slots = []
            self._state = TopologyState.STANDALONE
            LOG.info("Resolved standalone node %s", topology.address)

    async def _probe(self, address: NodeAddress) -> Topology:
        role = await self._manager.execute(address, "ROLE")
        # ROLE is missing on very old servers; the error reply is tolerated.
        if isinstance(role, list) and role and _text(role[0]).lower() == "sentinel":
            return await self._probe_sentinel(address)
        info = await self._manager.execute(address, "INFO", "cluster")
        if isinstance(info, (bytes, str)) and "cluster_enabled:1" in _text(info):
            nodes = await self._manager.execute(address, "CLUSTER", "NODES")
            if isinstance(nodes, ErrorReply) or nodes is None:
                raise ConnectError(f"CLUSTER NODES failed on {address}: {nodes}")
            return parse_cluster_nodes(_text(nodes), default_host=address.host)
        return Standalone(address)

    async def _probe_sentinel(self, address: NodeAddress) -> Sentinel:
        wanted = self._manager.profile.master_name
        reply = await self._manager.execute(address, "SENTINEL", "MASTERS")
        if not isinstance(reply, list):
            raise ProtocolError(f"Unexpected SENTINEL MASTERS reply from {address}: {reply!r}")
        masters = [_fields(entry) for entry in reply]
        if wanted:
            masters = [entry for entry in masters if entry.get("name") == wanted]
            if not masters:
                raise ConnectError(f"Sentinel {address} does not monitor master {wanted!r}.")
        elif len(masters) != 1:
            names = ", ".join(sorted(entry.get("name", "?") for entry in masters)) or "none"
            raise ConnectError(f"Sentinel {address} monitors several masters ({names}); set master_name.")
        entry = masters[0]
        name = entry["name"]
        master = NodeAddress(entry["ip"], int(entry["port"]))
        replicas = await self._sentinel_peers(address, "REPLICAS", name)
        peers = await self._sentinel_peers(address, "SENTINELS", name)
        sentinels = (address, *[peer for peer in peers if peer != address])
        return Sentinel(master=master, master_name=name, replicas=replicas, sentinels=sentinels)

    async def _sentinel_peers(self, address: NodeAddress, kind: str, name: str) -> tuple[NodeAddress, ...]:
        reply = await self._manager.execute(address, "SENTINEL", kind, name)
        if not isinstance(reply, list):
            LOG.debug("SENTINEL %s %s failed on %s: %s", kind, name, address, reply)
            return ()
        peers = []
        for entry in reply:
            fields = _fields(entry)
            if "ip" in fields and "port" in fields:
                peers.append(NodeAddress(fields["ip"], int(fields["port"])))
        return tuple(peers)


def _health(address: NodeAddress, role: str, healthy: bool, failures: dict[NodeAddress, str]) -> NodeHealth:
    detail = failures.get(address)
    return NodeHealth(address=address, role=role, healthy=healthy and detail is None, detail=detail)


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _fields(entry: Any) -> dict[str, str]:
    """Flatten a sentinel info entry (RESP2 flat array or RESP3 map)."""

    if isinstance(entry, dict):
        return {_text(key): _text(value) for key, value in entry.items()}
    if isinstance(entry, list):
        return {_text(entry[i]): _text(entry[i + 1]) for i in range(0, len(entry) - 1, 2)}
    raise ProtocolError(f"Unexpected sentinel entry: {entry!r}")


__all__ = [
    "Cluster",
    "ClusterNode",
    "NodeHealth",
    "Redirect",
    "Sentinel",
    "SlotRange",
    "Standalone",
    "Topology",
    "TopologyKind",
    "TopologyResolver",
    "TopologyState",
    "TopologyStatus",
    "crc16",
    "key_slot",
    "parse_cluster_nodes",
    "parse_redirect",
]
