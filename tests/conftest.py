"""In-memory fake Redis network shared by the engine tests."""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Callable

import pytest

from rediscope.errors import ConnectError
from rediscope.models import ConnectionProfile, NodeAddress
from rediscope.protocol import ErrorReply, RespParser
from rediscope.topology import SLOT_COUNT, key_slot


@dataclass
class ZSet:
    members: dict[bytes, float] = field(default_factory=dict)


def encode_reply(value: Any) -> bytes:
    """Encode a python value as a RESP2 reply."""

    if isinstance(value, ErrorReply):
        return b"-" + value.message.encode() + b"\r\n"
    if isinstance(value, bool):
        return b":1\r\n" if value else b":0\r\n"
    if isinstance(value, int):
        return b":%d\r\n" % value
    if isinstance(value, str):
        return b"+" + value.encode() + b"\r\n"
    if isinstance(value, bytes):
        return b"$%d\r\n" % len(value) + value + b"\r\n"
    if value is None:
        return b"$-1\r\n"
    if isinstance(value, (list, tuple)):
        return b"*%d\r\n" % len(value) + b"".join(encode_reply(item) for item in value)
    raise TypeError(f"Cannot encode {value!r}")


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    out = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            out.append(".*")
        elif char == "?":
            out.append(".")
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(char))
            else:
                out.append("[" + pattern[i + 1 : end] + "]")
                i = end
        else:
            out.append(re.escape(char))
        i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


Handler = Callable[["FakeNode", list[bytes]], Any]


class FakeNode:
    """A fake server answering the subset of commands the engine issues."""

    def __init__(self, network: FakeNetwork, address: NodeAddress) -> None:
        self.network = network
        self.address = address
        self.node_id = f"{address.port:040d}"
        self.slots: set[int] | None = None
        self.commands: list[list[bytes]] = []
        self.bytes_received = 0
        self.connections = 0
        self.down = False
        self.drop_next = 0
        self.chunk_size: int | None = None
        self.password: str | None = None
        self.overrides: dict[str, Handler] = {}
        self.ask: dict[int, NodeAddress] = {}
        self.importing: set[int] = set()
        self.monitored: dict[str, FakeNode] | None = None
        self.replicas: list[FakeNode] = []
        self.peers: list[FakeNode] = []

    def command_names(self) -> list[str]:
        return [args[0].decode().upper() for args in self.commands]

    def on(self, name: str, handler: Handler) -> None:
        self.overrides[name.upper()] = handler

    def owns(self, key: bytes) -> bool:
        return self.slots is None or key_slot(key) in self.slots

    def handle(self, args: list[bytes], session: dict[str, Any]) -> Any:
        self.commands.append(args)
        name = args[0].decode().upper()
        asking = session.pop("asking", False)
        if name == "ASKING":
            session["asking"] = True
            return "OK"
        if name in self.overrides:
            return self.overrides[name](self, args)
        method = getattr(self, f"cmd_{name.lower()}", None)
        if method is None:
            return ErrorReply(f"ERR unknown command '{name}'")
        if self.slots is not None and name not in _KEYLESS and len(args) > 1:
            slot = key_slot(args[1])
            target = self.ask.get(slot)
            if target is not None:
                return ErrorReply(f"ASK {slot} {target}")
            if slot not in self.slots and not (asking and slot in self.importing):
                owner = self.network.owner(slot)
                if owner is None:
                    return ErrorReply("CLUSTERDOWN Hash slot not served")
                return ErrorReply(f"MOVED {slot} {owner.address}")
        return method(args[1:], session)

    # --- connection / server -------------------------------------------------

    def cmd_ping(self, args, session):
        return "PONG"

    def cmd_auth(self, args, session):
        if self.password is None:
            return ErrorReply("ERR AUTH <password> called without any password configured for the default user.")
        if args[-1].decode() != self.password:
            return ErrorReply("WRONGPASS invalid username-password pair or user is disabled.")
        session["auth"] = True
        return "OK"

    def cmd_select(self, args, session):
        if self.slots is not None:
            return ErrorReply("ERR SELECT is not allowed in cluster mode")
        session["db"] = int(args[0])
        return "OK"

    def cmd_role(self, args, session):
        if self.monitored is not None:
            return [b"sentinel", [name.encode() for name in self.monitored]]
        return [b"master", 0, []]

    def cmd_sentinel(self, args, session):
        if self.monitored is None:
            return ErrorReply("ERR unknown command 'SENTINEL'")
        sub = args[0].upper()
        if sub == b"MASTERS":
            return [_sentinel_entry(name, master.address) for name, master in self.monitored.items()]
        master_name = args[1].decode()
        if master_name not in self.monitored:
            return ErrorReply("ERR No such master with that name")
        if sub == b"GET-MASTER-ADDR-BY-NAME":
            address = self.monitored[master_name].address
            return [address.host.encode(), str(address.port).encode()]
        if sub == b"REPLICAS":
            return [_sentinel_entry(str(node.address), node.address) for node in self.replicas]
        if sub == b"SENTINELS":
            return [_sentinel_entry(str(node.address), node.address) for node in self.peers]
        return ErrorReply("ERR unsupported")

    def cmd_info(self, args, session):
        section = args[0].decode().lower() if args else "all"
        if section == "cluster":
            enabled = 1 if self.slots is not None else 0
            return f"# Cluster\r\ncluster_enabled:{enabled}\r\n".encode()
        return b"# Server\r\nredis_version:7.2.4\r\nredis_mode:standalone\r\n"

    def cmd_cluster(self, args, session):
        if args[0].upper() == b"NODES":
            return self.network.cluster_nodes_text(self).encode()
        return ErrorReply("ERR unsupported")

    def cmd_acl(self, args, session):
        if args[0].upper() == b"WHOAMI":
            return b"default"
        if args[0].upper() == b"DRYRUN":
            return "OK"
        return ErrorReply("ERR unsupported")

    def cmd_dbsize(self, args, session):
        return sum(1 for key in self.network.store if self.owns(key))

    def cmd_scan(self, args, session):
        cursor = int(args[0])
        options = {args[i].upper(): args[i + 1] for i in range(1, len(args) - 1, 2)}
        regex = glob_to_regex(options.get(b"MATCH", b"*").decode())
        count = int(options.get(b"COUNT", b"10"))
        wanted_type = options.get(b"TYPE")
        keys = sorted(
            key
            for key, value in self.network.store.items()
            if self.owns(key)
            and regex.match(key.decode())
            and (wanted_type is None or _type_name(value) == wanted_type.decode())
        )
        page = keys[cursor : cursor + count]
        next_cursor = cursor + count if cursor + count < len(keys) else 0
        return [str(next_cursor).encode(), page]

    # --- keyspace -------------------------------------------------------------

    def cmd_get(self, args, session):
        value = self.network.store.get(args[0])
        if value is not None and not isinstance(value, bytes):
            return ErrorReply("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    def cmd_set(self, args, session):
        self.network.store[args[0]] = args[1]
        return "OK"

    def cmd_del(self, args, session):
        return sum(1 for key in args if self.network.store.pop(key, None) is not None)

    def cmd_exists(self, args, session):
        return sum(1 for key in args if key in self.network.store)

    def cmd_type(self, args, session):
        value = self.network.store.get(args[0])
        return "none" if value is None else _type_name(value)

    def cmd_pttl(self, args, session):
        if args[0] not in self.network.store:
            return -2
        return self.network.ttl.get(args[0], -1)

    def cmd_strlen(self, args, session):
        return len(self.network.store.get(args[0], b""))

    def cmd_hlen(self, args, session):
        return len(self.network.store.get(args[0], {}))

    def cmd_llen(self, args, session):
        return len(self.network.store.get(args[0], []))

    def cmd_scard(self, args, session):
        return len(self.network.store.get(args[0], set()))

    def cmd_zcard(self, args, session):
        value = self.network.store.get(args[0])
        return len(value.members) if isinstance(value, ZSet) else 0

    def cmd_hscan(self, args, session):
        value = self.network.store.get(args[0], {})
        flat: list[bytes] = []
        for name, item in sorted(value.items()):
            flat.extend([name, item])
        return [b"0", flat]

    def cmd_sscan(self, args, session):
        return [b"0", sorted(self.network.store.get(args[0], set()))]

    def cmd_lrange(self, args, session):
        value = self.network.store.get(args[0], [])
        start, stop = int(args[1]), int(args[2])
        return value[start : stop + 1]

    def cmd_zrange(self, args, session):
        value = self.network.store.get(args[0])
        members = sorted(value.members.items(), key=lambda item: (item[1], item[0])) if value else []
        start, stop = int(args[1]), int(args[2])
        flat: list[bytes] = []
        for member, score in members[start : stop + 1]:
            flat.extend([member, repr(score).encode()])
        return flat


_KEYLESS = {"PING", "AUTH", "SELECT", "ASKING", "ROLE", "INFO", "CLUSTER", "ACL", "DBSIZE", "SCAN", "HELLO", "SENTINEL"}


def _sentinel_entry(name: str, address: NodeAddress) -> list[bytes]:
    return [
        b"name", name.encode(),
        b"ip", address.host.encode(),
        b"port", str(address.port).encode(),
        b"flags", b"master",
    ]


def _type_name(value: Any) -> str:
    if isinstance(value, bytes):
        return "string"
    if isinstance(value, dict):
        return "hash"
    if isinstance(value, list):
        return "list"
    if isinstance(value, set):
        return "set"
    if isinstance(value, ZSet):
        return "zset"
    return "none"


class FakeStream:
    """Client side of one connection to a :class:`FakeNode`."""

    def __init__(self, node: FakeNode) -> None:
        self._node = node
        self._parser = RespParser()
        self._outbound = bytearray()
        self._session: dict[str, Any] = {}
        self.closed = False

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectError("Write to a closed stream.")
        node = self._node
        node.bytes_received += len(data)
        self._parser.feed(data)
        while True:
            request = self._parser.gets()
            if not request:
                break
            if node.drop_next:
                node.drop_next -= 1
                node.commands.append(request)
                self._outbound.clear()
                self.closed = True
                return
            self._outbound.extend(encode_reply(node.handle(request, self._session)))

    async def read(self, n: int = 65536) -> bytes:
        if self.closed or self._node.down:
            return b""
        size = min(n, self._node.chunk_size or n)
        chunk = bytes(self._outbound[:size])
        del self._outbound[:size]
        return chunk

    async def close(self) -> None:
        self.closed = True


class FakeNetwork:
    """Addressable fake nodes plus the shared keyspace they serve."""

    def __init__(self) -> None:
        self.nodes: dict[NodeAddress, FakeNode] = {}
        self.store: dict[bytes, Any] = {}
        self.ttl: dict[bytes, int] = {}
        self.opened: list[NodeAddress] = []
        self.stale_view: dict[FakeNode, dict[FakeNode, range]] = {}

    def add_node(self, host: str = "10.0.0.1", port: int = 6379) -> FakeNode:
        node = FakeNode(self, NodeAddress(host, port))
        self.nodes[node.address] = node
        return node

    def make_cluster(self, *spans: tuple[int, int]) -> list[FakeNode]:
        nodes = []
        for index, (start, end) in enumerate(spans):
            node = self.add_node("10.0.1.%d" % (index + 1), 7000 + index)
            node.slots = set(range(start, end + 1))
            nodes.append(node)
        return nodes

    def add_sentinel(self, master: FakeNode, name: str = "mymaster", port: int = 26379) -> FakeNode:
        sentinel = self.add_node("10.0.2.1", port)
        sentinel.monitored = {name: master}
        return sentinel

    def owner(self, slot: int) -> FakeNode | None:
        for node in self.nodes.values():
            if node.slots is not None and slot in node.slots:
                return node
        return None

    def cluster_nodes_text(self, asked: FakeNode) -> str:
        view = self.stale_view.get(asked)
        lines = []
        for node in self.nodes.values():
            if node.slots is None:
                continue
            flags = "myself,master" if node is asked else "master"
            if view is not None:
                spans = [view[node]] if node in view else []
            else:
                spans = [range(min(node.slots), max(node.slots) + 1)] if node.slots else []
            slot_text = " ".join(f"{span.start}-{span.stop - 1}" for span in spans)
            lines.append(
                f"{node.node_id} {node.address}@{node.address.port + 10000} {flags} - 0 0 1 connected {slot_text}".rstrip()
            )
        return "\n".join(lines) + "\n"

    async def open(self, profile: ConnectionProfile, address: NodeAddress) -> FakeStream:
        node = self.nodes.get(address)
        if node is None or node.down:
            raise ConnectError(f"Failed to connect to {address}: connection refused")
        node.connections += 1
        self.opened.append(address)
        return FakeStream(node)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def full_coverage(*bounds: int) -> list[tuple[int, int]]:
    """Split 0..16383 at ``bounds`` into contiguous spans."""

    edges = [0, *bounds, SLOT_COUNT]
    return [(edges[i], edges[i + 1] - 1) for i in range(len(edges) - 1)]
