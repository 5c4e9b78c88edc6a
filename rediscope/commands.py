"""Command metadata: write classification and key positions for routing."""

from __future__ import annotations

from typing import Sequence

WRITE_COMMANDS = frozenset(
    {
        # generic keyspace
        "DEL", "UNLINK", "EXPIRE", "EXPIREAT", "PEXPIRE", "PEXPIREAT", "PERSIST",
        "RENAME", "RENAMENX", "MOVE", "COPY", "RESTORE", "MIGRATE", "SORT",
        "FLUSHDB", "FLUSHALL", "SWAPDB",
        # strings
        "SET", "SETNX", "SETEX", "PSETEX", "MSET", "MSETNX", "GETSET", "GETDEL", "GETEX",
        "APPEND", "SETRANGE", "INCR", "INCRBY", "INCRBYFLOAT", "DECR", "DECRBY",
        "SETBIT", "BITOP", "BITFIELD",
        # lists
        "LPUSH", "LPUSHX", "RPUSH", "RPUSHX", "LINSERT", "LSET", "LREM", "LTRIM",
        "LPOP", "RPOP", "RPOPLPUSH", "LMOVE", "BLPOP", "BRPOP", "BRPOPLPUSH", "BLMOVE",
        "LMPOP", "BLMPOP",
        # hashes
        "HSET", "HSETNX", "HMSET", "HDEL", "HINCRBY", "HINCRBYFLOAT", "HEXPIRE",
        "HPEXPIRE", "HEXPIREAT", "HPEXPIREAT", "HPERSIST", "HGETDEL", "HGETEX", "HSETEX",
        # sets
        "SADD", "SREM", "SPOP", "SMOVE", "SINTERSTORE", "SUNIONSTORE", "SDIFFSTORE",
        # sorted sets
        "ZADD", "ZINCRBY", "ZREM", "ZREMRANGEBYSCORE", "ZREMRANGEBYRANK", "ZREMRANGEBYLEX",
        "ZPOPMIN", "ZPOPMAX", "BZPOPMIN", "BZPOPMAX", "ZMPOP", "BZMPOP",
        "ZINTERSTORE", "ZUNIONSTORE", "ZDIFFSTORE", "ZRANGESTORE",
        # streams
        "XADD", "XDEL", "XTRIM", "XGROUP", "XACK", "XCLAIM", "XAUTOCLAIM", "XSETID",
        # geo / hyperloglog
        "GEOADD", "GEORADIUS", "GEORADIUSBYMEMBER", "GEOSEARCHSTORE", "PFADD", "PFMERGE",
        # vector sets
        "VADD", "VREM", "VSETATTR",
        # updates the consumer group pending list
        "XREADGROUP",
        # scripting and server
        "EVAL", "EVALSHA", "FCALL", "PUBLISH", "SPUBLISH",
        "REPLICAOF", "SLAVEOF", "FAILOVER", "SHUTDOWN", "SAVE", "BGSAVE", "BGREWRITEAOF",
        "DEBUG", "RESTORE-ASKING", "PFDEBUG", "PFSELFTEST",
    }
)

# Administrative commands whose write-ness depends on the subcommand.
WRITE_SUBCOMMANDS = frozenset(
    {
        ("CONFIG", "SET"),
        ("CONFIG", "RESETSTAT"),
        ("CONFIG", "REWRITE"),
        ("SCRIPT", "FLUSH"),
        ("SCRIPT", "LOAD"),
        ("SCRIPT", "KILL"),
        ("FUNCTION", "LOAD"),
        ("FUNCTION", "DELETE"),
        ("FUNCTION", "FLUSH"),
        ("FUNCTION", "RESTORE"),
        ("FUNCTION", "KILL"),
        ("ACL", "SETUSER"),
        ("ACL", "DELUSER"),
        ("ACL", "LOAD"),
        ("ACL", "SAVE"),
        ("MODULE", "LOAD"),
        ("MODULE", "LOADEX"),
        ("MODULE", "UNLOAD"),
        ("CLIENT", "KILL"),
        ("CLIENT", "PAUSE"),
        ("CLIENT", "UNPAUSE"),
        ("CLIENT", "NO-EVICT"),
        ("SLOWLOG", "RESET"),
        ("LATENCY", "RESET"),
        ("CLUSTER", "ADDSLOTS"),
        ("CLUSTER", "ADDSLOTSRANGE"),
        ("CLUSTER", "DELSLOTS"),
        ("CLUSTER", "DELSLOTSRANGE"),
        ("CLUSTER", "SETSLOT"),
        ("CLUSTER", "MEET"),
        ("CLUSTER", "FORGET"),
        ("CLUSTER", "REPLICATE"),
        ("CLUSTER", "SAVECONFIG"),
        ("CLUSTER", "BUMPEPOCH"),
        ("CLUSTER", "SET-CONFIG-EPOCH"),
        ("CLUSTER", "FLUSHSLOTS"),
        ("CLUSTER", "RESET"),
        ("CLUSTER", "FAILOVER"),
        ("SENTINEL", "SET"),
        ("SENTINEL", "MONITOR"),
        ("SENTINEL", "REMOVE"),
        ("SENTINEL", "RESET"),
        ("SENTINEL", "FAILOVER"),
    }
)

KEYLESS_COMMANDS = frozenset(
    {
        "PING", "ECHO", "AUTH", "HELLO", "SELECT", "INFO", "DBSIZE", "SCAN", "KEYS",
        "RANDOMKEY", "ROLE", "TIME", "CLIENT", "CONFIG", "CLUSTER", "COMMAND",
        "SENTINEL", "ACL", "SCRIPT", "FUNCTION", "FLUSHDB", "FLUSHALL", "SWAPDB",
        "MEMORY", "SLOWLOG", "LATENCY", "LASTSAVE", "READONLY", "READWRITE", "ASKING",
        "MULTI", "EXEC", "DISCARD", "WAIT", "PUBLISH", "SPUBLISH", "REPLICAOF", "SLAVEOF",
        "FAILOVER", "SHUTDOWN", "SAVE", "BGSAVE", "BGREWRITEAOF", "DEBUG", "MODULE",
    }
)

# Commands whose first key follows a numkeys argument at position 2.
_NUMKEYS_COMMANDS = frozenset({"EVAL", "EVALSHA", "EVAL_RO", "EVALSHA_RO", "FCALL", "FCALL_RO"})


def command_name(args: Sequence[object]) -> str:
    if not args:
        raise ValueError("Empty command.")
    head = args[0]
    if isinstance(head, (bytes, bytearray)):
        head = bytes(head).decode("utf-8", errors="replace")
    return str(head).upper()


def _arg_text(value: object) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace").upper()
    return str(value).upper()


def is_mutating(args: Sequence[object]) -> bool:
    """Return True when the command may modify data or server state."""

    name = command_name(args)
    if name in WRITE_COMMANDS:
        return True
    if len(args) > 1 and (name, _arg_text(args[1])) in WRITE_SUBCOMMANDS:
        return True
    if name == "MEMORY" and len(args) > 1 and _arg_text(args[1]) == "PURGE":
        return True
    return False


def first_key(args: Sequence[object]) -> bytes | None:
    """Return the first key argument used to route a command, if any."""

    name = command_name(args)
    if name in KEYLESS_COMMANDS:
        return None
    if name in _NUMKEYS_COMMANDS:
        if len(args) < 4:
            return None
        try:
            numkeys = int(_arg_text(args[2]))
        except ValueError:
            return None
        return _key_bytes(args[3]) if numkeys > 0 else None
    if name in {"XREAD", "XREADGROUP"}:
        upper = [_arg_text(arg) for arg in args]
        if "STREAMS" in upper:
            index = upper.index("STREAMS") + 1
            if index < len(args):
                return _key_bytes(args[index])
        return None
    if len(args) < 2:
        return None
    return _key_bytes(args[1])


def _key_bytes(value: object) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return str(value).encode("utf-8")


__all__ = [
    "KEYLESS_COMMANDS",
    "WRITE_COMMANDS",
    "WRITE_SUBCOMMANDS",
    "command_name",
    "first_key",
    "is_mutating",
]
