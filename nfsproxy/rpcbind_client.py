"""Client calls to an rpcbind/portmap service over TCP."""

from __future__ import annotations

import random
import socket
import struct
from contextlib import ExitStack, suppress
from typing import Optional

from .header import MSG_TYPE_CALL, MSG_TYPE_REPLY, PORTMAP_PROGRAM
from .record import read_record, write_record
from .rpcbind_server import AUTH_NONE, MSG_ACCEPTED, PROTO_TCP, SUCCESS, pack_string

RPC_VERSION = 2
PORTMAP_V2 = 2
RPCBIND_V4 = 4
PROC_SET = 1
PROC_GETPORT = 3

CONNECT_TIMEOUT = 3.0
IO_TIMEOUT = 5.0
PROBE_TIMEOUT = 1.0
DEFAULT_OWNER = "nfsproxy"

_LOCAL_PROBES = ("127.0.0.1", "::1")
_U32 = struct.Struct(">I")
_CALL_HEAD = struct.Struct(">10I")
_MIN_REPLY_SIZE = 28


class RpcbindError(ValueError):
    """Raised when an rpcbind reply is malformed or reports failure."""


def local_rpcbind_host() -> Optional[str]:
    """Return a local host literal with an rpcbind listener on port 111, or None."""
    for host in _LOCAL_PROBES:
        try:
            conn = socket.create_connection((host, 111), timeout=PROBE_TIMEOUT)
        except OSError:
            continue
        with suppress(OSError):
            conn.close()
        return host
    return None


def local_rpcbind_available() -> bool:
    """Whether a local rpcbind/portmap TCP listener responds."""
    return local_rpcbind_host() is not None


def _local_owner() -> str:
    try:
        name = socket.gethostname()
    except OSError:
        name = ""
    return name if name.strip() else DEFAULT_OWNER


def _call_head(xid: int, version: int, proc: int) -> bytes:
    return _CALL_HEAD.pack(
        xid,
        MSG_TYPE_CALL,
        RPC_VERSION,
        PORTMAP_PROGRAM,
        version,
        proc,
        AUTH_NONE,
        0,
        AUTH_NONE,
        0,
    )


def build_getport_call(xid: int, program: int, version: int) -> bytes:
    """Encode a portmap v2 GETPORT call for a TCP mapping."""
    return _call_head(xid, PORTMAP_V2, PROC_GETPORT) + struct.pack(
        ">4I", program, version, PROTO_TCP, 0
    )


def build_set_call(xid: int, program: int, version: int, port: int) -> bytes:
    """Encode a portmap v2 SET call for a TCP mapping."""
    return _call_head(xid, PORTMAP_V2, PROC_SET) + struct.pack(
        ">4I", program, version, PROTO_TCP, port
    )


def build_rpcb_set_call_v4(
    xid: int, program: int, version: int, netid: str, uaddr: str
) -> bytes:
    """Encode an rpcbind v4 SET call; the owner is the local host name."""
    return b"".join(
        (
            _call_head(xid, RPCBIND_V4, PROC_SET),
            struct.pack(">2I", program, version),
            pack_string(netid),
            pack_string(uaddr),
            pack_string(_local_owner().strip()),
        )
    )


def parse_accepted_reply_prefix(payload: bytes, expect_xid: int) -> int:
    """Check a successful accepted reply and return the offset of its results."""
    size = len(payload)
    if size < _MIN_REPLY_SIZE:
        raise RpcbindError(f"short rpcbind reply: {size}")
    xid, msg_type, reply_stat = struct.unpack_from(">3I", payload)
    if xid != expect_xid:
        raise RpcbindError("xid mismatch")
    if msg_type != MSG_TYPE_REPLY:
        raise RpcbindError("not a reply")
    if reply_stat != MSG_ACCEPTED:
        raise RpcbindError("rpc denied reply")
    pos = 12
    (verf_len,) = _U32.unpack_from(payload, pos + 4)
    pos += 8
    if pos + verf_len > size:
        raise RpcbindError("bad verifier length")
    pos += verf_len + (-verf_len % 4)
    if pos + 4 > size:
        raise RpcbindError("short accept stat")
    (accept_stat,) = _U32.unpack_from(payload, pos)
    if accept_stat != SUCCESS:
        raise RpcbindError("rpc accept_stat not success")
    return pos + 4


def parse_getport_reply(payload: bytes, expect_xid: int) -> int:
    """Return the port carried by a GETPORT reply."""
    pos = parse_accepted_reply_prefix(payload, expect_xid)
    if pos + 4 > len(payload):
        raise RpcbindError("short getport result")
    (port,) = _U32.unpack_from(payload, pos)
    if port > 0xFFFF:
        raise RpcbindError(f"invalid port {port}")
    return port


def parse_set_reply(payload: bytes, expect_xid: int) -> bool:
    """Return the boolean result of a SET reply."""
    pos = parse_accepted_reply_prefix(payload, expect_xid)
    if pos + 4 > len(payload):
        raise RpcbindError("short set result")
    (value,) = _U32.unpack_from(payload, pos)
    return value != 0


def _exchange(host: str, rpcbind_port: int, call: bytes) -> bytes:
    with ExitStack() as stack:
        conn = socket.create_connection((host, rpcbind_port), timeout=CONNECT_TIMEOUT)
        stack.callback(conn.close)
        conn.settimeout(IO_TIMEOUT)
        writer = stack.enter_context(conn.makefile("wb"))
        reader = stack.enter_context(conn.makefile("rb"))
        write_record(writer, call)
        return read_record(reader)


def _new_xid() -> int:
    return random.getrandbits(32)


def query_port(host: str, rpcbind_port: int, program: int, version: int) -> int:
    """Ask portmap v2 at host:rpcbind_port for the TCP port of program/version."""
    xid = _new_xid()
    reply = _exchange(host, rpcbind_port, build_getport_call(xid, program, version))
    return parse_getport_reply(reply, xid)


def register_tcp_mapping(
    host: str, rpcbind_port: int, program: int, version: int, port: int
) -> bool:
    """Register a TCP mapping with a portmap v2 SET call."""
    xid = _new_xid()
    reply = _exchange(host, rpcbind_port, build_set_call(xid, program, version, port))
    return parse_set_reply(reply, xid)


def register_rpcb_mapping_v4(
    host: str,
    rpcbind_port: int,
    program: int,
    version: int,
    netid: str,
    uaddr: str,
) -> bool:
    """Register a netid/universal-address mapping with an rpcbind v4 SET call."""
    xid = _new_xid()
    reply = _exchange(
        host, rpcbind_port, build_rpcb_set_call_v4(xid, program, version, netid, uaddr)
    )
    return parse_set_reply(reply, xid)