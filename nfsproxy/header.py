"""ONC RPC call and reply header parsing and procedure naming."""

from __future__ import annotations

import struct
from dataclasses import dataclass

MSG_TYPE_CALL = 0
MSG_TYPE_REPLY = 1

PORTMAP_PROGRAM = 100000
NFS_PROGRAM = 100003
MOUNT_PROGRAM = 100005

_CALL = struct.Struct(">6I")
_REPLY = struct.Struct(">2I")

_NFS_PROCS = (
    "NULL",
    "GETATTR",
    "SETATTR",
    "LOOKUP",
    "ACCESS",
    "READLINK",
    "READ",
    "WRITE",
    "CREATE",
    "MKDIR",
    "SYMLINK",
    "MKNOD",
    "REMOVE",
    "RMDIR",
    "RENAME",
    "LINK",
    "READDIR",
    "READDIRPLUS",
    "FSSTAT",
    "FSINFO",
    "PATHCONF",
    "COMMIT",
)

_MOUNT_PROCS = ("NULL", "MNT", "DUMP", "UMNT", "UMNTALL", "EXPORT")

_PORTMAP_PROCS = ("NULL", "SET", "UNSET", "GETPORT", "DUMP", "CALLIT")


class HeaderError(ValueError):
    """Raised when an RPC message header cannot be parsed."""


@dataclass(frozen=True)
class CallHeader:
    xid: int
    msg_type: int
    rpc_vers: int
    program: int
    version: int
    proc: int


@dataclass(frozen=True)
class ReplyHeader:
    xid: int
    msg_type: int


def parse_call_header(payload: bytes) -> CallHeader:
    """Parse the fixed part of an RPC CALL message."""
    if len(payload) < _CALL.size:
        raise HeaderError(f"short call payload: {len(payload)}")
    header = CallHeader(*_CALL.unpack_from(payload))
    if header.msg_type != MSG_TYPE_CALL:
        raise HeaderError(f"not a CALL message: {header.msg_type}")
    return header


def parse_reply_header(payload: bytes) -> ReplyHeader:
    """Parse the xid and message type of an RPC REPLY message."""
    if len(payload) < _REPLY.size:
        raise HeaderError(f"short reply payload: {len(payload)}")
    header = ReplyHeader(*_REPLY.unpack_from(payload))
    if header.msg_type != MSG_TYPE_REPLY:
        raise HeaderError(f"not a REPLY message: {header.msg_type}")
    return header


def _lookup(names: tuple[str, ...], proc: int, fallback_prefix: str) -> str:
    if 0 <= proc < len(names):
        return names[proc]
    return f"{fallback_prefix}{proc}"


def proc_name(proc: int) -> str:
    """Name of an NFSv3 procedure."""
    return _lookup(_NFS_PROCS, proc, "PROC_")


def mount_proc_name(proc: int) -> str:
    """Name of a MOUNT procedure."""
    return _lookup(_MOUNT_PROCS, proc, "MNT_PROC_")


def portmap_proc_name(proc: int) -> str:
    """Name of a portmap procedure."""
    return _lookup(_PORTMAP_PROCS, proc, "PMAP_PROC_")


def proc_name_for(program: int, proc: int) -> str:
    """Name of a procedure within the given RPC program."""
    if program == NFS_PROGRAM:
        return proc_name(proc)
    if program == MOUNT_PROGRAM:
        return mount_proc_name(proc)
    if program == PORTMAP_PROGRAM:
        return portmap_proc_name(proc)
    return f"PROC_{proc}"