import struct

import pytest

from nfsproxy.header import (
    MSG_TYPE_CALL,
    MSG_TYPE_REPLY,
    NFS_PROGRAM,
    CallHeader,
    HeaderError,
    ReplyHeader,
    mount_proc_name,
    parse_call_header,
    parse_reply_header,
    portmap_proc_name,
    proc_name,
    proc_name_for,
)


def _call(xid, program, version, proc, msg_type=MSG_TYPE_CALL):
    return struct.pack(">6I", xid, msg_type, 2, program, version, proc)


def test_parse_call_header_fields():
    payload = _call(42, NFS_PROGRAM, 3, 6) + b"\x00" * 16
    assert parse_call_header(payload) == CallHeader(
        xid=42, msg_type=MSG_TYPE_CALL, rpc_vers=2, program=NFS_PROGRAM, version=3, proc=6
    )


def test_parse_call_header_short():
    with pytest.raises(HeaderError):
        parse_call_header(_call(1, NFS_PROGRAM, 3, 0)[:23])


def test_parse_call_header_rejects_reply():
    with pytest.raises(HeaderError):
        parse_call_header(_call(1, NFS_PROGRAM, 3, 0, msg_type=MSG_TYPE_REPLY))


def test_parse_reply_header_fields():
    payload = struct.pack(">3I", 7, MSG_TYPE_REPLY, 0)
    assert parse_reply_header(payload) == ReplyHeader(xid=7, msg_type=MSG_TYPE_REPLY)


def test_parse_reply_header_short():
    with pytest.raises(HeaderError):
        parse_reply_header(b"\x00\x00\x00\x01")


def test_parse_reply_header_rejects_call():
    with pytest.raises(HeaderError):
        parse_reply_header(struct.pack(">2I", 7, MSG_TYPE_CALL))


def test_header_error_is_value_error():
    with pytest.raises(ValueError):
        parse_reply_header(b"")


@pytest.mark.parametrize(
    "proc, name",
    [(0, "NULL"), (1, "GETATTR"), (6, "READ"), (7, "WRITE"), (17, "READDIRPLUS"), (21, "COMMIT")],
)
def test_proc_name(proc, name):
    assert proc_name(proc) == name


def test_proc_name_unknown():
    assert proc_name(22) == "PROC_22"


@pytest.mark.parametrize("proc, name", [(1, "MNT"), (3, "UMNT"), (5, "EXPORT")])
def test_mount_proc_name(proc, name):
    assert mount_proc_name(proc) == name


def test_mount_proc_name_unknown_prefix():
    assert mount_proc_name(9).startswith("MNT_PROC_")


@pytest.mark.parametrize("proc, name", [(1, "SET"), (3, "GETPORT"), (4, "DUMP"), (5, "CALLIT")])
def test_portmap_proc_name(proc, name):
    assert portmap_proc_name(proc) == name


def test_portmap_proc_name_unknown_prefix():
    assert portmap_proc_name(6).startswith("PMAP_PROC_")


def test_proc_name_for_dispatches_by_program():
    assert proc_name_for(NFS_PROGRAM, 3) == "LOOKUP"
    assert proc_name_for(100005, 1) == "MNT"
    assert proc_name_for(100000, 3) == "GETPORT"


def test_proc_name_for_unknown_program():
    assert proc_name_for(12345, 3) == proc_name(99).replace("99", "3")