import socket
import struct
import threading
from contextlib import suppress
from unittest import mock

import pytest

from nfsproxy.header import parse_call_header
from nfsproxy.rpcbind_client import (
    RpcbindError,
    build_getport_call,
    build_rpcb_set_call_v4,
    build_set_call,
    local_rpcbind_available,
    local_rpcbind_host,
    parse_accepted_reply_prefix,
    parse_getport_reply,
    parse_set_reply,
    query_port,
    register_rpcb_mapping_v4,
    register_tcp_mapping,
)
from nfsproxy.rpcbind_server import RpcbindServer, XdrDecoder, accepted_reply, pack_u32


@pytest.fixture
def rpcbind_port():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen()
    server = RpcbindServer(host4="127.0.0.1", nfs_port=2049, mount_port=20048)

    def run():
        with suppress(OSError):
            server.serve(listener)

    threading.Thread(target=run, daemon=True).start()
    yield listener.getsockname()[1]
    listener.close()


def test_getport_call_layout():
    call = build_getport_call(7, 100003, 3)
    header = parse_call_header(call)
    assert (header.xid, header.rpc_vers, header.program, header.version, header.proc) == (
        7,
        2,
        100000,
        2,
        3,
    )
    assert struct.unpack(">8I", call[24:]) == (0, 0, 0, 0, 100003, 3, 6, 0)


def test_set_call_layout():
    call = build_set_call(9, 100005, 1, 20048)
    header = parse_call_header(call)
    assert (header.version, header.proc) == (2, 1)
    assert struct.unpack(">8I", call[24:]) == (0, 0, 0, 0, 100005, 1, 6, 20048)


def test_rpcb_set_call_v4_fields():
    with mock.patch("socket.gethostname", return_value="  host.example.com "):
        call = build_rpcb_set_call_v4(11, 100003, 3, "tcp", "127.0.0.1.8.1")
    header = parse_call_header(call)
    assert (header.version, header.proc) == (4, 1)
    dec = XdrDecoder(call[24:])
    dec.skip_opaque_auth()
    dec.skip_opaque_auth()
    assert dec.u32() == 100003
    assert dec.u32() == 3
    assert dec.xdr_string() == "tcp"
    assert dec.xdr_string() == "127.0.0.1.8.1"
    assert dec.xdr_string() == "host.example.com"
    assert dec.position == len(dec.data)
    assert len(call) % 4 == 0


def test_rpcb_set_call_v4_default_owner():
    with mock.patch("socket.gethostname", return_value="   "):
        call = build_rpcb_set_call_v4(1, 100003, 3, "tcp6", "")
    dec = XdrDecoder(call[24:])
    dec.skip_opaque_auth()
    dec.skip_opaque_auth()
    dec.u32()
    dec.u32()
    dec.xdr_string()
    dec.xdr_string()
    assert dec.xdr_string() == "nfsproxy"


def test_getport_reply_round_trip():
    reply = accepted_reply(42, pack_u32(2049))
    assert parse_getport_reply(reply, 42) == 2049
    assert parse_accepted_reply_prefix(reply, 42) == 24


def test_set_reply_values():
    assert parse_set_reply(accepted_reply(5, pack_u32(1)), 5) is True
    assert parse_set_reply(accepted_reply(5, pack_u32(0)), 5) is False


def test_verifier_body_is_skipped():
    reply = struct.pack(">5I", 3, 1, 0, 1, 5) + b"abcde\x00\x00\x00" + struct.pack(">2I", 0, 111)
    assert parse_getport_reply(reply, 3) == 111


@pytest.mark.parametrize(
    "payload, message",
    [
        (b"\x00" * 27, "short rpcbind reply"),
        (accepted_reply(2, pack_u32(1)), "xid mismatch"),
        (struct.pack(">7I", 1, 0, 0, 0, 0, 0, 0), "not a reply"),
        (struct.pack(">7I", 1, 1, 1, 0, 0, 0, 0), "rpc denied reply"),
        (struct.pack(">7I", 1, 1, 0, 0, 0, 1, 0), "accept_stat not success"),
        (struct.pack(">7I", 1, 1, 0, 0, 400, 0, 0), "bad verifier length"),
        (struct.pack(">7I", 1, 1, 0, 0, 8, 0, 0), "short accept stat"),
    ],
)
def test_prefix_errors(payload, message):
    with pytest.raises(RpcbindError, match=message):
        parse_accepted_reply_prefix(payload, 1)


def test_getport_reply_rejects_large_port():
    with pytest.raises(RpcbindError, match="invalid port"):
        parse_getport_reply(accepted_reply(1, pack_u32(70000)), 1)


def test_short_results():
    reply = accepted_reply(1, b"") + b"\x00" * 4
    with pytest.raises(RpcbindError, match="short getport result"):
        parse_getport_reply(reply[:24] + b"", 1) if len(reply[:24]) >= 28 else parse_getport_reply(
            struct.pack(">5I", 1, 1, 0, 0, 4) + b"\x00" * 4 + struct.pack(">I", 0), 1
        )
    with pytest.raises(RpcbindError, match="short set result"):
        parse_set_reply(struct.pack(">5I", 1, 1, 0, 0, 4) + b"\x00" * 4 + struct.pack(">I", 0), 1)


def test_query_port_against_server(rpcbind_port):
    assert query_port("127.0.0.1", rpcbind_port, 100003, 3) == 2049
    assert query_port("127.0.0.1", rpcbind_port, 100005, 1) == 20048
    assert query_port("127.0.0.1", rpcbind_port, 100003, 4) == 0


def test_register_tcp_mapping_against_server(rpcbind_port):
    assert register_tcp_mapping("127.0.0.1", rpcbind_port, 100003, 3, 2049) is False


def test_local_rpcbind_absent():
    with mock.patch("socket.create_connection", side_effect=OSError("refused")):
        assert local_rpcbind_host() is None
        assert local_rpcbind_available() is False


def test_local_rpcbind_falls_back_to_ipv6():
    conn = mock.MagicMock()
    with mock.patch("socket.create_connection", side_effect=[OSError("refused"), conn]) as dial:
        assert local_rpcbind_host() == "::1"
    assert dial.call_args_list[1].args[0] == ("::1", 111)
    assert conn.close.called