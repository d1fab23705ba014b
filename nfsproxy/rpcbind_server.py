"""Minimal TCP rpcbind/portmap responder advertising the proxy's NFS and MOUNT ports."""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
import threading
from contextlib import ExitStack, suppress
from dataclasses import dataclass
from typing import Optional

from .header import (
    MOUNT_PROGRAM,
    MSG_TYPE_REPLY,
    NFS_PROGRAM,
    PORTMAP_PROGRAM,
    HeaderError,
    parse_call_header,
)
from .record import read_record, write_record

PROTO_TCP = 6
MSG_ACCEPTED = 0
SUCCESS = 0
AUTH_NONE = 0
DEFAULT_RPCBIND_PORT = 111

_CALL_HEADER_SIZE = 24
_U32 = struct.Struct(">I")
_REPLY_HEAD = struct.Struct(">6I")
_MAPPING = struct.Struct(">5I")


class XdrError(ValueError):
    """Raised when XDR data ends before a value is complete."""


def _padding(length: int) -> int:
    return -length % 4


class XdrDecoder:
    """Sequential reader of XDR-encoded values."""

    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.position = 0

    def _take(self, length: int) -> bytes:
        end = self.position + length
        if end > len(self.data):
            raise XdrError(f"need {length} bytes at offset {self.position}")
        chunk = self.data[self.position : end]
        self.position = end
        return chunk

    def u32(self) -> int:
        """Read an unsigned 32-bit integer."""
        (value,) = _U32.unpack(self._take(4))
        return value

    def _opaque(self) -> bytes:
        start = self.position
        try:
            length = self.u32()
            body = self._take(length)
            self._take(_padding(length))
        except XdrError:
            self.position = start
            raise
        return body

    def skip_opaque_auth(self) -> None:
        """Skip an opaque_auth structure (flavor and body)."""
        start = self.position
        try:
            self.u32()
            self._opaque()
        except XdrError:
            self.position = start
            raise

    def xdr_string(self) -> str:
        """Read a string, returning it with surrounding whitespace removed."""
        return self._opaque().decode("utf-8", errors="replace").strip()


def pack_u32(value: int) -> bytes:
    """Encode an unsigned 32-bit integer."""
    return _U32.pack(value)


def pack_string(s: str) -> bytes:
    """Encode a string as XDR: length, bytes, zero padding."""
    body = s.encode("utf-8")
    return _U32.pack(len(body)) + body + b"\x00" * _padding(len(body))


def accepted_reply(xid: int, results: bytes) -> bytes:
    """Build a successful accepted RPC reply with AUTH_NONE verifier."""
    return _REPLY_HEAD.pack(xid, MSG_TYPE_REPLY, MSG_ACCEPTED, AUTH_NONE, 0, SUCCESS) + bytes(
        results
    )


def universal_addr(host: str, port: int) -> str:
    """Format host and port as an rpcbind universal address; empty if host is unusable."""
    if not host.strip():
        return ""
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return ""
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.scope_id:
            return ""
        if ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
    high, low = (port >> 8) & 0xFF, port & 0xFF
    if isinstance(ip, ipaddress.IPv4Address):
        return f"{ip}.{high}.{low}"
    return ".".join(str(b) for b in (*ip.packed, high, low))


@dataclass
class RpcbindServer:
    """Answers portmap v2 and rpcbind v3/v4 queries for a fixed set of programs."""

    host4: str = ""
    host6: str = ""
    rpcb_port: int = 0
    nfs_port: int = 0
    mount_port: int = 0
    logger: Optional[logging.Logger] = None
    verbose: bool = False

    @property
    def _log(self) -> logging.Logger:
        if self.logger is None:
            self.logger = logging.getLogger(__name__)
        return self.logger

    def serve(self, listener: socket.socket) -> None:
        """Accept connections forever, each on its own thread.

        Returns only by raising the error that ended ``accept``.
        """
        while True:
            conn, _ = listener.accept()
            threading.Thread(target=self.handle_connection, args=(conn,), daemon=True).start()

    def handle_connection(self, conn: socket.socket) -> None:
        """Serve calls on one connection until it ends or sends something malformed."""
        with ExitStack() as stack:
            stack.callback(_quiet_close, conn)
            reader = conn.makefile("rb")
            writer = conn.makefile("wb")
            stack.callback(_quiet_close, reader)
            stack.callback(_quiet_close, writer)
            while True:
                try:
                    record = read_record(reader)
                except EOFError:
                    return
                except (OSError, ValueError) as exc:
                    self._log.warning("rpcbind read error: %s", exc)
                    return

                try:
                    header = parse_call_header(record)
                except HeaderError as exc:
                    if self.verbose:
                        self._log.info("rpcbind parse call header failed: %s", exc)
                    return
                if self.verbose:
                    self._log.info(
                        "rpcbind call xid=%d vers=%d proc=%d",
                        header.xid,
                        header.version,
                        header.proc,
                    )
                if header.program != PORTMAP_PROGRAM:
                    if self.verbose:
                        self._log.info("rpcbind ignoring non-portmap program=%d", header.program)
                    with suppress(OSError, ValueError):
                        write_record(writer, accepted_reply(header.xid, b""))
                    continue

                args = record[_CALL_HEADER_SIZE:]
                if len(args) < 16:
                    return
                dec = XdrDecoder(args)
                try:
                    dec.skip_opaque_auth()
                    dec.skip_opaque_auth()
                except XdrError:
                    return

                if header.version == 2:
                    result = self.handle_v2(header.proc, dec)
                elif header.version in (3, 4):
                    result = self.handle_v3v4(header.proc, dec)
                else:
                    if self.verbose:
                        self._log.info("rpcbind unsupported version=%d", header.version)
                    result = b""

                try:
                    write_record(writer, accepted_reply(header.xid, result))
                except (OSError, ValueError):
                    return

    def handle_v2(self, proc: int, dec: XdrDecoder) -> bytes:
        """Result body for a portmap v2 procedure."""
        if proc == 0:
            return b""
        if proc == 3:
            try:
                prog, vers, proto, _ = (dec.u32() for _ in range(4))
            except XdrError:
                if self.verbose:
                    self._log.info("rpcbind v2 GETPORT decode failed")
                return pack_u32(0)
            if proto != PROTO_TCP:
                if self.verbose:
                    self._log.info("rpcbind v2 GETPORT non-tcp proto=%d", proto)
                return pack_u32(0)
            port = self.lookup_port(prog, vers)
            if self.verbose:
                self._log.info(
                    "rpcbind v2 GETPORT program=%d version=%d => %d", prog, vers, port
                )
            return pack_u32(port)
        if proc == 4:
            if self.verbose:
                self._log.info("rpcbind v2 DUMP requested")
            return self.pack_v2_dump()
        if self.verbose:
            self._log.info("rpcbind v2 unsupported proc=%d", proc)
        return pack_u32(0)

    def handle_v3v4(self, proc: int, dec: XdrDecoder) -> bytes:
        """Result body for an rpcbind v3 or v4 procedure."""
        if proc == 0:
            return b""
        if proc not in (3, 9):
            if self.verbose:
                self._log.info("rpcbind v3/v4 unsupported proc=%d", proc)
            return b""
        try:
            prog = dec.u32()
            vers = dec.u32()
            netid = dec.xdr_string()
            dec.xdr_string()  # r_addr
            dec.xdr_string()  # r_owner
        except XdrError:
            if self.verbose:
                self._log.info("rpcbind GETADDR decode failed")
            return pack_string("")
        if netid not in ("tcp", "tcp6"):
            if self.verbose:
                self._log.info("rpcbind GETADDR unsupported netid=%r", netid)
            return pack_string("")
        port = self.lookup_port(prog, vers)
        if port == 0:
            if self.verbose:
                self._log.info(
                    "rpcbind GETADDR program=%d version=%d not found", prog, vers
                )
            return pack_string("")
        host = self.host6 if netid == "tcp6" else self.host4
        if self.verbose:
            self._log.info(
                "rpcbind GETADDR %s program=%d version=%d => host=%r port=%d",
                netid,
                prog,
                vers,
                host,
                port,
            )
        return pack_string(universal_addr(host, port))

    def _rpcbind_port(self) -> int:
        return self.rpcb_port or DEFAULT_RPCBIND_PORT

    def lookup_port(self, program: int, version: int) -> int:
        """TCP port registered for a program and version, or 0."""
        if program == PORTMAP_PROGRAM and version in (2, 3, 4):
            return self._rpcbind_port()
        if program == NFS_PROGRAM and version == 3:
            return self.nfs_port
        if program == MOUNT_PROGRAM and version in (1, 2, 3):
            return self.mount_port
        return 0

    def pack_v2_dump(self) -> bytes:
        """Encode the portmap v2 DUMP list of registered mappings."""
        entries = [(PORTMAP_PROGRAM, v, PROTO_TCP, self._rpcbind_port()) for v in (2, 3, 4)]
        if self.nfs_port:
            entries.append((NFS_PROGRAM, 3, PROTO_TCP, self.nfs_port))
        if self.mount_port:
            entries.extend((MOUNT_PROGRAM, v, PROTO_TCP, self.mount_port) for v in (1, 2, 3))
        body = b"".join(_MAPPING.pack(1, *entry) for entry in entries)
        return body + pack_u32(0)


def _quiet_close(obj) -> None:
    with suppress(OSError, ValueError):
        obj.close()