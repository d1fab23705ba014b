"""TCP proxy for ONC RPC traffic that injects reply delays and connection drops."""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
import threading
import time
from contextlib import ExitStack, suppress
from dataclasses import dataclass
from typing import Callable, Optional

from .header import (
    NFS_PROGRAM,
    HeaderError,
    parse_call_header,
    parse_reply_header,
    proc_name,
    proc_name_for,
)
from .metrics import MetricSet
from .policy import Action, Manager
from .record import read_record, write_record

DEFAULT_SOURCE_PORT_MIN = 665
DEFAULT_SOURCE_PORT_MAX = 1023
SECURE_DIAL_TIMEOUT = 3.0

_U32 = struct.Struct(">I")


@dataclass(frozen=True)
class ReplySummary:
    """Status fields decoded from an RPC reply."""

    reply_stat: int = 0
    accept_stat: Optional[int] = None
    nfs_status: Optional[int] = None
    decode_error: str = ""


def parse_rpc_reply_summary(payload: bytes, program: int) -> ReplySummary:
    """Decode reply, accept and (for NFS) status fields from a reply payload."""
    size = len(payload)
    if size < 12:
        return ReplySummary(decode_error="short reply")
    (reply_stat,) = _U32.unpack_from(payload, 8)
    if reply_stat != 0:
        return ReplySummary(reply_stat=reply_stat)
    pos = 12
    if pos + 8 > size:
        return ReplySummary(reply_stat=reply_stat, decode_error="short verf header")
    (verf_len,) = _U32.unpack_from(payload, pos + 4)
    pos += 8
    if pos + verf_len > size:
        return ReplySummary(reply_stat=reply_stat, decode_error="bad verf length")
    pos += verf_len + (-verf_len % 4)
    if pos + 4 > size:
        return ReplySummary(reply_stat=reply_stat, decode_error="short accept stat")
    (accept_stat,) = _U32.unpack_from(payload, pos)
    pos += 4
    nfs_status = None
    if program == NFS_PROGRAM and accept_stat == 0 and pos + 4 <= size:
        (nfs_status,) = _U32.unpack_from(payload, pos)
    return ReplySummary(reply_stat=reply_stat, accept_stat=accept_stat, nfs_status=nfs_status)


def _split_host_port(addr: str) -> tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {addr!r}")
        rest = addr[end + 1 :]
        if not rest.startswith(":"):
            raise ValueError(f"missing port in address {addr!r}")
        return addr[1:end], rest[1:]
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if ":" in host:
        raise ValueError(f"too many colons in address {addr!r}")
    return host, port


def _format_duration(seconds: float) -> str:
    return f"{seconds * 1000:.3f}ms"


def _quiet_close(obj) -> None:
    with suppress(OSError, ValueError):
        obj.close()


@dataclass
class _CallMeta:
    program: int
    version: int
    proc: int
    name: str
    sent_at: float


@dataclass(frozen=True)
class _PendingAction:
    procedure: str
    delay_ms: int
    drop: bool


@dataclass
class ProxyServer:
    """Forwards RPC records between clients and one backend, applying the policy."""

    backend_addr: str
    policy: Optional[Manager] = None
    metrics: Optional[MetricSet] = None
    logger: Optional[logging.Logger] = None
    verbose: bool = False
    secure_source_port: bool = False
    source_port_min: int = 0
    source_port_max: int = 0
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    @property
    def _log(self) -> logging.Logger:
        if self.logger is None:
            self.logger = logging.getLogger(__name__)
        return self.logger

    def serve(self, listener: socket.socket) -> None:
        """Accept connections forever, handling each on its own thread.

        Returns only by raising the error that ended ``accept``.
        """
        while True:
            conn, _ = listener.accept()
            threading.Thread(target=self.handle_connection, args=(conn,), daemon=True).start()

    def handle_connection(self, client: socket.socket) -> None:
        """Proxy one client connection until either side ends it."""
        with ExitStack() as stack:
            stack.callback(_quiet_close, client)
            try:
                backend = self.dial_backend()
            except (OSError, ValueError) as exc:
                self._log.warning("backend dial failed: %s", exc)
                return
            stack.callback(_quiet_close, backend)
            _Connection(self, client, backend).run()

    def dial_backend(self) -> socket.socket:
        """Connect to the backend, from a reserved source port when so configured."""
        host, port_text = _split_host_port(self.backend_addr)
        if not self.secure_source_port:
            return socket.create_connection((host, port_text))

        port = int(port_text)
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            try:
                infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
            except OSError:
                infos = []
            if not infos:
                raise OSError(f"backend host resolution failed for secure bind: {host}") from None
            ip = ipaddress.ip_address(infos[0][4][0])
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped

        if ip.version == 6:
            family, local_ip = socket.AF_INET6, "::"
        else:
            family, local_ip = socket.AF_INET, "0.0.0.0"

        low = self.source_port_min if self.source_port_min > 0 else DEFAULT_SOURCE_PORT_MIN
        high = self.source_port_max if self.source_port_max > 0 else DEFAULT_SOURCE_PORT_MAX
        if low > high:
            low, high = high, low

        last_error: Optional[OSError] = None
        for local_port in range(low, high + 1):
            sock = socket.socket(family, socket.SOCK_STREAM)
            try:
                sock.settimeout(SECURE_DIAL_TIMEOUT)
                sock.bind((local_ip, local_port))
                sock.connect((str(ip), port))
                sock.settimeout(None)
            except OSError as exc:
                sock.close()
                last_error = exc
                continue
            if self.verbose:
                self._log.info(
                    "backend secure bind success local_port=%d backend=%s",
                    local_port,
                    self.backend_addr,
                )
            return sock
        raise ConnectionError(
            f"secure bind connect failed across {low}-{high} to {self.backend_addr}: {last_error}"
        ) from last_error


class _Connection:
    """State shared by the two forwarding directions of one proxied connection."""

    def __init__(self, server: ProxyServer, client: socket.socket, backend: socket.socket) -> None:
        self.server = server
        self.log = server._log
        self.client = client
        self.backend = backend
        self.lock = threading.Lock()
        self.pending: dict[int, _PendingAction] = {}
        self.inflight: dict[int, _CallMeta] = {}
        try:
            peer = client.getpeername()
        except OSError:
            peer = None
        if isinstance(peer, tuple) and peer:
            host = str(peer[0])
            self.peer = f"[{host}]:{peer[1]}" if ":" in host else f"{host}:{peer[1]}"
            self.client_ip = host or "default"
        else:
            self.peer = str(peer or "")
            self.client_ip = "default"

    def run(self) -> None:
        if self.server.verbose:
            self.log.info(
                "proxy conn client=%s backend=%s established", self.peer, self.server.backend_addr
            )
        with ExitStack() as stack:
            self.client_reader = self.client.makefile("rb")
            self.client_writer = self.client.makefile("wb")
            self.backend_reader = self.backend.makefile("rb")
            self.backend_writer = self.backend.makefile("wb")
            for stream in (
                self.client_reader,
                self.client_writer,
                self.backend_reader,
                self.backend_writer,
            ):
                stack.callback(_quiet_close, stream)
            replies = threading.Thread(target=self._forward_replies, daemon=True)
            replies.start()
            self._forward_calls()
            replies.join()

    def _close_both(self) -> None:
        for sock in (self.client, self.backend):
            with suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
        if self.server.verbose:
            self.log.info("proxy conn client=%s backend=%s closed", self.peer, self.server.backend_addr)

    def _forward_calls(self) -> None:
        server = self.server
        while True:
            try:
                record = read_record(self.client_reader)
            except EOFError:
                return
            except (OSError, ValueError) as exc:
                self.log.warning("client read record error: %s", exc)
                return

            try:
                header = parse_call_header(record)
            except HeaderError:
                header = None

            if header is not None:
                name = proc_name_for(header.program, header.proc)
                with self.lock:
                    self.inflight[header.xid] = _CallMeta(
                        header.program, header.version, header.proc, name, server.clock()
                    )
                if server.verbose:
                    self.log.info(
                        "forward call xid=%d prog=%d vers=%d proc=%d(%s) -> backend=%s",
                        header.xid,
                        header.program,
                        header.version,
                        header.proc,
                        name,
                        server.backend_addr,
                    )
            elif server.verbose:
                self.log.info(
                    "forward call unparsed payload_len=%d -> backend=%s",
                    len(record),
                    server.backend_addr,
                )

            if header is not None and header.program == NFS_PROGRAM:
                proc = proc_name(header.proc)
                action = (
                    server.policy.action_for(proc, self.client_ip)
                    if server.policy is not None
                    else Action()
                )
                if server.verbose:
                    self.log.info(
                        "call xid=%d proc=%s client=%s action={delay_ms:%d drop:%s}",
                        header.xid,
                        proc,
                        self.client_ip,
                        action.delay_ms,
                        str(action.drop).lower(),
                    )
                if server.metrics is not None:
                    server.metrics.call_forwarded_total.labels(proc).inc()
                if action.delay_ms > 0 or action.drop:
                    with self.lock:
                        self.pending[header.xid] = _PendingAction(
                            proc, action.delay_ms, action.drop
                        )

            try:
                write_record(self.backend_writer, record)
            except (OSError, ValueError) as exc:
                self.log.warning("forward call write error: %s", exc)
                return

    def _forward_replies(self) -> None:
        server = self.server
        metrics = server.metrics
        while True:
            try:
                record = read_record(self.backend_reader)
            except EOFError:
                return
            except (OSError, ValueError) as exc:
                self.log.warning("backend read record error: %s", exc)
                return

            try:
                reply = parse_reply_header(record)
            except HeaderError:
                reply = None

            if reply is not None:
                backend_rt = 0.0
                with self.lock:
                    meta = self.inflight.pop(reply.xid, None)
                    if meta is not None:
                        backend_rt = server.clock() - meta.sent_at
                if meta is not None and metrics is not None:
                    metrics.rpc_backend_roundtrip_seconds.labels(
                        str(meta.program), meta.name
                    ).observe(backend_rt)
                if server.verbose:
                    self._log_reply(reply.xid, meta, backend_rt, record)

                with self.lock:
                    action = self.pending.pop(reply.xid, None)

                if action is not None and action.delay_ms > 0:
                    mode = "drop" if action.drop else "reply"
                    if metrics is not None:
                        delay_seconds = action.delay_ms / 1000.0
                        metrics.rpc_delay_applied_total.labels(action.procedure).inc()
                        metrics.rpc_delay_seconds_total.labels(action.procedure, mode).add(
                            delay_seconds
                        )
                        metrics.rpc_delay_injected_seconds.labels(action.procedure, mode).observe(
                            delay_seconds
                        )
                    server.sleep(action.delay_ms / 1000.0)

                if action is not None and action.drop:
                    if metrics is not None:
                        metrics.rpc_drop_applied_total.labels(action.procedure).inc()
                    if server.verbose:
                        self.log.info(
                            "drop injected xid=%d proc=%s delay_ms=%d",
                            reply.xid,
                            action.procedure,
                            action.delay_ms,
                        )
                    self._close_both()
                    return

                if meta is not None and metrics is not None:
                    metrics.rpc_roundtrip_seconds.labels(str(meta.program), meta.name).observe(
                        server.clock() - meta.sent_at
                    )

            try:
                write_record(self.client_writer, record)
            except (OSError, ValueError) as exc:
                self.log.warning("forward reply write error: %s", exc)
                return

    def _log_reply(
        self, xid: int, meta: Optional[_CallMeta], backend_rt: float, record: bytes
    ) -> None:
        if meta is None:
            self.log.info("forward reply xid=%d (no matching inflight meta)", xid)
            return
        summary = parse_rpc_reply_summary(record, meta.program)
        rpc_stat = f"reply_stat={summary.reply_stat}"
        if summary.accept_stat is not None:
            rpc_stat += f" accept_stat={summary.accept_stat}"
        if summary.decode_error:
            rpc_stat += f' decode_err="{summary.decode_error}"'
        nfs_stat = f" nfs_status={summary.nfs_status}" if summary.nfs_status is not None else ""
        self.log.info(
            "forward reply xid=%d for prog=%d vers=%d proc=%d(%s) backend_rtt=%s %s%s",
            xid,
            meta.program,
            meta.version,
            meta.proc,
            meta.name,
            _format_duration(backend_rt),
            rpc_stat,
            nfs_stat,
        )