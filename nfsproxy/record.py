"""ONC RPC record marking over stream transports."""

from __future__ import annotations

import struct
from typing import BinaryIO

LAST_FRAGMENT = 0x80000000
LENGTH_MASK = 0x7FFFFFFF

_MARK = struct.Struct(">I")


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    """Read up to ``size`` bytes, stopping early only at end of stream."""
    chunks = []
    remaining = size
    while remaining:
        chunk = reader.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_record(reader: BinaryIO) -> bytes:
    """Read one RPC record from ``reader`` and return its unframed payload.

    Raises EOFError when the stream ends cleanly before a record starts and
    ValueError when it ends part-way through a record.
    """
    fragments: list[bytes] = []
    while True:
        head = _read_exact(reader, _MARK.size)
        if not head and not fragments:
            raise EOFError("end of stream")
        if len(head) < _MARK.size:
            raise ValueError("truncated record marker")
        (mark,) = _MARK.unpack(head)
        length = mark & LENGTH_MASK
        fragment = _read_exact(reader, length)
        if len(fragment) < length:
            raise ValueError(
                f"truncated record fragment: got {len(fragment)} of {length} bytes"
            )
        fragments.append(fragment)
        if mark & LAST_FRAGMENT:
            return b"".join(fragments)


def write_record(writer: BinaryIO, payload: bytes) -> None:
    """Write ``payload`` to ``writer`` as a single, final record fragment."""
    payload = bytes(payload)
    if len(payload) > LENGTH_MASK:
        raise ValueError(f"payload too large for one fragment: {len(payload)}")
    writer.write(_MARK.pack(len(payload) | LAST_FRAGMENT) + payload)
    flush = getattr(writer, "flush", None)
    if flush is not None:
        flush()