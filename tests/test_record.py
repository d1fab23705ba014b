import io
import struct

import pytest

from nfsproxy.record import LAST_FRAGMENT, read_record, write_record


def _fragment(data, last):
    mark = len(data) | (LAST_FRAGMENT if last else 0)
    return struct.pack(">I", mark) + data


class _Trickle(io.RawIOBase):
    """Stream that hands out at most one byte per read call."""

    def __init__(self, data):
        self._buf = io.BytesIO(data)

    def readable(self):
        return True

    def read(self, size=-1):
        return self._buf.read(1 if size != 0 else 0)


def test_write_record_wire_format():
    out = io.BytesIO()
    write_record(out, b"abc")
    assert out.getvalue() == b"\x80\x00\x00\x03abc"


def test_round_trip():
    out = io.BytesIO()
    write_record(out, b"hello rpc")
    assert read_record(io.BytesIO(out.getvalue())) == b"hello rpc"


def test_round_trip_empty_payload():
    out = io.BytesIO()
    write_record(out, b"")
    assert read_record(io.BytesIO(out.getvalue())) == b""


def test_multiple_records_in_sequence():
    out = io.BytesIO()
    write_record(out, b"first")
    write_record(out, b"second")
    stream = io.BytesIO(out.getvalue())
    assert read_record(stream) == b"first"
    assert read_record(stream) == b"second"
    with pytest.raises(EOFError):
        read_record(stream)


def test_multi_fragment_record_is_joined():
    data = _fragment(b"part1-", False) + _fragment(b"part2", True)
    assert read_record(io.BytesIO(data)) == b"part1-part2"


def test_short_reads_are_completed():
    out = io.BytesIO()
    write_record(out, b"slow stream payload")
    assert read_record(_Trickle(out.getvalue())) == b"slow stream payload"


def test_clean_eof_raises_eoferror():
    with pytest.raises(EOFError):
        read_record(io.BytesIO(b""))


def test_truncated_marker_raises_value_error():
    with pytest.raises(ValueError):
        read_record(io.BytesIO(b"\x80\x00"))


def test_truncated_fragment_raises_value_error():
    data = struct.pack(">I", 10 | LAST_FRAGMENT) + b"abc"
    with pytest.raises(ValueError):
        read_record(io.BytesIO(data))


def test_missing_final_fragment_raises_value_error():
    data = _fragment(b"not last", False) + b"\x00"
    with pytest.raises(ValueError):
        read_record(io.BytesIO(data))