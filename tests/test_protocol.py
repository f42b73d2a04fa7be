"""Tests for the session wire format."""

import io

import pytest

from workerbridge.process.protocol import (
    BarrierProtocol,
    SpecialLengths,
    read_bool,
    read_bytes,
    read_envelope,
    read_int,
    read_utf,
    write_bool,
    write_envelope,
    write_int,
)


# =============================================================================
# SpecialLengths Tests
# =============================================================================


class TestSpecialLengths:
    """Tests for the control markers."""

    def test_marker_values(self):
        """Test markers keep their wire values."""
        assert SpecialLengths.END_OF_DATA_SECTION == -1
        assert SpecialLengths.WORKER_EXCEPTION_THROWN == -2
        assert SpecialLengths.TIMING_DATA == -3
        assert SpecialLengths.END_OF_STREAM == -4
        assert SpecialLengths.NULL == -5
        assert SpecialLengths.START_ARROW_STREAM == -6
        assert SpecialLengths.READ_SCHEMA == -7

    def test_markers_are_negative(self):
        """Test no marker can be mistaken for a payload length."""
        assert all(marker < 0 for marker in SpecialLengths)

    def test_barrier_constants(self):
        """Test barrier side-channel constants."""
        assert BarrierProtocol.BARRIER_FUNCTION == 1
        assert BarrierProtocol.BARRIER_RESULT_SUCCESS == "success"
        assert BarrierProtocol.ERROR_UNRECOGNIZED_FUNCTION == (
            "Not recognized function call from python side."
        )
        assert BarrierProtocol.REQUEST_TIMEOUT_SEC == 10.0


# =============================================================================
# Integer and Boolean Tests
# =============================================================================


class TestIntegers:
    """Tests for int32 and bool framing."""

    def test_int_is_big_endian(self):
        """Test ints are written as 4 big-endian bytes."""
        buf = io.BytesIO()
        write_int(buf, 1)
        write_int(buf, SpecialLengths.END_OF_STREAM)

        assert buf.getvalue() == b"\x00\x00\x00\x01\xff\xff\xff\xfc"

    def test_read_int(self):
        """Test reading a written int."""
        buf = io.BytesIO(b"\x00\x01\x00\x00")
        assert read_int(buf) == 65536

    def test_short_read_raises_eof(self):
        """Test a truncated int raises EOFError."""
        with pytest.raises(EOFError):
            read_int(io.BytesIO(b"\x00\x01"))

    def test_empty_stream_raises_eof(self):
        """Test reading from an exhausted stream raises EOFError."""
        with pytest.raises(EOFError):
            read_int(io.BytesIO())

    def test_bool(self):
        """Test bools are one byte."""
        buf = io.BytesIO()
        write_bool(buf, True)
        write_bool(buf, False)

        assert buf.getvalue() == b"\x01\x00"
        buf.seek(0)
        assert read_bool(buf) is True
        assert read_bool(buf) is False


# =============================================================================
# Envelope Tests
# =============================================================================


class TestEnvelopes:
    """Tests for length-prefixed envelopes."""

    def test_envelope_layout(self):
        """Test an envelope is a length followed by the payload."""
        buf = io.BytesIO()
        write_envelope(buf, b"abc")

        assert buf.getvalue() == b"\x00\x00\x00\x03abc"

    def test_str_is_utf8(self):
        """Test str payloads are UTF-8 encoded."""
        buf = io.BytesIO()
        write_envelope(buf, "héllo")
        buf.seek(0)

        assert read_int(buf) == len("héllo".encode("utf-8"))
        buf.seek(0)
        assert read_utf(buf) == "héllo"

    def test_frames_with_end_marker(self):
        """Test a run of frames, empty ones included, reads back without drift."""
        payloads = [b"first", b"", b"x" * 1000, b"", b"last"]
        buf = io.BytesIO()
        for payload in payloads:
            write_envelope(buf, payload)
        write_int(buf, SpecialLengths.END_OF_DATA_SECTION)
        buf.seek(0)

        decoded = []
        while True:
            length = read_int(buf)
            if length == SpecialLengths.END_OF_DATA_SECTION:
                break
            decoded.append(read_bytes(buf, length))

        assert decoded == payloads
        assert buf.read() == b""

    def test_zero_length_envelope(self):
        """Test an empty envelope decodes to empty bytes."""
        buf = io.BytesIO(b"\x00\x00\x00\x00")
        assert read_envelope(buf) == b""

    def test_truncated_payload_raises_eof(self):
        """Test a payload shorter than its length raises EOFError."""
        buf = io.BytesIO(b"\x00\x00\x00\x05ab")
        with pytest.raises(EOFError):
            read_envelope(buf)
