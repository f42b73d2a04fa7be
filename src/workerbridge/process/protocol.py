"""Framing protocol shared by the host and the worker.

Every integer on the wire is a big-endian signed 32-bit value. A
non-negative integer announces that many payload bytes; a negative one is
a section marker (see SpecialLengths). Textual payloads travel as
envelopes: an int32 byte length followed by the UTF-8 bytes.

Session header written by the host:

    int32  partition index
    bool   is barrier session (1 byte)
    int32  barrier port (0 when absent)
    ...    command section
    ...    data sections
    int32  END_OF_STREAM

Example:
    >>> import io
    >>> buf = io.BytesIO()
    >>> write_envelope(buf, "boom")
    >>> _ = buf.seek(0)
    >>> read_utf(buf)
    'boom'
"""

import struct
from enum import IntEnum
from typing import BinaryIO, Union

_INT = struct.Struct(">i")
_BOOL = struct.Struct(">?")


class SpecialLengths(IntEnum):
    """Section markers sent in place of a payload length.

    All values are negative, so they never collide with a real length.
    """
    END_OF_DATA_SECTION = -1      # End of one data section
    WORKER_EXCEPTION_THROWN = -2  # Next envelope is a worker exception
    TIMING_DATA = -3              # Next envelope is timing data
    END_OF_STREAM = -4            # No more output, worker can be released
    NULL = -5                     # Explicit null record
    START_ARROW_STREAM = -6       # Columnar payload section follows
    READ_SCHEMA = -7              # Schema-only section follows


class BarrierProtocol:
    """Constants of the barrier side-channel."""
    BARRIER_FUNCTION = 1
    BARRIER_RESULT_SUCCESS = "success"
    ERROR_UNRECOGNIZED_FUNCTION = "Not recognized function call from python side."
    # Wait for the request code, before a barrier call starts
    REQUEST_TIMEOUT_SEC = 10.0


def _read_exactly(stream: BinaryIO, n: int) -> bytes:
    """Read exactly n bytes.

    Raises:
        EOFError: If the stream ends first.
    """
    data = stream.read(n)
    if data is None or len(data) < n:
        got = 0 if data is None else len(data)
        raise EOFError(f"Expected {n} bytes, stream ended after {got}")
    return data


def write_int(stream: BinaryIO, value: int) -> None:
    stream.write(_INT.pack(value))


def read_int(stream: BinaryIO) -> int:
    return _INT.unpack(_read_exactly(stream, 4))[0]


def write_bool(stream: BinaryIO, value: bool) -> None:
    stream.write(_BOOL.pack(value))


def read_bool(stream: BinaryIO) -> bool:
    return _BOOL.unpack(_read_exactly(stream, 1))[0]


def write_envelope(stream: BinaryIO, payload: Union[bytes, str]) -> None:
    """Write a length-prefixed payload. Strings are UTF-8 encoded."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    write_int(stream, len(payload))
    stream.write(payload)


def read_bytes(stream: BinaryIO, length: int) -> bytes:
    """Read a payload whose length prefix has already been consumed."""
    if length < 0:
        raise ValueError(f"Negative payload length: {length}")
    if length == 0:
        return b""
    return _read_exactly(stream, length)


def read_envelope(stream: BinaryIO) -> bytes:
    """Read a length-prefixed payload."""
    return read_bytes(stream, read_int(stream))


def read_utf(stream: BinaryIO) -> str:
    """Read a length-prefixed UTF-8 string."""
    return read_envelope(stream).decode("utf-8")


__all__ = [
    "SpecialLengths",
    "BarrierProtocol",
    "write_int",
    "read_int",
    "write_bool",
    "read_bool",
    "write_envelope",
    "read_bytes",
    "read_envelope",
    "read_utf",
]
