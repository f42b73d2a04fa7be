"""Subprocess entry point for ProcessWorkerPool.

This module is the worker side of the session protocol. It connects back
to the host, then serves sessions on that connection: it reads the header,
the function commands and the records, applies the commands to each record
and streams the results back.

Commands:
    identity          record unchanged
    upper / reverse   upper-case / reversed bytes
    raise:<message>   fail the session with <message>
    barrier           call the host barrier once before processing records

Usage:
    python -m workerbridge.process.worker --port 40213
"""

import argparse
import json
import logging
import os
import socket
import sys
import time
import traceback
from typing import BinaryIO, Callable, Dict, List, Optional

from workerbridge.core.errors import BarrierFailedError
from workerbridge.process.protocol import (
    BarrierProtocol,
    SpecialLengths,
    read_bool,
    read_bytes,
    read_envelope,
    read_int,
    read_utf,
    write_envelope,
    write_int,
)

logger = logging.getLogger(__name__)

BARRIER_COMMAND = "barrier"
RAISE_PREFIX = "raise:"


class WorkerCommandError(Exception):
    """Raised by the raise:<message> command."""


def _raise_command(message: str) -> Callable[[Optional[bytes]], Optional[bytes]]:
    def fail(record: Optional[bytes]) -> Optional[bytes]:
        raise WorkerCommandError(message)
    return fail


_TRANSFORMS: Dict[str, Callable[[Optional[bytes]], Optional[bytes]]] = {
    "identity": lambda record: record,
    BARRIER_COMMAND: lambda record: record,
    "upper": lambda record: None if record is None else record.upper(),
    "reverse": lambda record: None if record is None else record[::-1],
}


def resolve_command(command: str) -> Callable[[Optional[bytes]], Optional[bytes]]:
    """Look up the transform for a function command.

    Raises:
        ValueError: If the command is unknown.
    """
    if command.startswith(RAISE_PREFIX):
        return _raise_command(command[len(RAISE_PREFIX):])
    try:
        return _TRANSFORMS[command]
    except KeyError:
        raise ValueError(f"Unknown worker command: {command!r}") from None


def call_barrier(port: int, host: str = "127.0.0.1") -> None:
    """Block on the host barrier listening on port.

    Raises:
        BarrierFailedError: If the host answers anything but success.
    """
    with socket.create_connection((host, port)) as sock:
        with sock.makefile("rwb") as stream:
            write_int(stream, BarrierProtocol.BARRIER_FUNCTION)
            stream.flush()
            answer = read_utf(stream)
    if answer != BarrierProtocol.BARRIER_RESULT_SUCCESS:
        raise BarrierFailedError(answer)


def _read_commands(infile: BinaryIO) -> List[str]:
    commands = []
    for _ in range(read_int(infile)):
        for _ in range(read_int(infile)):
            commands.append(read_envelope(infile).decode("utf-8"))
    return commands


def _read_records(infile: BinaryIO):
    while True:
        length = read_int(infile)
        if length == SpecialLengths.END_OF_DATA_SECTION:
            return
        if length == SpecialLengths.NULL:
            yield None
        elif length >= 0:
            yield read_bytes(infile, length)
        else:
            raise ValueError(f"Unexpected marker from host: {length}")


def run_session(infile: BinaryIO, outfile: BinaryIO, host: str = "127.0.0.1") -> bool:
    """Serve one session.

    Args:
        infile: Stream from the host.
        outfile: Stream to the host.
        host: Host of the barrier listener.

    Returns:
        True if the connection can serve another session.
    """
    boot_time = time.perf_counter()
    try:
        partition_index = read_int(infile)
    except EOFError:
        # Host closed the connection between sessions
        return False

    is_barrier = read_bool(infile)
    port = read_int(infile)
    commands = _read_commands(infile)
    logger.debug(f"Session for partition {partition_index}: {commands}")

    process_time = time.perf_counter()
    count = 0
    try:
        transforms = [resolve_command(command) for command in commands]
        if BARRIER_COMMAND in commands:
            if not is_barrier:
                raise BarrierFailedError("barrier command outside of a barrier task")
            call_barrier(port, host)

        for record in _read_records(infile):
            for transform in transforms:
                record = transform(record)
            if record is None:
                write_int(outfile, SpecialLengths.NULL)
            else:
                write_envelope(outfile, record)
            count += 1
    except Exception:
        logger.error(f"Session for partition {partition_index} failed")
        write_int(outfile, SpecialLengths.WORKER_EXCEPTION_THROWN)
        write_envelope(outfile, traceback.format_exc())
        outfile.flush()
        return False

    finish_time = time.perf_counter()
    timings = {
        "boot_ms": (process_time - boot_time) * 1000,
        "process_ms": (finish_time - process_time) * 1000,
        "records": count,
    }
    write_int(outfile, SpecialLengths.TIMING_DATA)
    write_envelope(outfile, json.dumps(timings))
    write_int(outfile, SpecialLengths.END_OF_DATA_SECTION)
    outfile.flush()

    if read_int(infile) == SpecialLengths.END_OF_STREAM:
        write_int(outfile, SpecialLengths.END_OF_STREAM)
        outfile.flush()
        return True

    # Anything else tells the host not to reuse this worker
    write_int(outfile, SpecialLengths.END_OF_DATA_SECTION)
    outfile.flush()
    return False


def serve(
    sock: socket.socket, reuse: bool, buffer_size: int = 65536, host: str = "127.0.0.1"
) -> None:
    """Serve sessions on a connected socket until the host goes away.

    Args:
        sock: Connection to the host.
        reuse: Whether to serve more than one session.
        buffer_size: Size of the stream buffers.
        host: Host of the barrier listener.
    """
    infile = sock.makefile("rb", buffering=buffer_size)
    outfile = sock.makefile("wb", buffering=buffer_size)
    try:
        while True:
            reusable = run_session(infile, outfile, host)
            if not (reuse and reusable):
                break
    except (EOFError, ConnectionError) as e:
        logger.info(f"Host connection lost: {e}")
    finally:
        for stream in (infile, outfile):
            try:
                stream.close()
            except OSError:
                pass
        sock.close()


def main() -> int:
    """Main entry point for the worker subprocess."""
    parser = argparse.ArgumentParser(
        description="workerbridge worker subprocess",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--port",
        type=int,
        required=True,
        help="Port of the host to connect back to",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to connect back to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    reuse = os.environ.get("PY_WORKER_REUSE") == "1"
    buffer_size = int(os.environ.get("BUFFER_SIZE", "65536"))

    try:
        sock = socket.create_connection((args.host, args.port))
    except OSError as e:
        logger.error(f"Failed to connect to {args.host}:{args.port}: {e}")
        return 1

    serve(sock, reuse, buffer_size, args.host)
    logger.info("Worker shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
