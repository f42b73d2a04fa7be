"""Trace output sinks for observability.

Sinks receive trace records and handle their output:
- FileSink: JSONL file output
- ConsoleSink: Formatted console output for kills, crashes and slow barriers
- MemorySink: In-memory buffer for testing/analysis
- NullSink: Discards everything
"""

import sys
import threading
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional, TextIO, Callable, TYPE_CHECKING

from workerbridge.observability import ObservabilityHub, Sink, TraceLevel
from workerbridge.observability.records import (
    TraceRecord,
    SessionEndRecord,
    WorkerKillRecord,
    BarrierCallRecord,
)

if TYPE_CHECKING:
    from workerbridge.config.schema import ObservabilitySchema


class FileSink(Sink):
    """Sink that writes trace records to a JSONL file.

    Args:
        path: Path to the output file.
        buffer_size: Number of records to buffer before flushing (default: 100).
        append: Whether to append to existing file (default: False).
    """

    def __init__(
        self,
        path: str,
        buffer_size: int = 100,
        append: bool = False,
    ):
        self._path = Path(path)
        self._buffer_size = buffer_size
        self._append = append

        self._buffer: List[str] = []
        self._file: Optional[TextIO] = None
        self._lock = threading.Lock()

        mode = "a" if self._append else "w"
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, mode, encoding="utf-8")

    def write(self, record: TraceRecord) -> None:
        line = record.to_json()

        with self._lock:
            self._buffer.append(line)
            if len(self._buffer) >= self._buffer_size:
                self._flush_buffer()

    def _flush_buffer(self) -> None:
        """Must be called with lock held."""
        if not self._buffer or self._file is None:
            return

        self._file.write("\n".join(self._buffer) + "\n")
        self._file.flush()
        self._buffer.clear()

    def flush(self) -> None:
        with self._lock:
            self._flush_buffer()

    def close(self) -> None:
        with self._lock:
            self._flush_buffer()
            if self._file is not None:
                self._file.close()
                self._file = None


class ConsoleSink(Sink):
    """Sink that prints noteworthy session events to the console.

    Only worker kills, abnormal session ends and slow barrier calls are
    shown; other records are skipped unless format_fn handles them.

    Args:
        stream: Output stream (default: sys.stderr).
        color: Enable ANSI color codes when the stream is a tty (default: True).
        barrier_threshold_ms: Barrier waits above this are reported (default: 1000.0).
        format_fn: Optional custom format function for records.
    """

    COLORS = {
        "reset": "\033[0m",
        "red": "\033[91m",
        "yellow": "\033[93m",
        "cyan": "\033[96m",
    }

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        color: bool = True,
        barrier_threshold_ms: float = 1000.0,
        format_fn: Optional[Callable[[TraceRecord], Optional[str]]] = None,
    ):
        self._stream = stream or sys.stderr
        self._color = color and self._stream.isatty()
        self._barrier_threshold_ms = barrier_threshold_ms
        self._format_fn = format_fn
        self._lock = threading.Lock()

    def _colorize(self, text: str, color: str) -> str:
        if not self._color:
            return text
        return f"{self.COLORS.get(color, '')}{text}{self.COLORS['reset']}"

    def write(self, record: TraceRecord) -> None:
        if self._format_fn:
            line = self._format_fn(record)
        else:
            line = self._format_record(record)

        if line:
            with self._lock:
                self._stream.write(line + "\n")
                self._stream.flush()

    def _format_record(self, record: TraceRecord) -> Optional[str]:
        if isinstance(record, WorkerKillRecord):
            tag = self._colorize("[KILL]", "red")
            status = "killed" if record.succeeded else f"kill failed: {record.error}"
            return (
                f"{tag} Task {record.task_name}: worker "
                f"{self._colorize(record.worker_id, 'cyan')} {status} "
                f"after {record.kill_timeout_ms}ms grace"
            )
        if isinstance(record, SessionEndRecord):
            if record.outcome in ("released", "end_of_stream"):
                return None
            tag = self._colorize("[SESSION]", "yellow")
            return (
                f"{tag} Partition {record.partition_index}: worker "
                f"{record.worker_id} ended with {record.outcome} "
                f"after {record.records_read} records"
            )
        if isinstance(record, BarrierCallRecord):
            if record.wait_ms <= self._barrier_threshold_ms:
                return None
            tag = self._colorize("[BARRIER]", "yellow")
            return f"{tag} Port {record.port}: barrier took {record.wait_ms:.0f}ms ({record.result})"
        return None

    def flush(self) -> None:
        with self._lock:
            self._stream.flush()


class MemorySink(Sink):
    """Sink that stores trace records in memory.

    Args:
        max_records: Maximum number of records to keep (default: 10000).
    """

    def __init__(self, max_records: int = 10000):
        self._max_records = max_records
        self._records: Deque[TraceRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def write(self, record: TraceRecord) -> None:
        with self._lock:
            self._records.append(record)

    def get_records(self, record_type: Optional[str] = None) -> List[TraceRecord]:
        """Get stored records, optionally filtered by record type."""
        with self._lock:
            records = list(self._records)

        if record_type:
            records = [r for r in records if r.record_type == record_type]

        return records

    def get_by_partition(self, partition_index: int) -> List[TraceRecord]:
        """Get all records carrying the given partition index."""
        with self._lock:
            records = list(self._records)

        return [
            r for r in records
            if getattr(r, "partition_index", None) == partition_index
        ]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class NullSink(Sink):
    """Sink that discards all records."""

    def write(self, record: TraceRecord) -> None:
        pass


def configure_from_schema(
    hub: ObservabilityHub,
    schema: "ObservabilitySchema",
) -> List[Sink]:
    """Configure a hub from an observability config section.

    Args:
        hub: Hub to configure.
        schema: Validated observability settings.

    Returns:
        The sinks that were created and added to the hub.
    """
    sinks: List[Sink] = []
    for sink_schema in schema.sinks:
        if sink_schema.type == "file":
            sinks.append(FileSink(sink_schema.path, **sink_schema.options))
        elif sink_schema.type == "console":
            sinks.append(ConsoleSink(**sink_schema.options))
        elif sink_schema.type == "memory":
            sinks.append(MemorySink(**sink_schema.options))
        else:
            sinks.append(NullSink())

    hub.configure(level=TraceLevel.from_string(schema.level), sinks=sinks)
    return sinks


__all__ = [
    "FileSink",
    "ConsoleSink",
    "MemorySink",
    "NullSink",
    "configure_from_schema",
]
