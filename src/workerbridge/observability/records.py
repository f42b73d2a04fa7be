"""Trace record data classes for worker sessions.

Record Categories:
- Base: TraceRecord base class
- Session: session start/end
- Timing: timing data reported by the worker
- Supervision: watchdog kills
- Barrier: barrier side-channel calls
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, Any, Optional
import time
import json


# Forward reference for TraceLevel
from workerbridge.observability import TraceLevel


@dataclass
class TraceRecord:
    """Base class for all trace records.

    All trace records have:
    - record_type: String identifying the record type
    - timestamp_ns: When the record was created (monotonic)
    - min_level: Minimum trace level required to emit this record
    """
    record_type: str = field(default="base", init=False)
    timestamp_ns: int = field(default_factory=lambda: time.perf_counter_ns())
    min_level: TraceLevel = field(default=TraceLevel.NORMAL, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to a JSON-friendly dictionary."""
        d = asdict(self)
        d.pop("min_level", None)
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


# =============================================================================
# Session Records
# =============================================================================


@dataclass
class SessionStartRecord(TraceRecord):
    """Emitted when a worker has been acquired for a task."""
    record_type: str = field(default="session_start", init=False)
    min_level: TraceLevel = field(default=TraceLevel.MINIMAL, repr=False)

    partition_index: int = 0
    worker_exec: str = ""
    worker_id: str = ""
    reuse_worker: bool = True
    buffer_size: int = 0
    memory_mb: Optional[int] = None


@dataclass
class SessionEndRecord(TraceRecord):
    """Emitted when the reader reaches end of stream or the session fails.

    outcome is one of "released", "end_of_stream", "worker_error",
    "crashed", "cancelled".
    """
    record_type: str = field(default="session_end", init=False)
    min_level: TraceLevel = field(default=TraceLevel.MINIMAL, repr=False)

    partition_index: int = 0
    worker_id: str = ""
    outcome: str = ""
    records_read: int = 0
    duration_ms: float = 0.0


# =============================================================================
# Timing Records
# =============================================================================


@dataclass
class TimingRecord(TraceRecord):
    """Timing data reported by the worker through a TIMING_DATA section."""
    record_type: str = field(default="timing", init=False)
    min_level: TraceLevel = field(default=TraceLevel.NORMAL, repr=False)

    partition_index: int = 0
    worker_id: str = ""
    timings: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Supervision Records
# =============================================================================


@dataclass
class WorkerKillRecord(TraceRecord):
    """Emitted when the watchdog destroys a worker of an interrupted task."""
    record_type: str = field(default="worker_kill", init=False)
    min_level: TraceLevel = field(default=TraceLevel.MINIMAL, repr=False)

    partition_index: int = 0
    worker_id: str = ""
    task_name: str = ""
    kill_timeout_ms: int = 0
    released_or_closed: bool = False
    succeeded: bool = True
    error: Optional[str] = None


# =============================================================================
# Barrier Records
# =============================================================================


@dataclass
class BarrierCallRecord(TraceRecord):
    """Emitted for every call served on the barrier side-channel."""
    record_type: str = field(default="barrier_call", init=False)
    min_level: TraceLevel = field(default=TraceLevel.NORMAL, repr=False)

    port: int = 0
    function: int = 0
    result: str = ""
    wait_ms: float = 0.0


__all__ = [
    "TraceRecord",
    "SessionStartRecord",
    "SessionEndRecord",
    "TimingRecord",
    "WorkerKillRecord",
    "BarrierCallRecord",
]
