"""Observability system for workerbridge.

Trace records follow each worker session through its lifecycle:
- Session start/end, with the way the worker was let go
- Timing data reported by the worker
- Watchdog kills and barrier calls

Trace Levels:
- OFF: No tracing (production default)
- MINIMAL: Session start/end and kills only
- NORMAL: Adds timing and barrier records
- VERBOSE: Everything

Example:
    >>> from workerbridge.observability import (
    ...     ObservabilityHub, TraceLevel, MemorySink, SessionStartRecord,
    ... )
    >>> hub = ObservabilityHub.get_instance()
    >>> hub.configure(level=TraceLevel.NORMAL, sinks=[MemorySink()])
    >>>
    >>> if hub.enabled:
    ...     hub.emit(SessionStartRecord(partition_index=0))
"""

from enum import IntEnum
from typing import List, Optional
import logging
import threading

logger = logging.getLogger(__name__)


class TraceLevel(IntEnum):
    """Observability trace levels.

    Higher levels include all lower level information.
    """
    OFF = 0
    MINIMAL = 1
    NORMAL = 2
    VERBOSE = 3

    @classmethod
    def from_string(cls, s: str) -> "TraceLevel":
        """Parse a level name such as "normal"."""
        try:
            return cls[s.upper()]
        except KeyError:
            raise ValueError(
                f"Unknown trace level: {s}. "
                f"Valid levels: {', '.join(m.name.lower() for m in cls)}"
            ) from None


class Sink:
    """Base class for trace sinks."""

    def write(self, record: "TraceRecord") -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass


class ObservabilityHub:
    """Process-wide hub that fans trace records out to sinks.

    Singleton - use get_instance(). Records may be emitted from the writer,
    reader, watchdog and barrier threads concurrently.
    """

    _instance: Optional["ObservabilityHub"] = None
    _lock = threading.Lock()

    def __init__(self):
        self._level = TraceLevel.OFF
        self._sinks: List[Sink] = []
        self._emit_lock = threading.Lock()
        self._enabled = False

    @classmethod
    def get_instance(cls) -> "ObservabilityHub":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance. For testing only."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.shutdown()
            cls._instance = None

    def configure(
        self,
        level: TraceLevel = TraceLevel.OFF,
        sinks: Optional[List[Sink]] = None,
    ) -> None:
        """Set the trace level and optionally add sinks."""
        self._level = level
        self._enabled = level > TraceLevel.OFF

        for sink in sinks or []:
            self.add_sink(sink)

    def add_sink(self, sink: Sink) -> None:
        with self._emit_lock:
            self._sinks.append(sink)

    def remove_sink(self, sink: Sink) -> None:
        with self._emit_lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def emit(self, record: "TraceRecord") -> None:
        """Send a record to every sink if its level is enabled.

        Sink failures never reach the session threads.
        """
        if not self._enabled or record.min_level > self._level:
            return

        with self._emit_lock:
            for sink in self._sinks:
                try:
                    sink.write(record)
                except Exception as e:
                    logger.debug(f"Trace sink {type(sink).__name__} failed: {e}")

    def flush(self) -> None:
        with self._emit_lock:
            for sink in self._sinks:
                try:
                    sink.flush()
                except Exception as e:
                    logger.debug(f"Trace sink flush failed: {e}")

    def shutdown(self) -> None:
        """Flush and close all sinks, then disable tracing."""
        with self._emit_lock:
            for sink in self._sinks:
                try:
                    sink.flush()
                    sink.close()
                except Exception as e:
                    logger.debug(f"Trace sink close failed: {e}")
            self._sinks.clear()

        self._level = TraceLevel.OFF
        self._enabled = False

    @property
    def enabled(self) -> bool:
        """Fast check used before building records."""
        return self._enabled

    @property
    def level(self) -> TraceLevel:
        return self._level

    def is_level_enabled(self, level: TraceLevel) -> bool:
        return self._level >= level


# Import records and sinks after defining TraceLevel
from workerbridge.observability.records import (  # noqa: E402
    TraceRecord,
    SessionStartRecord,
    SessionEndRecord,
    TimingRecord,
    WorkerKillRecord,
    BarrierCallRecord,
)
from workerbridge.observability.sinks import (  # noqa: E402
    FileSink,
    ConsoleSink,
    MemorySink,
    NullSink,
    configure_from_schema,
)

__all__ = [
    # Core
    "TraceLevel",
    "Sink",
    "ObservabilityHub",
    # Records
    "TraceRecord",
    "SessionStartRecord",
    "SessionEndRecord",
    "TimingRecord",
    "WorkerKillRecord",
    "BarrierCallRecord",
    # Sinks
    "FileSink",
    "ConsoleSink",
    "MemorySink",
    "NullSink",
    "configure_from_schema",
]
