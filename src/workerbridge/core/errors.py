"""Error types raised by workerbridge sessions.

Callers see exactly one classified error per failed session:

- CancellationError: the task was interrupted. Supersedes every other kind,
  because the underlying symptom is an artifact of the cancellation.
- WorkerRaisedError: the worker sent an explicit exception frame.
- WorkerProtocolError: malformed framing, or the worker went away.
- ResourceSetupError: a local listener could not be bound.
"""

from typing import List, Optional


class WorkerBridgeError(Exception):
    """Base class for all workerbridge errors."""


class WorkerProtocolError(WorkerBridgeError):
    """Raised for malformed framing or an unexpected end of the worker stream."""


class WorkerRaisedError(WorkerBridgeError):
    """Raised when the worker reports an exception over the data stream.

    Attributes:
        message: The worker's own message text.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        if cause is not None:
            self.__cause__ = cause


class CancellationError(WorkerBridgeError):
    """Raised when the consuming task has been interrupted.

    Attributes:
        reason: Kill reason reported by the task context.
    """

    def __init__(self, reason: str = "unknown reason"):
        super().__init__(f"Task was cancelled: {reason}")
        self.reason = reason


class ResourceSetupError(WorkerBridgeError):
    """Raised when a session-local resource (listener, port) cannot be set up."""


class BarrierFailedError(WorkerBridgeError):
    """Raised by a barrier primitive when the rendezvous cannot complete."""


class TaskCompletionListenerError(WorkerBridgeError):
    """Raised when one or more task completion listeners failed.

    Attributes:
        errors: The exceptions raised by the individual listeners.
    """

    def __init__(self, errors: List[BaseException]):
        messages = "; ".join(str(e) for e in errors)
        super().__init__(f"{len(errors)} completion listener(s) failed: {messages}")
        self.errors = errors
