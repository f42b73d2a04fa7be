"""Barrier side-channel served to the worker.

A barrier session opens one local listener per task. The worker connects
to it (possibly many times) to perform a rendezvous with the other tasks of
its group:

    worker -> host   int32 function code
    host -> worker   envelope "success" | failure message | unrecognized

The request code must arrive within 10 seconds. Once a barrier call starts,
the connection waits as long as the rendezvous takes.
"""

import logging
import socket
import threading
import time
from typing import Optional

from workerbridge.core.context import BarrierCapability
from workerbridge.core.errors import ResourceSetupError
from workerbridge.observability import ObservabilityHub
from workerbridge.observability.records import BarrierCallRecord
from workerbridge.process.protocol import BarrierProtocol, read_int, write_envelope

logger = logging.getLogger(__name__)

# Wake-up interval of the accept loop while the listener stays open
_ACCEPT_POLL_SEC = 1.0
# Pause after a failed accept() so a persistent error does not spin
_ACCEPT_RETRY_SEC = 0.1


class BarrierServer:
    """Local listener that forwards worker barrier calls to the task.

    Args:
        barrier: Barrier capability of the task.
        host: Address to bind (loopback only).
        request_timeout: Seconds to wait for the request code.
        observability_hub: Optional custom hub (uses global if None).
    """

    def __init__(
        self,
        barrier: BarrierCapability,
        host: str = "127.0.0.1",
        request_timeout: float = BarrierProtocol.REQUEST_TIMEOUT_SEC,
        observability_hub: Optional[ObservabilityHub] = None,
    ):
        self._barrier = barrier
        self._host = host
        self._request_timeout = request_timeout
        self._hub = observability_hub or ObservabilityHub.get_instance()

        self._server: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._port = 0
        self._closed = False

    def start(self) -> int:
        """Bind the listener and start the acceptor thread.

        Returns:
            The bound port.

        Raises:
            ResourceSetupError: If no local port could be bound.
        """
        try:
            self._server = socket.create_server((self._host, 0), backlog=1)
        except OSError as e:
            raise ResourceSetupError(f"Barrier listener failed to bind: {e}") from e

        self._port = self._server.getsockname()[1]
        if self._port <= 0:
            self._server.close()
            raise ResourceSetupError("Barrier listener failed to bind to a port")

        self._server.settimeout(_ACCEPT_POLL_SEC)
        self._thread = threading.Thread(
            target=self._accept_loop,
            name=f"accept-connections-{self._port}",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Started barrier listener on port {self._port}")
        return self._port

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the listener. Calls already in progress finish on their own."""
        if self._closed:
            return
        self._closed = True
        if self._server is not None:
            try:
                # Wakes a thread blocked in accept()
                self._server.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._server.close()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _accept_loop(self) -> None:
        while not self._closed:
            try:
                conn, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._closed:
                    return
                logger.error(f"Barrier listener on port {self._port} failed to accept: {e}")
                time.sleep(_ACCEPT_RETRY_SEC)
                continue

            try:
                self._serve_connection(conn)
            except OSError as e:
                if self._closed:
                    logger.debug(f"Barrier connection closed during shutdown: {e}")
                else:
                    logger.warning(f"Barrier connection on port {self._port} failed: {e}")
            except Exception as e:
                logger.warning(f"Barrier connection on port {self._port} failed: {e}")
            finally:
                conn.close()

    def _serve_connection(self, conn: socket.socket) -> None:
        conn.settimeout(self._request_timeout)
        with conn.makefile("rb") as infile, conn.makefile("wb") as outfile:
            function = read_int(infile)
            if function == BarrierProtocol.BARRIER_FUNCTION:
                # The rendezvous may take arbitrarily long
                conn.settimeout(None)
                self._barrier_and_serve(outfile)
            else:
                logger.warning(f"Unrecognized barrier function code: {function}")
                write_envelope(outfile, BarrierProtocol.ERROR_UNRECOGNIZED_FUNCTION)
                outfile.flush()

    def _barrier_and_serve(self, outfile) -> None:
        start = time.perf_counter()
        try:
            self._barrier.barrier()
            result = BarrierProtocol.BARRIER_RESULT_SUCCESS
        except Exception as e:
            logger.warning(f"Barrier call failed: {e}")
            result = str(e)

        write_envelope(outfile, result)
        outfile.flush()

        if self._hub.enabled:
            self._hub.emit(BarrierCallRecord(
                port=self._port,
                function=BarrierProtocol.BARRIER_FUNCTION,
                result=result,
                wait_ms=(time.perf_counter() - start) * 1000,
            ))
