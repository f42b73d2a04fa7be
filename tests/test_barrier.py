"""Tests for the barrier side-channel."""

import socket
import threading
import time
from unittest import mock

import pytest

from workerbridge.core import BarrierFailedError, LocalBarrier, ResourceSetupError
from workerbridge.observability import MemorySink, ObservabilityHub, TraceLevel
from workerbridge.process.barrier import BarrierServer
from workerbridge.process.protocol import BarrierProtocol, read_utf, write_int
from workerbridge.process.worker import call_barrier


# =============================================================================
# Test Fixtures
# =============================================================================


class SlowBarrier:
    """Barrier that takes longer than the request timeout."""

    def __init__(self, delay: float):
        self.delay = delay
        self.calls = 0

    def barrier(self) -> None:
        self.calls += 1
        time.sleep(self.delay)


def send_code(port: int, code: int) -> str:
    with socket.create_connection(("127.0.0.1", port), timeout=5.0) as sock:
        with sock.makefile("rwb") as stream:
            write_int(stream, code)
            stream.flush()
            return read_utf(stream)


@pytest.fixture
def make_server():
    servers = []

    def factory(barrier, **kwargs):
        server = BarrierServer(barrier, **kwargs)
        server.start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.close()


# =============================================================================
# BarrierServer Tests
# =============================================================================


class TestBarrierServer:
    """Tests for BarrierServer."""

    def test_start_binds_port(self, make_server):
        """Test the listener binds an ephemeral local port."""
        server = make_server(LocalBarrier(1))

        assert server.port > 0
        assert not server.is_closed

    def test_barrier_success(self, make_server):
        """Test function code 1 performs the barrier and answers success."""
        server = make_server(LocalBarrier(1))

        assert send_code(server.port, 1) == "success"

    def test_barrier_failure_message(self, make_server):
        """Test a failing barrier answers with the failure message."""
        barrier = mock.Mock()
        barrier.barrier.side_effect = BarrierFailedError("barrier broken by task 3")
        server = make_server(barrier)

        assert send_code(server.port, 1) == "barrier broken by task 3"

    def test_unrecognized_code_then_success(self, make_server):
        """Test an unknown code is answered and later connections still work."""
        server = make_server(LocalBarrier(1))

        assert send_code(server.port, 7) == BarrierProtocol.ERROR_UNRECOGNIZED_FUNCTION
        assert send_code(server.port, 1) == "success"

    def test_barrier_wait_is_unbounded(self, make_server):
        """Test a barrier longer than the request timeout still succeeds."""
        barrier = SlowBarrier(delay=0.5)
        server = make_server(barrier, request_timeout=0.1)

        assert send_code(server.port, 1) == "success"
        assert barrier.calls == 1

    def test_silent_client_times_out(self, make_server):
        """Test a client that never sends a code is dropped, not served forever."""
        server = make_server(LocalBarrier(1), request_timeout=0.1)

        with socket.create_connection(("127.0.0.1", server.port), timeout=5.0) as sock:
            assert sock.recv(4) == b""

        assert send_code(server.port, 1) == "success"

    def test_close_stops_accepting(self, make_server):
        """Test no connections are accepted after close."""
        server = make_server(LocalBarrier(1))
        port = server.port
        server.close()
        server.join(timeout=5.0)

        assert server.is_closed
        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", port), timeout=1.0)

    def test_bind_failure(self):
        """Test a listener that cannot bind raises ResourceSetupError and starts nothing."""
        server = BarrierServer(LocalBarrier(1))
        with mock.patch(
            "workerbridge.process.barrier.socket.create_server",
            side_effect=OSError("address in use"),
        ):
            with pytest.raises(ResourceSetupError, match="address in use"):
                server.start()

        assert server.port == 0

    def test_accept_error_keeps_listening(self, make_server):
        """Test a failed accept on an open listener does not stop the channel."""
        real = socket.create_server(("127.0.0.1", 0), backlog=1)
        errors = [OSError("connection aborted")]

        def accept():
            if errors:
                raise errors.pop()
            return real.accept()

        listener = mock.Mock(wraps=real)
        listener.accept.side_effect = accept
        with mock.patch(
            "workerbridge.process.barrier.socket.create_server", return_value=listener
        ):
            server = make_server(LocalBarrier(1))

        assert send_code(server.port, 1) == "success"
        assert errors == []

    def test_close_is_idempotent(self, make_server):
        """Test closing twice is harmless."""
        server = make_server(LocalBarrier(1))
        server.close()
        server.close()

        assert server.is_closed

    def test_barrier_call_traced(self, make_server):
        """Test served barrier calls emit a BarrierCallRecord."""
        hub = ObservabilityHub()
        sink = MemorySink()
        hub.configure(level=TraceLevel.NORMAL, sinks=[sink])
        server = make_server(LocalBarrier(1), observability_hub=hub)

        send_code(server.port, 1)

        # The record is emitted after the answer is flushed
        deadline = time.time() + 5.0
        while not sink.get_records("barrier_call") and time.time() < deadline:
            time.sleep(0.01)
        records = sink.get_records("barrier_call")
        assert len(records) == 1
        assert records[0].port == server.port
        assert records[0].result == "success"


# =============================================================================
# Worker-side Client Tests
# =============================================================================


class TestCallBarrier:
    """Tests for the worker-side barrier client."""

    def test_call_barrier(self, make_server):
        """Test the client returns on success."""
        server = make_server(LocalBarrier(1))
        call_barrier(server.port)

    def test_call_barrier_failure(self, make_server):
        """Test the client raises the host's failure message."""
        barrier = mock.Mock()
        barrier.barrier.side_effect = RuntimeError("stage aborted")
        server = make_server(barrier)

        with pytest.raises(BarrierFailedError, match="stage aborted"):
            call_barrier(server.port)

    def test_two_tasks_rendezvous(self, make_server):
        """Test two tasks sharing a barrier both pass it."""
        shared = LocalBarrier(2, timeout=5.0)
        first = make_server(shared)
        second = make_server(shared)
        passed = []

        thread = threading.Thread(target=lambda: (call_barrier(first.port), passed.append(1)))
        thread.start()
        call_barrier(second.port)
        thread.join(timeout=5.0)

        assert passed == [1]
