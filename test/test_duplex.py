"""Unit tests for the duplex loopback driver."""

import threading

import pytest

from common.message import DUPLEX_MESSAGE
from session.driver import DriverState, Mode, TestDriver, TestSession
from session.events import (
    Cancelled,
    Operation,
    PacketReceived,
    PacketSent,
    StreamError,
    TestFinished,
)


def _duplex(target: int | None, **kwargs: object) -> TestSession:
    return TestSession(
        port="mock",
        baud_rate=115200,
        target_iterations=target,
        mode=Mode.DUPLEX,
        send_interval_s=0.01,
        **kwargs,
    )


def _of_type(events: list, cls: type) -> list:
    return [e for e in events if isinstance(e, cls)]


@pytest.mark.unit
class TestDuplexBounded:
    """Duplex runs with a send target."""

    def test_all_echoes_received(self, echo_transport) -> None:
        driver = TestDriver(_duplex(3), echo_transport)
        events = list(driver.run())

        sent = _of_type(events, PacketSent)
        received = _of_type(events, PacketReceived)
        assert sent == [PacketSent(bytes=len(DUPLEX_MESSAGE))] * 3
        assert received == [PacketReceived(bytes=len(DUPLEX_MESSAGE))] * 3
        assert isinstance(events[-1], TestFinished)
        assert events[-1].aborted is False

        stats = events[-1].final_stats
        assert stats.packets_sent == stats.packets_received == 3
        assert stats.bytes_sent == stats.bytes_received == 3 * len(DUPLEX_MESSAGE)
        assert stats.packets_lost == 0
        assert driver.state == DriverState.FINISHED
        assert echo_transport.closed

    def test_no_content_check(self, corrupting_transport) -> None:
        """Duplex counts bytes only; corrupted echoes are not mismatches."""
        transport = corrupting_transport({1, 2})
        driver = TestDriver(_duplex(2), transport)
        list(driver.run())
        assert driver.stats.packets_received == 2
        assert driver.stats.mismatch_count == 0

    def test_stats_have_no_rtt(self, echo_transport) -> None:
        driver = TestDriver(_duplex(2), echo_transport)
        list(driver.run())
        assert driver.stats.rtt_samples == []

    def test_loss_invariant_holds_at_every_event(self, echo_transport) -> None:
        driver = TestDriver(_duplex(5), echo_transport)
        for _ in driver.run():
            s = driver.stats
            assert s.packets_lost == max(0, s.packets_sent - s.packets_received)

    def test_read_error_stops_receive_loop_only(self, failing_transport) -> None:
        transport = failing_transport(fail_read=lambda n: True)
        driver = TestDriver(_duplex(3), transport)
        events = list(driver.run())

        errors = _of_type(events, StreamError)
        assert errors == [StreamError(Operation.READ, "read 1 failed")]
        assert transport.read_calls == 1
        # Sender kept going after the receiver stopped
        assert len(_of_type(events, PacketSent)) == 3
        assert isinstance(events[-1], TestFinished)
        assert events[-1].aborted is True

        stats = driver.stats
        assert stats.packets_sent == 3
        assert stats.packets_received == 0
        assert stats.packets_lost == 3
        assert stats.stream_errors == 1

    def test_write_error_retried_next_interval(self, failing_transport) -> None:
        transport = failing_transport(fail_write=lambda n: n == 2)
        driver = TestDriver(_duplex(3), transport)
        events = list(driver.run())

        assert _of_type(events, StreamError) == [StreamError(Operation.WRITE, "write 2 failed")]
        assert len(_of_type(events, PacketSent)) == 3
        assert transport.write_calls == 4
        assert isinstance(events[-1], TestFinished)
        assert events[-1].aborted is False
        assert driver.stats.stream_errors == 1
        assert driver.stats.packets_lost == 0

    def test_repeated_write_errors_abort_run(self, failing_transport) -> None:
        transport = failing_transport(fail_write=lambda n: True)
        driver = TestDriver(_duplex(None, max_consecutive_errors=3), transport)
        events = list(driver.run())

        assert _of_type(events, StreamError) == [
            StreamError(Operation.WRITE, f"write {n} failed") for n in (1, 2, 3)
        ]
        assert transport.write_calls == 3
        assert isinstance(events[-1], TestFinished)
        assert events[-1].aborted is True
        assert driver.stats.packets_sent == 0


@pytest.mark.unit
class TestDuplexCancellation:
    """Unbounded duplex runs until cancel()."""

    def test_cancel_stops_both_loops(self, echo_transport) -> None:
        driver = TestDriver(_duplex(None), echo_transport)
        events: list = []
        enough = threading.Event()

        def consume() -> None:
            for event in driver.run():
                events.append(event)
                if len(_of_type(events, PacketReceived)) >= 2:
                    enough.set()

        runner = threading.Thread(target=consume)
        runner.start()
        assert enough.wait(timeout=5)

        driver.cancel()
        runner.join(timeout=5)

        assert not runner.is_alive()
        assert events[-1] == Cancelled()
        assert _of_type(events, StreamError) == []
        assert _of_type(events, TestFinished) == []
        assert driver.state == DriverState.CANCELLED
        assert echo_transport.closed
        assert driver.stats.stream_errors == 0

    def test_cancel_with_blocked_read(self, blocking_transport) -> None:
        driver = TestDriver(_duplex(None), blocking_transport)
        events: list = []
        runner = threading.Thread(target=lambda: events.extend(driver.run()))
        runner.start()

        assert blocking_transport.read_started.wait(timeout=5)
        driver.cancel()
        runner.join(timeout=5)

        assert not runner.is_alive()
        assert events[-1] == Cancelled()
        assert _of_type(events, StreamError) == []

    def test_single_write_error_does_not_end_unbounded_run(self, failing_transport) -> None:
        transport = failing_transport(fail_write=lambda n: n == 2)
        driver = TestDriver(_duplex(None), transport)
        events: list = []
        resumed = threading.Event()

        def consume() -> None:
            for event in driver.run():
                events.append(event)
                if len(_of_type(events, PacketSent)) >= 3:
                    resumed.set()

        runner = threading.Thread(target=consume)
        runner.start()
        assert resumed.wait(timeout=5)

        driver.cancel()
        runner.join(timeout=5)

        assert not runner.is_alive()
        assert _of_type(events, StreamError) == [StreamError(Operation.WRITE, "write 2 failed")]
        assert _of_type(events, TestFinished) == []
        assert events[-1] == Cancelled()
        assert driver.state == DriverState.CANCELLED
