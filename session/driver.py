"""Loopback test driver for serial-loopback.

Contains:
- Mode: Round-trip or duplex operation
- DriverState: Idle -> Running -> Finished | Cancelled
- TestSession: Configuration for one run; opens the transport
- TestDriver: Runs iterations and yields events

Round-trip mode writes "Test packet N", reads the echo and compares SHA-256
digests, one iteration at a time on the caller's thread. Duplex mode runs a
send thread and a receive thread over the same transport; both post events to
one queue drained by the caller, which is the only writer of Stats.
"""

import logging
import queue
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum

from common.device import open_transport
from common.digest import digest, digests_equal
from common.message import DUPLEX_MESSAGE, make_packet
from common.protocol import (
    DEFAULT_MAX_CONSECUTIVE_ERRORS,
    DEFAULT_READ_TIMEOUT_S,
    DEFAULT_SEND_INTERVAL_S,
    DUPLEX_DRAIN_TIMEOUT_S,
    LOG_PROGRESS_INTERVAL,
    POLL_INTERVAL_S,
    READ_BUFFER_SIZE,
    THREAD_JOIN_TIMEOUT_S,
    TRACE,
    Transport,
)
from session.events import (
    Cancelled,
    Event,
    IterationCompleted,
    Operation,
    PacketReceived,
    PacketSent,
    StreamError,
    TestFinished,
)
from session.stats import Stats

logger = logging.getLogger(__name__)


class Mode(Enum):
    """Loopback operating discipline."""

    ROUND_TRIP = "round-trip"
    DUPLEX = "duplex"


class DriverState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"
    CANCELLED = "cancelled"


@dataclass
class TestSession:
    """Configuration for one loopback run.

    target_iterations=None runs until cancelled. In duplex mode the target
    bounds the number of sends.
    """

    __test__ = False

    port: str
    baud_rate: int
    target_iterations: int | None = None
    mode: Mode = Mode.ROUND_TRIP
    iteration_interval_s: float = 0.0
    send_interval_s: float = DEFAULT_SEND_INTERVAL_S
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS

    def __post_init__(self) -> None:
        """Validate invariants."""
        if self.baud_rate <= 0:
            raise ValueError(f"baud_rate must be positive, got {self.baud_rate}")
        if self.target_iterations is not None and self.target_iterations <= 0:
            raise ValueError(
                f"target_iterations must be positive or None, got {self.target_iterations}"
            )
        if self.iteration_interval_s < 0 or self.send_interval_s < 0:
            raise ValueError("intervals must be >= 0")
        if self.max_consecutive_errors < 0:
            raise ValueError("max_consecutive_errors must be >= 0")

    @property
    def bounded(self) -> bool:
        return self.target_iterations is not None

    def open(self) -> Transport:
        """Open the session's transport. Raises PortOpenError on failure."""
        # Duplex polls; round trip waits for the echo
        read_timeout_s = POLL_INTERVAL_S if self.mode == Mode.DUPLEX else DEFAULT_READ_TIMEOUT_S
        return open_transport(self.port, self.baud_rate, read_timeout_s=read_timeout_s)


# Posted by a duplex loop thread when it exits
_LoopDone = tuple[str, bool]


class TestDriver:
    """Drives a loopback run over an open transport.

    The driver owns the transport: it is closed when run() ends, whatever the
    reason. cancel() may be called from any thread.
    """

    __test__ = False

    def __init__(self, session: TestSession, transport: Transport) -> None:
        self.session = session
        self.stats = Stats()
        self.state = DriverState.IDLE
        self._transport = transport
        self._cancel = threading.Event()
        self._closed = False
        # Re-entrant: a SIGINT handler may call cancel() on the thread that holds it
        self._close_lock = threading.RLock()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Request quit: stop scheduling and close the transport."""
        if self._cancel.is_set():
            return
        logger.info("Cancel requested, closing transport")
        self._cancel.set()
        self._close_transport()

    def _close_transport(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._transport.close()
        except Exception as e:
            logger.debug(f"Ignoring error closing transport: {e}")

    def run(self) -> Iterator[Event]:
        """Run the test, yielding events until finished or cancelled."""
        if self.state != DriverState.IDLE:
            raise RuntimeError(f"Driver already used (state={self.state.value})")
        self.state = DriverState.RUNNING

        target = self.session.target_iterations
        logger.info(
            f"Starting {self.session.mode.value} loopback on {self.session.port} "
            f"@ {self.session.baud_rate} baud "
            f"({'unbounded' if target is None else f'{target} iterations'})"
        )

        start = time.monotonic()
        try:
            if self.session.mode == Mode.DUPLEX:
                events = self._run_duplex(start)
            else:
                events = self._run_round_trip(start)
            yield from events
        finally:
            self.stats.elapsed_s = time.monotonic() - start
            self._close_transport()
            if self.state == DriverState.RUNNING:
                # Consumer stopped iterating early
                self.state = DriverState.CANCELLED

    # -------------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------------

    def _finish(self, start: float, aborted: bool = False) -> TestFinished:
        self.stats.elapsed_s = time.monotonic() - start
        self.state = DriverState.FINISHED
        s = self.stats
        logger.info(
            f"Loopback {'aborted' if aborted else 'complete'} ({s.packets_sent} sent, "
            f"{s.packets_received} received, {s.packets_lost} lost, "
            f"{s.mismatch_count} mismatched)"
        )
        return TestFinished(final_stats=s.copy(), aborted=aborted)

    def _cancelled(self, start: float) -> Cancelled:
        self.stats.elapsed_s = time.monotonic() - start
        self.state = DriverState.CANCELLED
        logger.info(f"Loopback cancelled after {self.stats.packets_sent} packets")
        return Cancelled()

    def _stream_error(self, operation: Operation, message: str) -> StreamError:
        self.stats.record_error()
        self.stats.recompute_loss()
        logger.warning(f"{operation.value} error: {message}")
        return StreamError(operation=operation, message=message)

    # -------------------------------------------------------------------------
    # Round trip
    # -------------------------------------------------------------------------

    def _round_trip_once(self) -> Event | None:
        """Run one write/read/compare cycle.

        Returns IterationCompleted, a StreamError, or None if the iteration
        was interrupted by cancellation.
        """
        stats = self.stats
        packet = make_packet(stats.packets_sent + 1)
        index = packet.sequence_index

        rtt_start = time.monotonic()
        try:
            written = self._transport.write(packet.payload)
        except OSError as e:
            if self.cancelled:
                logger.debug(f"Suppressed write error after cancel: {e}")
                return None
            return self._stream_error(Operation.WRITE, f"packet {index}: {e}")

        bytes_sent = len(packet.payload) if written is None else written
        stats.record_sent(bytes_sent)
        logger.log(TRACE, f"Sent packet {index} ({bytes_sent} bytes)")

        try:
            response = self._transport.read(READ_BUFFER_SIZE)
        except OSError as e:
            if self.cancelled:
                logger.debug(f"Suppressed read error after cancel: {e}")
                stats.recompute_loss()
                return None
            return self._stream_error(Operation.READ, f"packet {index}: {e}")

        if not response:
            if self.cancelled:
                stats.recompute_loss()
                return None
            return self._stream_error(Operation.READ, f"no response to packet {index}")

        rtt = time.monotonic() - rtt_start
        stats.record_received(len(response))
        stats.record_rtt(rtt)

        matched = digests_equal(packet.sent_digest, digest(response))
        if not matched:
            stats.record_mismatch()
            logger.warning(
                f"Digest mismatch on packet {index}: sent {packet.payload!r}, got {response!r}"
            )
        stats.recompute_loss()

        logger.log(TRACE, f"Received packet {index} ({len(response)} bytes, RTT={rtt * 1000:.2f}ms)")
        if index % LOG_PROGRESS_INTERVAL == 0:
            logger.debug(f"Progress: {index} packets (RTT={rtt * 1000:.2f}ms)")

        return IterationCompleted(
            sequence_index=index,
            bytes_sent=bytes_sent,
            bytes_received=len(response),
            matched=matched,
        )

    def _run_round_trip(self, start: float) -> Iterator[Event]:
        target = self.session.target_iterations
        max_errors = self.session.max_consecutive_errors
        consecutive_errors = 0

        while not self.cancelled:
            event = self._round_trip_once()
            if event is None:
                break
            yield event

            if isinstance(event, StreamError):
                consecutive_errors += 1
                if max_errors and consecutive_errors >= max_errors:
                    logger.error(f"Giving up after {consecutive_errors} consecutive errors")
                    yield self._finish(start, aborted=True)
                    return
            else:
                consecutive_errors = 0

            if target is not None and self.stats.packets_sent >= target:
                yield self._finish(start)
                return

            if self.session.iteration_interval_s > 0:
                self._cancel.wait(self.session.iteration_interval_s)

        yield self._cancelled(start)

    # -------------------------------------------------------------------------
    # Duplex
    # -------------------------------------------------------------------------

    def _send_loop(self, events: "queue.Queue[Event | _LoopDone]") -> None:
        target = self.session.target_iterations
        max_errors = self.session.max_consecutive_errors
        sent = 0
        consecutive_errors = 0
        failed = False
        try:
            while not self._cancel.wait(self.session.send_interval_s):
                try:
                    written = self._transport.write(DUPLEX_MESSAGE)
                except OSError as e:
                    if self.cancelled:
                        break
                    events.put(StreamError(Operation.WRITE, str(e)))
                    consecutive_errors += 1
                    if max_errors and consecutive_errors >= max_errors:
                        logger.error(f"Giving up sending after {consecutive_errors} consecutive errors")
                        failed = True
                        break
                    continue
                consecutive_errors = 0
                sent += 1
                events.put(PacketSent(bytes=len(DUPLEX_MESSAGE) if written is None else written))
                if target is not None and sent >= target:
                    break
        finally:
            events.put(("send", failed))

    def _receive_loop(
        self, events: "queue.Queue[Event | _LoopDone]", stop: threading.Event
    ) -> None:
        failed = False
        try:
            while not self.cancelled and not stop.is_set():
                try:
                    data = self._transport.read(READ_BUFFER_SIZE)
                except OSError as e:
                    if not self.cancelled:
                        events.put(StreamError(Operation.READ, str(e)))
                        failed = True
                    break
                if data:
                    events.put(PacketReceived(bytes=len(data)))
                else:
                    self._cancel.wait(POLL_INTERVAL_S)
        finally:
            events.put(("receive", failed))

    def _apply_duplex(self, event: Event) -> Event:
        stats = self.stats
        match event:
            case PacketSent():
                stats.record_sent(event.bytes)
                logger.log(TRACE, f"Sent {event.bytes} bytes")
                if stats.packets_sent % LOG_PROGRESS_INTERVAL == 0:
                    logger.debug(
                        f"Progress: {stats.packets_sent} sent, {stats.packets_received} received"
                    )
            case PacketReceived():
                stats.record_received(event.bytes)
                logger.log(TRACE, f"Received {event.bytes} bytes")
            case StreamError():
                stats.record_error()
                logger.warning(f"{event.operation.value} error: {event.message}")
        stats.recompute_loss()
        return event

    def _run_duplex(self, start: float) -> Iterator[Event]:
        events: "queue.Queue[Event | _LoopDone]" = queue.Queue()
        stop_receiving = threading.Event()
        sender = threading.Thread(target=self._send_loop, args=(events,), daemon=True)
        receiver = threading.Thread(
            target=self._receive_loop, args=(events, stop_receiving), daemon=True
        )
        sender.start()
        receiver.start()

        running = {"send", "receive"}
        failures = 0
        drain_deadline: float | None = None
        try:
            while running:
                timeout = POLL_INTERVAL_S
                if drain_deadline is not None:
                    timeout = max(0.0, min(timeout, drain_deadline - time.monotonic()))
                try:
                    item = events.get(timeout=timeout)
                except queue.Empty:
                    item = None

                if isinstance(item, tuple):
                    loop, failed = item
                    running.discard(loop)
                    if failed:
                        failures += 1
                    if loop == "send" and not self.cancelled:
                        drain_deadline = time.monotonic() + DUPLEX_DRAIN_TIMEOUT_S
                elif item is not None and not self.cancelled:
                    yield self._apply_duplex(item)

                if self.cancelled:
                    break
                if drain_deadline is not None and (
                    self.stats.packets_received >= self.stats.packets_sent
                    or time.monotonic() >= drain_deadline
                ):
                    stop_receiving.set()
                    drain_deadline = None
        finally:
            stop_receiving.set()
            if running and not self.cancelled:
                # Consumer closed the generator while the loops were live
                self.cancel()
            self._join_threads(sender, receiver)

        if self.cancelled:
            yield self._cancelled(start)
        else:
            yield self._finish(start, aborted=failures > 0)

    def _join_threads(self, *threads: threading.Thread) -> None:
        for thread in threads:
            thread.join(timeout=THREAD_JOIN_TIMEOUT_S)
            if thread.is_alive():
                logger.warning(f"Duplex thread {thread.name} did not stop")
