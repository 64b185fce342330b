"""Loopback reporting for serial-loopback.

Contains:
- Report ABC: Base class for end-of-run reports
- LoopbackReport: Final statistics after a run ends
- ProgressLogger: Event consumer that logs run progress
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from common.protocol import LOG_PROGRESS_INTERVAL
from session.events import (
    Cancelled,
    Event,
    IterationCompleted,
    PacketSent,
    StreamError,
    TestFinished,
)
from session.stats import Stats

logger = logging.getLogger(__name__)

# Minimum duration for reliable throughput measurement
THROUGHPUT_MIN_DURATION_S = 30


class Report(ABC):
    """End-of-run summary the runner prints and maps to an exit code."""

    @abstractmethod
    def print(self) -> None: ...

    @abstractmethod
    def success(self) -> bool:
        """Whether the run passed."""


@dataclass
class LoopbackReport(Report):
    """Report after a loopback run ends (finished or cancelled)."""

    stats: Stats
    cancelled: bool = False
    aborted: bool = False

    def print(self) -> None:
        """Print the loopback report."""
        s = self.stats

        if self.cancelled:
            status = "CANCELLED"
        elif self.aborted:
            status = "ABORTED"
        elif self.success():
            status = "SUCCESS"
        else:
            status = "FAILED"

        print(
            f"Loopback: {status} ({s.packets_sent} sent, {s.packets_received} received, "
            f"{s.packets_lost} lost, {s.mismatch_count} mismatched)"
        )
        print(f"Bytes: {s.bytes_sent} sent, {s.bytes_received} received")
        print(f"Packet loss: {s.loss_rate_percent():.2f}%")
        if s.mismatch_count:
            print(f"Mismatch rate: {s.mismatch_rate_percent:.2f}%")
        if s.stream_errors:
            print(f"Stream errors: {s.stream_errors}")

        # Throughput line (only if we have meaningful data)
        if s.elapsed_s > 0 and (s.bytes_sent > 0 or s.bytes_received > 0):
            baud = s.throughput_baud()
            kbps = s.throughput_kbps()
            print(f"Throughput: {baud:,.0f} baud ({kbps:.2f} Kbps) over {s.elapsed_s:.1f}s")
            if s.elapsed_s < THROUGHPUT_MIN_DURATION_S:
                print("(Note: throughput from short test may not reflect sustained performance)")

        # Latency lines (round trip only)
        latency = s.latency_stats
        if latency:
            print(
                f"Latency: avg={latency.avg_ms:.2f}ms min={latency.min_ms:.2f}ms "
                f"max={latency.max_ms:.2f}ms"
            )
            print(
                f"         p50={latency.p50_ms:.2f}ms p95={latency.p95_ms:.2f}ms "
                f"p99={latency.p99_ms:.2f}ms (n={latency.count})"
            )

    def success(self) -> bool:
        """Return True if every packet came back intact."""
        s = self.stats
        return (
            not self.aborted
            and s.packets_received > 0
            and s.packets_lost == 0
            and s.mismatch_count == 0
        )


class ProgressLogger:
    """Logs progress from the driver's event stream.

    Stands in for an interactive display: it only reads events and never
    touches the driver or its transport.
    """

    def __init__(
        self,
        target_iterations: int | None,
        interval: int = LOG_PROGRESS_INTERVAL,
    ) -> None:
        self.target_iterations = target_iterations
        self.interval = max(1, interval)
        self.sent = 0
        self.mismatches = 0
        self.errors = 0

    @property
    def progress(self) -> float | None:
        """Fraction of the target sent so far, or None when unbounded."""
        if not self.target_iterations:
            return None
        return min(1.0, self.sent / self.target_iterations)

    def handle(self, event: Event) -> None:
        match event:
            case IterationCompleted():
                self.sent = event.sequence_index
                if not event.matched:
                    self.mismatches += 1
                self._maybe_log()
            case PacketSent():
                self.sent += 1
                self._maybe_log()
            case StreamError():
                self.errors += 1
            case TestFinished():
                logger.info(
                    f"Finished: {event.final_stats.packets_sent} packets sent, {self.errors} errors"
                )
            case Cancelled():
                logger.info(f"Cancelled after {self.sent} packets")

    def _maybe_log(self) -> None:
        if self.sent % self.interval != 0:
            return
        progress = self.progress
        if progress is None:
            logger.info(
                f"{self.sent} packets sent ({self.mismatches} mismatched, {self.errors} errors)"
            )
        else:
            logger.info(
                f"{self.sent}/{self.target_iterations} packets sent ({progress * 100:.0f}%, "
                f"{self.mismatches} mismatched, {self.errors} errors)"
            )
