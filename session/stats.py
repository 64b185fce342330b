"""Loopback statistics for serial-loopback.

Contains:
- LatencyStats: Echo latency summary in milliseconds
- compute_latency_stats: Summarize round-trip times
- Stats: Running counters for one loopback run

Stats has a single writer (the thread iterating TestDriver.run()), so no
locking is done here.
"""

from dataclasses import dataclass, field, replace


@dataclass
class LatencyStats:
    """Echo round-trip times for one run, in milliseconds."""

    count: int
    min_ms: float
    max_ms: float
    avg_ms: float
    p50_ms: float
    p95_ms: float
    p99_ms: float


def _nearest_rank(ordered_ms: list[float], pct: float) -> float:
    return ordered_ms[int(pct / 100 * (len(ordered_ms) - 1))]


def compute_latency_stats(rtt_samples: list[float]) -> LatencyStats | None:
    """Summarize echo RTTs (seconds) as millisecond statistics.

    Returns None when no round trip completed, e.g. for a duplex run.
    """
    if not rtt_samples:
        return None

    ordered_ms = sorted(rtt * 1000 for rtt in rtt_samples)
    return LatencyStats(
        count=len(ordered_ms),
        min_ms=ordered_ms[0],
        max_ms=ordered_ms[-1],
        avg_ms=sum(ordered_ms) / len(ordered_ms),
        p50_ms=_nearest_rank(ordered_ms, 50),
        p95_ms=_nearest_rank(ordered_ms, 95),
        p99_ms=_nearest_rank(ordered_ms, 99),
    )


@dataclass
class Stats:
    """Running counters for a loopback run.

    Attributes:
        bytes_sent: Total bytes written.
        bytes_received: Total bytes read.
        packets_sent: Number of successful writes.
        packets_received: Number of reads that returned data.
        packets_lost: max(0, packets_sent - packets_received), recomputed.
        mismatch_count: Round trips whose echo digest differed.
        stream_errors: Reported read/write failures.
        rtt_samples: Round-trip times in seconds (round-trip mode only).
        elapsed_s: Run duration in seconds.
    """

    bytes_sent: int = 0
    bytes_received: int = 0
    packets_sent: int = 0
    packets_received: int = 0
    packets_lost: int = 0
    mismatch_count: int = 0
    stream_errors: int = 0
    rtt_samples: list[float] = field(default_factory=list)
    elapsed_s: float = 0.0

    def record_sent(self, byte_count: int) -> None:
        if byte_count < 0:
            raise ValueError(f"byte_count must be >= 0, got {byte_count}")
        self.packets_sent += 1
        self.bytes_sent += byte_count

    def record_received(self, byte_count: int) -> None:
        if byte_count < 0:
            raise ValueError(f"byte_count must be >= 0, got {byte_count}")
        self.packets_received += 1
        self.bytes_received += byte_count

    def record_mismatch(self) -> None:
        self.mismatch_count += 1

    def record_error(self) -> None:
        self.stream_errors += 1

    def record_rtt(self, seconds: float) -> None:
        self.rtt_samples.append(seconds)

    def recompute_loss(self) -> None:
        """Estimate lost packets from the aggregate counts."""
        self.packets_lost = max(0, self.packets_sent - self.packets_received)

    def loss_rate_percent(self) -> float:
        """Return loss as a percentage of packets sent.

        Derived from the counters directly rather than packets_lost, so it can
        go negative when a duplex run reads more chunks than it wrote.
        """
        if self.packets_sent == 0:
            return 0.0
        return (self.packets_sent - self.packets_received) / self.packets_sent * 100

    @property
    def mismatch_rate_percent(self) -> float:
        """Return mismatches as a percentage of packets received (0-100)."""
        if self.packets_received == 0:
            return 0.0
        return (self.mismatch_count / self.packets_received) * 100

    @property
    def latency_stats(self) -> LatencyStats | None:
        """Latency summary of the round trips so far."""
        return compute_latency_stats(self.rtt_samples)

    def _line_bytes(self) -> int:
        # Both directions share the link
        return self.bytes_sent + self.bytes_received

    def throughput_baud(self, bits_per_byte: int = 10) -> float:
        """Line rate achieved in bits/second, framing bits included (10 for 8N1)."""
        if self.elapsed_s <= 0:
            return 0.0
        return self._line_bytes() * bits_per_byte / self.elapsed_s

    def throughput_kbps(self) -> float:
        """Payload rate in kilobits/second, without start/stop bits."""
        if self.elapsed_s <= 0:
            return 0.0
        return self._line_bytes() * 8 / self.elapsed_s / 1000

    def copy(self) -> "Stats":
        """Return a snapshot that later updates will not touch."""
        return replace(self, rtt_samples=list(self.rtt_samples))
