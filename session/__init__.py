"""Loopback test engine for serial-loopback.

This package runs the loopback test once the port is open:
- Round-trip iterations with digest comparison
- Duplex send/receive loops over one transport
- Statistics tracking (sent, received, lost, mismatched)
- Reporting and exit codes
"""

from session.driver import DriverState, Mode, TestDriver, TestSession
from session.events import (
    Cancelled,
    Event,
    IterationCompleted,
    IterationOutcome,
    Operation,
    PacketReceived,
    PacketSent,
    StreamError,
    TestFinished,
)
from session.report import LoopbackReport, ProgressLogger
from session.stats import LatencyStats, Stats, compute_latency_stats

__all__ = [
    "Cancelled",
    "DriverState",
    "Event",
    "IterationCompleted",
    "IterationOutcome",
    "LatencyStats",
    "LoopbackReport",
    "Mode",
    "Operation",
    "PacketReceived",
    "PacketSent",
    "ProgressLogger",
    "Stats",
    "StreamError",
    "TestDriver",
    "TestFinished",
    "TestSession",
    "compute_latency_stats",
]
