"""Events produced by the loopback driver.

A presentation layer consumes these from TestDriver.run(); they are the only
surface the driver exposes while a run is in progress.
"""

from dataclasses import dataclass
from enum import Enum

from session.stats import Stats


class Operation(Enum):
    """Transport operation that failed."""

    WRITE = "write"
    READ = "read"


class IterationOutcome(Enum):
    """Result of one round trip or one duplex send/receive."""

    SUCCESS = "success"
    DIGEST_MISMATCH = "digest_mismatch"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class IterationCompleted:
    """A full round trip: write, read, compare, stats update."""

    sequence_index: int
    bytes_sent: int
    bytes_received: int
    matched: bool

    @property
    def outcome(self) -> IterationOutcome:
        if self.matched:
            return IterationOutcome.SUCCESS
        return IterationOutcome.DIGEST_MISMATCH


@dataclass(frozen=True)
class PacketSent:
    """Duplex send loop wrote one message."""

    bytes: int


@dataclass(frozen=True)
class PacketReceived:
    """Duplex receive loop read one chunk."""

    bytes: int


@dataclass(frozen=True)
class StreamError:
    """A read or write failed; the iteration (or duplex loop) was abandoned."""

    operation: Operation
    message: str

    @property
    def outcome(self) -> IterationOutcome:
        return IterationOutcome.TRANSPORT_ERROR


@dataclass(frozen=True)
class TestFinished:
    """Run ended on its own: target reached, or aborted after repeated errors."""

    __test__ = False

    final_stats: Stats
    aborted: bool = False


@dataclass(frozen=True)
class Cancelled:
    """Run stopped by a quit request."""

    pass


Event = IterationCompleted | PacketSent | PacketReceived | StreamError | TestFinished | Cancelled
