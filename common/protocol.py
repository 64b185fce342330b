"""Protocol definitions for serial-loopback.

Contains:
- Transport Protocol for type checking
- Defaults for port, baud rate and iteration count
- Timing and buffer constants for round-trip and duplex runs
- Logging configuration
"""

import logging
import os
from typing import Protocol

# TRACE logging level (below DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Progress logging interval (configurable via envvar)
LOG_PROGRESS_INTERVAL = int(os.environ.get("SERIAL_LOG_INTERVAL", "100"))


class Transport(Protocol):
    """Protocol for the serial handle consumed by the loopback driver."""

    def write(self, data: bytes, /) -> int | None: ...
    def read(self, size: int = ..., /) -> bytes: ...
    def close(self) -> None: ...


# Command line defaults
DEFAULT_PORT = "/dev/ttyUSB0"
DEFAULT_BAUDRATE = 115200
DEFAULT_ITERATIONS = 1000

# Largest single read (one logical message per read call)
READ_BUFFER_SIZE = 256

# Timing constants
POLL_INTERVAL_S = 0.1  # Empty-read backoff, also the port's read timeout
DEFAULT_READ_TIMEOUT_S = 1.0  # Round trip waits this long for the echo
WRITE_TIMEOUT_S = 1.0
DEFAULT_SEND_INTERVAL_S = 0.1  # Duplex inter-send delay
DUPLEX_DRAIN_TIMEOUT_S = 1.0  # Bounded duplex waits this long for late echoes
THREAD_JOIN_TIMEOUT_S = 2.0

# Consecutive stream errors before a round-trip run gives up (0 = never)
DEFAULT_MAX_CONSECUTIVE_ERRORS = 10
