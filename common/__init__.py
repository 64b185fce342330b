"""Common modules for serial-loopback.

This package contains the pieces below the test engine:
- protocol: Transport Protocol, defaults and timing constants
- errors: PortOpenError, TransportClosedError
- device: pyserial transport and pty echo device
- message: Test packet generation
- digest: Content digests for integrity checks
"""

from common.digest import digest, digests_equal
from common.errors import PortOpenError, TransportClosedError
from common.message import DUPLEX_MESSAGE, Packet, make_packet
from common.protocol import (
    DEFAULT_BAUDRATE,
    DEFAULT_ITERATIONS,
    DEFAULT_PORT,
    POLL_INTERVAL_S,
    READ_BUFFER_SIZE,
    Transport,
)

__all__ = [
    # Protocol
    "Transport",
    "DEFAULT_PORT",
    "DEFAULT_BAUDRATE",
    "DEFAULT_ITERATIONS",
    "POLL_INTERVAL_S",
    "READ_BUFFER_SIZE",
    # Packets
    "DUPLEX_MESSAGE",
    "Packet",
    "make_packet",
    "digest",
    "digests_equal",
    # Exceptions
    "PortOpenError",
    "TransportClosedError",
]
