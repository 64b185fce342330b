"""Exceptions for serial-loopback.

Contains:
- PortOpenError: Serial port could not be opened or configured
- TransportClosedError: I/O attempted on a closed transport
"""


class PortOpenError(ConnectionError):
    """Raised when the serial port cannot be opened or configured."""

    pass


class TransportClosedError(OSError):
    """Raised when reading or writing a transport that has been closed."""

    pass
