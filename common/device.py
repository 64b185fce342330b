"""Serial device setup for serial-loopback.

Contains:
- log_device_info: Log information about a serial device
- SerialTransport: Transport over an open pyserial port
- open_transport: Open and configure a serial port as a Transport
- PtyEchoDevice: Virtual loopback using a pty pair and an echo thread
"""

import logging
import os
import select
import sys
import threading
import time
import tty

import serial
import serial.tools.list_ports

from common.errors import PortOpenError, TransportClosedError
from common.protocol import (
    DEFAULT_READ_TIMEOUT_S,
    POLL_INTERVAL_S,
    READ_BUFFER_SIZE,
    WRITE_TIMEOUT_S,
)

logger = logging.getLogger(__name__)

# Bits on the wire per byte for 8N1 (start + 8 data + stop)
BITS_PER_BYTE = 10


def log_device_info(device: str) -> None:
    """Log information about a serial device."""
    real_path = os.path.realpath(device)
    if real_path.startswith("/dev/pts/") or real_path.startswith("/dev/ttys"):
        logger.info(f"Device: {device} -> {real_path} (pty)")
        return

    ports = [p for p in serial.tools.list_ports.comports() if p.device == device]
    if len(ports) == 0:
        logger.info(f"Device: {device} (not in port list)")
        return

    info = ports[0]
    logger.info(f"Device: {info.device}")
    logger.info(f"Description: {info.description}")
    if info.vid is not None:
        logger.info(f"VID:PID: {info.vid:04x}:{info.pid:04x}")


class SerialTransport:
    """Transport over a pyserial port.

    Reads and writes may run concurrently from two threads (duplex), but each
    direction is serialized by its own lock. close() may be called from any
    thread; a pending read returns within one poll interval and the next call
    raises TransportClosedError.
    """

    def __init__(
        self,
        ser: serial.Serial,
        read_timeout_s: float = DEFAULT_READ_TIMEOUT_S,
    ) -> None:
        self._serial = ser
        self._read_timeout_s = read_timeout_s
        # Re-entrant so close() from a signal handler on the I/O thread does not wait
        self._read_lock = threading.RLock()
        self._write_lock = threading.RLock()
        self._closed = False
        # Quiet time that marks the end of one echoed message
        self._gap_s = max(0.005, 3 * BITS_PER_BYTE / max(ser.baudrate, 1))

    @property
    def name(self) -> str:
        return self._serial.name or str(self._serial.port)

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise TransportClosedError(f"{self.name} is closed")

    def write(self, data: bytes, /) -> int | None:
        self._check_open()
        with self._write_lock:
            self._check_open()
            return self._serial.write(data)

    def _read_chunk(self, size: int) -> bytes:
        with self._read_lock:
            self._check_open()
            return self._serial.read(size)

    def read(self, size: int = READ_BUFFER_SIZE, /) -> bytes:
        """Read one message of up to size bytes.

        Waits up to the read timeout for the first byte, then keeps reading
        until the line goes quiet. Returns b"" if nothing arrived.
        """
        deadline = time.monotonic() + self._read_timeout_s
        data = self._read_chunk(1)
        while not data and time.monotonic() < deadline:
            data = self._read_chunk(1)
        if not data:
            return b""

        while len(data) < size:
            time.sleep(self._gap_s)
            with self._read_lock:
                self._check_open()
                waiting = self._serial.in_waiting
                if waiting == 0:
                    break
                data += self._serial.read(min(waiting, size - len(data)))
        return data

    def close(self) -> None:
        """Close the port. Idempotent; close errors are logged and ignored."""
        if self._closed:
            return
        self._closed = True

        # Wake blocked calls where the platform supports it (posix)
        for cancel in ("cancel_read", "cancel_write"):
            try:
                getattr(self._serial, cancel)()
            except (AttributeError, serial.SerialException, OSError):
                pass

        read_locked = self._read_lock.acquire(timeout=WRITE_TIMEOUT_S)
        write_locked = self._write_lock.acquire(timeout=WRITE_TIMEOUT_S)
        try:
            if self._serial.is_open:
                self._serial.close()
                logger.info(f"Closed {self.name}")
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Ignoring error closing {self.name}: {e}")
        finally:
            if write_locked:
                self._write_lock.release()
            if read_locked:
                self._read_lock.release()


def open_transport(
    device: str,
    baudrate: int,
    read_timeout_s: float = DEFAULT_READ_TIMEOUT_S,
) -> SerialTransport:
    """Open and configure a serial port (8N1, no flow control).

    Raises PortOpenError if the port cannot be opened.
    """
    log_device_info(device)
    try:
        ser = serial.Serial(
            port=device,
            baudrate=baudrate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            xonxoff=False,
            rtscts=False,
            timeout=POLL_INTERVAL_S,
            write_timeout=WRITE_TIMEOUT_S,
        )
    except (serial.SerialException, ValueError) as e:
        raise PortOpenError(f"Failed to open {device}: {e}") from e

    ser.reset_input_buffer()
    ser.reset_output_buffer()
    logger.debug(f"Serial port: baudrate={ser.baudrate}, timeout={ser.timeout}")
    return SerialTransport(ser, read_timeout_s=read_timeout_s)


class PtyEchoDevice:
    """Virtual loopback device using a pty pair.

    Everything written to `port` is echoed back by a background thread, which
    gives a software loopback for runs without hardware.
    """

    def __init__(self) -> None:
        if sys.platform not in ("linux", "darwin"):
            raise RuntimeError(
                f"Pty loopback only supported on Linux/macOS, not {sys.platform}"
            )
        self._master_fd, self._slave_fd = os.openpty()
        tty.setraw(self._slave_fd)
        self.port = os.ttyname(self._slave_fd)
        self._running = True
        self._echo_thread = threading.Thread(target=self._echo_loop, daemon=True)
        self._echo_thread.start()
        logger.info(f"Loopback pty: {self.port}")

    def _echo_loop(self) -> None:
        while self._running:
            try:
                ready, _, _ = select.select([self._master_fd], [], [], POLL_INTERVAL_S)
                if not ready:
                    continue
                data = os.read(self._master_fd, 4096)
                if data:
                    os.write(self._master_fd, data)
            except OSError:
                break

    def close(self) -> None:
        if not self._running:
            return
        self._running = False
        self._echo_thread.join(timeout=1.0)
        os.close(self._slave_fd)
        os.close(self._master_fd)
        logger.info("Closed loopback pty")

    def __enter__(self) -> "PtyEchoDevice":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
