"""pytest configuration and fixtures for serial-loopback tests.

Provides:
- EchoTransport: In-memory loopback, each write comes back as one read
- CorruptingTransport: Echo that flips a byte on chosen packets
- FailingTransport: Raises OSError on chosen write/read calls
- BlockingTransport: Reads block until the transport is closed
- Markers for unit vs integration tests
"""

import sys
import threading
from collections import deque
from collections.abc import Callable, Generator

import pytest

from common.errors import TransportClosedError


class EchoTransport:
    """Mock transport for unit testing.

    Every write is queued and returned whole by a later read, which is the
    one-message-per-read behavior the driver expects from a loopback link.
    Reads return b"" when nothing is queued.
    """

    def __init__(self) -> None:
        self._pending: deque[bytes] = deque()
        self._lock = threading.Lock()
        self.writes: list[bytes] = []
        self.reads = 0
        self.close_calls = 0
        self.closed = False

    def write(self, data: bytes, /) -> int:
        with self._lock:
            if self.closed:
                raise TransportClosedError("closed")
            self.writes.append(data)
            self._pending.append(self.echo(len(self.writes), data))
            return len(data)

    def echo(self, write_number: int, data: bytes) -> bytes:
        """Return what the far end sends back for a write."""
        return data

    def read(self, size: int = 256, /) -> bytes:
        with self._lock:
            if self.closed:
                raise TransportClosedError("closed")
            self.reads += 1
            if not self._pending:
                return b""
            return self._pending.popleft()[:size]

    def close(self) -> None:
        with self._lock:
            self.close_calls += 1
            self.closed = True


class CorruptingTransport(EchoTransport):
    """Echo transport that flips the last byte of the given writes (1-based)."""

    def __init__(self, corrupt: set[int]) -> None:
        super().__init__()
        self.corrupt = corrupt

    def echo(self, write_number: int, data: bytes) -> bytes:
        if write_number in self.corrupt and data:
            return data[:-1] + bytes([data[-1] ^ 0x01])
        return data


class SilentTransport(EchoTransport):
    """Accepts writes, never answers."""

    def echo(self, write_number: int, data: bytes) -> bytes:
        return b""

    def read(self, size: int = 256, /) -> bytes:
        super().read(size)
        return b""


class FailingTransport(EchoTransport):
    """Echo transport that raises OSError on chosen calls.

    fail_write/fail_read take the 1-based call number and return True to fail.
    """

    def __init__(
        self,
        fail_write: Callable[[int], bool] = lambda n: False,
        fail_read: Callable[[int], bool] = lambda n: False,
    ) -> None:
        super().__init__()
        self._fail_write = fail_write
        self._fail_read = fail_read
        self.write_calls = 0
        self.read_calls = 0

    def write(self, data: bytes, /) -> int:
        self.write_calls += 1
        if self._fail_write(self.write_calls):
            raise OSError(f"write {self.write_calls} failed")
        return super().write(data)

    def read(self, size: int = 256, /) -> bytes:
        self.read_calls += 1
        if self._fail_read(self.read_calls):
            raise OSError(f"read {self.read_calls} failed")
        return super().read(size)


class BlockingTransport(EchoTransport):
    """Writes succeed; reads block until close(), then fail."""

    def __init__(self) -> None:
        super().__init__()
        self.read_started = threading.Event()
        self._closed_event = threading.Event()

    def read(self, size: int = 256, /) -> bytes:
        self.read_started.set()
        self._closed_event.wait(timeout=10)
        raise TransportClosedError("port closed during read")

    def close(self) -> None:
        super().close()
        self._closed_event.set()


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test (requires pty)")


@pytest.fixture
def echo_transport() -> EchoTransport:
    return EchoTransport()


@pytest.fixture
def corrupting_transport() -> Callable[[set[int]], CorruptingTransport]:
    return CorruptingTransport


@pytest.fixture
def silent_transport() -> SilentTransport:
    return SilentTransport()


@pytest.fixture
def failing_transport() -> type[FailingTransport]:
    return FailingTransport


@pytest.fixture
def blocking_transport() -> BlockingTransport:
    return BlockingTransport()


@pytest.fixture
def pty_echo() -> Generator[object, None, None]:
    """Virtual loopback pty. Yields the PtyEchoDevice (device.port is the path)."""
    if sys.platform not in ("linux", "darwin"):
        pytest.skip("pty loopback requires Linux/macOS")

    from common.device import PtyEchoDevice

    device = PtyEchoDevice()
    try:
        yield device
    finally:
        device.close()
