"""Loopback runner for serial-loopback.

Contains run_session() which opens the port, drives the test, prints the
report and returns an exit code based on the result.
"""

import logging
from collections.abc import Callable
from enum import IntEnum

from common.errors import PortOpenError
from common.protocol import Transport
from session.driver import DriverState, TestDriver, TestSession
from session.events import TestFinished
from session.report import LoopbackReport, ProgressLogger

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Exit codes for a loopback run."""

    SUCCESS = 0  # Every packet echoed back intact
    PORT_FAILED = 1  # Port could not be opened
    NO_DATA = 2  # Run ended but nothing was received
    MISMATCHES = 3  # Echoes came back with different content
    PACKET_LOSS = 4  # Fewer packets received than sent
    ABORTED = 5  # Gave up after repeated transport errors
    CANCELLED = 130  # User quit (SIGINT)


def exit_code_for(report: LoopbackReport) -> ExitCode:
    """Map a final report to an exit code."""
    s = report.stats
    if report.cancelled:
        return ExitCode.CANCELLED
    if report.aborted:
        return ExitCode.ABORTED
    if s.packets_received == 0:
        return ExitCode.NO_DATA
    if s.mismatch_count > 0:
        return ExitCode.MISMATCHES
    if s.packets_lost > 0:
        return ExitCode.PACKET_LOSS
    return ExitCode.SUCCESS


def run_session(
    session: TestSession,
    open_port: Callable[[TestSession], Transport] = TestSession.open,
    on_driver: Callable[[TestDriver], None] | None = None,
) -> int:
    """Run a loopback session. Returns exit code.

    on_driver is called with the driver before the run starts so the caller
    can wire a quit signal to driver.cancel().
    """
    try:
        transport = open_port(session)
    except PortOpenError as e:
        logger.error(f"Failed to open serial port: {e}")
        return ExitCode.PORT_FAILED

    driver = TestDriver(session, transport)
    if on_driver is not None:
        on_driver(driver)

    progress = ProgressLogger(session.target_iterations)
    aborted = False
    for event in driver.run():
        progress.handle(event)
        if isinstance(event, TestFinished):
            aborted = event.aborted

    report = LoopbackReport(
        stats=driver.stats,
        cancelled=driver.state == DriverState.CANCELLED,
        aborted=aborted,
    )
    report.print()
    return exit_code_for(report)
