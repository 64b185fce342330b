#!/usr/bin/env python3
"""Serial port loopback test tool."""

import argparse
import logging
import os
import signal
import sys
from types import FrameType

from common.device import PtyEchoDevice
from common.protocol import DEFAULT_BAUDRATE, DEFAULT_ITERATIONS, DEFAULT_PORT
from session.driver import Mode, TestDriver, TestSession
from session.runner import run_session

logger = logging.getLogger(__name__)

PORT = DEFAULT_PORT
BAUDRATE = DEFAULT_BAUDRATE
COUNT = DEFAULT_ITERATIONS


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _load_env() -> None:
    """Take flag defaults from the environment (flags still override).

    Raises ValueError if SERIAL_BAUD or SERIAL_COUNT is not an integer.
    """
    global PORT, BAUDRATE, COUNT
    PORT = os.environ.get("SERIAL_PORT", PORT)
    BAUDRATE = _env_int("SERIAL_BAUD", BAUDRATE)
    COUNT = _env_int("SERIAL_COUNT", COUNT)


def _install_quit_handler(driver: TestDriver) -> None:
    def handler(_sig: int, _frame: FrameType | None) -> None:
        driver.cancel()

    signal.signal(signal.SIGINT, handler)


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add baud, count, mode and logging arguments to a parser."""
    parser.add_argument(
        "-b",
        "--baud",
        type=int,
        default=BAUDRATE,
        help=f"Baud rate (default: {BAUDRATE})",
    )
    parser.add_argument(
        "-c",
        "--count",
        type=int,
        default=COUNT,
        help=f"Number of test iterations, 0 = until Ctrl-C (default: {COUNT})",
    )
    parser.add_argument(
        "--duplex",
        action="store_true",
        help="Send and receive as independent streams instead of round trips",
    )
    parser.add_argument(
        "-i",
        "--interval",
        type=float,
        default=None,
        help="Delay between iterations/sends in seconds",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="serial-loopback",
        description="Serial port loopback testing tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s test -p /dev/ttyUSB0          Round-trip test, 1000 packets
  %(prog)s test -p /dev/ttyUSB0 -c 0     Run until Ctrl-C
  %(prog)s test --duplex -b 9600         Duplex streams at 9600 baud
  %(prog)s pty                           Run against a virtual pty echo
""",
    )
    subparsers = parser.add_subparsers(dest="command")

    test_parser = subparsers.add_parser("test", help="Run serial port loopback test")
    test_parser.add_argument(
        "-p",
        "--port",
        type=str,
        default=PORT,
        help=f"Serial port device (default: {PORT})",
    )
    _add_common_args(test_parser)

    pty_parser = subparsers.add_parser("pty", help="Run loopback test against a pty echo")
    _add_common_args(pty_parser)

    return parser


def session_from_args(args: argparse.Namespace, port: str) -> TestSession:
    """Build a TestSession from parsed arguments."""
    if args.count < 0:
        raise ValueError(f"count must be >= 0 (0 runs until Ctrl-C), got {args.count}")
    mode = Mode.DUPLEX if args.duplex else Mode.ROUND_TRIP
    intervals: dict[str, float] = {}
    if args.interval is not None:
        key = "send_interval_s" if mode == Mode.DUPLEX else "iteration_interval_s"
        intervals[key] = args.interval
    return TestSession(
        port=port,
        baud_rate=args.baud,
        target_iterations=args.count if args.count > 0 else None,
        mode=mode,
        **intervals,
    )


def _session_or_exit(
    parser: argparse.ArgumentParser, args: argparse.Namespace, port: str
) -> TestSession:
    try:
        return session_from_args(args, port)
    except ValueError as e:
        parser.error(str(e))


def _run(session: TestSession) -> int:
    target = session.target_iterations
    duration_msg = "until Ctrl-C" if target is None else f"for {target} iterations"
    logger.info(f"Running {session.mode.value} loopback test {duration_msg} (Ctrl-C to stop)")
    return run_session(session, on_driver=_install_quit_handler)


def main(argv: list[str] | None = None) -> int:
    try:
        _load_env()
    except ValueError as e:
        build_parser().error(str(e))
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if args.command == "pty":
        with PtyEchoDevice() as device:
            return _run(_session_or_exit(parser, args, device.port))

    return _run(_session_or_exit(parser, args, args.port))


if __name__ == "__main__":
    sys.exit(main())
