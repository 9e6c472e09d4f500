"""The ``lima-guestagent`` command."""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import queue
import re
import shutil
import threading
import time
from typing import Callable

from .agent import Agent, Ticker
from .server import GuestAgentServer

log = logging.getLogger(__name__)

DEFAULT_SOCKET = "/run/lima-guestagent.sock"
DEFAULT_TICK = "3s"

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)"
_PART_RE = re.compile(_PART)
_DURATION_RE = re.compile(f"(?:{_PART})+")


def parse_duration(text: str) -> float:
    """Parse a duration such as ``3s``, ``1m30s`` or ``-1.5h`` into seconds."""
    body = text
    sign = 1.0
    if body[:1] in ("+", "-") and body:
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return 0.0
    if not body or not _DURATION_RE.fullmatch(body):
        raise ValueError(f'time: invalid duration "{text}"')
    return sign * sum(float(number) * _UNITS[unit] for number, unit in _PART_RE.findall(body))


def _ticker_factory(interval: float) -> Callable[[], Ticker]:
    def new_ticker() -> Ticker:
        ticks: queue.Queue = queue.Queue(maxsize=1)
        stopped = threading.Event()

        def run() -> None:
            while not stopped.wait(interval):
                with contextlib.suppress(queue.Full):
                    ticks.put_nowait(time.time())

        threading.Thread(target=run, daemon=True).start()
        return ticks, stopped.set

    return new_ticker


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        with contextlib.suppress(FileNotFoundError):
            os.remove(path)


def run_daemon(socket_path: str, tick: float) -> None:
    """Serve the guest agent on ``socket_path``, polling every ``tick`` seconds."""
    if tick == 0:
        raise ValueError("tick must be specified")
    if tick < 0:
        raise ValueError("non-positive interval for tick")
    if os.geteuid() != 0:
        raise PermissionError("must run as the root")
    log.info("event tick: %ss", tick)

    agent = Agent(_ticker_factory(tick), tick * 20)
    agent.start_background_tasks()
    _remove_all(socket_path)
    with GuestAgentServer(socket_path, agent) as server:
        os.chmod(socket_path, 0o777)
        log.info("serving the guest agent on %r", socket_path)
        server.serve_forever()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="lima-guestagent", description="Do not launch manually")
    parser.add_argument("--debug", action="store_true", help="debug mode")
    commands = parser.add_subparsers(dest="command")
    daemon = commands.add_parser("daemon", help="run the daemon")
    daemon.add_argument("--debug", action="store_true", default=argparse.SUPPRESS, help="debug mode")
    daemon.add_argument(
        "--tick", type=parse_duration, default=parse_duration(DEFAULT_TICK),
        help="tick for polling events",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)
    if args.command is None:
        parser.print_help()
        return 0
    try:
        run_daemon(DEFAULT_SOCKET, args.tick)
    except Exception as exc:
        log.critical("%s", exc)
        return 1
    return 0