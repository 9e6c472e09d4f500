"""The guest agent: reports listening TCP ports and changes to them."""

from __future__ import annotations

import logging
import os
import queue
import socket
import struct
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Iterator

from . import iptables, procnettcp, timesync
from .api import Event, Info, IPPort

log = logging.getLogger(__name__)

Ticker = tuple[queue.Queue, Callable[[], None]]

DELTA_LIMIT = timedelta(seconds=2)
TIME_SYNC_INTERVAL = 10.0
_POLL_INTERVAL = 0.05

NETLINK_AUDIT = 9
AUDIT_GET = 1000
AUDIT_SET = 1001
AUDIT_NETFILTER_CFG = 1325
AUDIT_STATUS_ENABLED = 0x1
AUDIT_NLGRP_READLOG = 1
_NLMSG_ERROR = 2
_NLM_F_REQUEST = 0x1
_NLM_F_ACK = 0x4
_NLMSGHDR = struct.Struct("=IHHII")


def _iter_netlink(data: bytes) -> Iterator[tuple[int, bytes]]:
    """Yield (type, payload) for each netlink message in ``data``."""
    offset = 0
    while offset + _NLMSGHDR.size <= len(data):
        length, msg_type, _flags, _seq, _pid = _NLMSGHDR.unpack_from(data, offset)
        if length < _NLMSGHDR.size:
            break
        yield msg_type, data[offset + _NLMSGHDR.size:offset + length]
        offset += (length + 3) & ~3


def _netlink_send(sock: socket.socket, msg_type: int, flags: int, payload: bytes, seq: int) -> None:
    header = _NLMSGHDR.pack(_NLMSGHDR.size + len(payload), msg_type, flags, seq, 0)
    sock.sendto(header + payload, (0, 0))


def _netlink_reply(sock: socket.socket, expected: int) -> bytes:
    while True:
        for msg_type, payload in _iter_netlink(sock.recv(65536)):
            if msg_type == _NLMSG_ERROR:
                (errno,) = struct.unpack_from("=i", payload, 0)
                if errno != 0:
                    raise OSError(-errno, os.strerror(-errno))
                if expected == _NLMSG_ERROR:
                    return b""
            elif msg_type == expected:
                return payload


def _audit_enable() -> None:
    """Turn the kernel audit subsystem on if it is off."""
    with socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, NETLINK_AUDIT) as sock:
        sock.bind((0, 0))
        _netlink_send(sock, AUDIT_GET, _NLM_F_REQUEST, b"", 1)
        status = _netlink_reply(sock, AUDIT_GET)
        (enabled,) = struct.unpack_from("=I", status, 4)
        if enabled == 0:
            payload = struct.pack("=8I", AUDIT_STATUS_ENABLED, 1, 0, 0, 0, 0, 0, 0)
            _netlink_send(sock, AUDIT_SET, _NLM_F_REQUEST | _NLM_F_ACK, payload, 2)
            _netlink_reply(sock, _NLMSG_ERROR)


def _open_audit_multicast() -> socket.socket:
    sock = socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, NETLINK_AUDIT)
    sock.bind((0, 1 << (AUDIT_NLGRP_READLOG - 1)))
    return sock


def compare_ports(old: Iterable[IPPort], new: Iterable[IPPort]) -> tuple[list[IPPort], list[IPPort]]:
    """Return the ports added in ``new`` and the ports of ``old`` gone from it."""
    new = list(new)
    old_by_key = {str(port): port for port in old}
    new_keys = {str(port) for port in new}
    added = [port for port in new if str(port) not in old_by_key]
    removed = [port for key, port in old_by_key.items() if key not in new_keys]
    return added, removed


def _wait_for_tick(ticks: queue.Queue, stop: threading.Event | None) -> bool:
    """Block until a tick arrives; False when stopped or the ticker closed (a None item)."""
    while stop is None or not stop.is_set():
        try:
            item = ticks.get(timeout=_POLL_INTERVAL)
        except queue.Empty:
            continue
        return item is not None
    return False


class Agent:
    """Collects listening ports from /proc/net/tcp{,6} and CNI iptables rules.

    ``new_ticker`` returns a queue that receives an item on every tick (None
    closes it) and a function that stops the ticker.
    """

    def __init__(self, new_ticker: Callable[[], Ticker], iptables_idle: float) -> None:
        self._new_ticker = new_ticker
        self._iptables_idle = iptables_idle
        self._lock = threading.Lock()
        self._worth_checking_iptables = False
        self._latest_true: float | None = None
        self._latest_iptables: list[iptables.Entry] = []

    def mark_iptables_changed(self) -> None:
        """Record that the netfilter configuration changed just now."""
        with self._lock:
            log.debug("mark_iptables_changed(): setting to true")
            self._worth_checking_iptables = True
            self._latest_true = time.monotonic()

    def expire_iptables_flag(self) -> None:
        """Stop re-reading iptables when no change was seen for the idle time."""
        with self._lock:
            if self._latest_true is None or time.monotonic() - self._latest_true >= self._iptables_idle:
                log.debug("expire_iptables_flag(): setting to false")
                self._worth_checking_iptables = False

    def _expire_loop(self) -> None:
        while True:
            time.sleep(self._iptables_idle)
            self.expire_iptables_flag()

    def _audit_loop(self, sock: socket.socket) -> None:
        while True:
            try:
                data = sock.recv(65536)
            except OSError as exc:
                log.error("%s", exc)
                continue
            if any(msg_type == AUDIT_NETFILTER_CFG for msg_type, _ in _iter_netlink(data)):
                self.mark_iptables_changed()

    def _fix_system_time_skew(self) -> None:
        while True:
            time.sleep(TIME_SYNC_INTERVAL)
            now = datetime.now(timezone.utc)
            try:
                rtc = timesync.get_rtc_time()
            except OSError as exc:
                log.warning("fix_system_time_skew: lookup error: %s", exc)
                continue
            delta = rtc - now
            log.debug("fix_system_time_skew: rtc=%s systime=%s delta=%s",
                      rtc.isoformat(), now.isoformat(), delta)
            if abs(delta) > DELTA_LIMIT:
                try:
                    timesync.set_system_time(rtc)
                except OSError as exc:
                    log.warning("fix_system_time_skew: set system clock error: %s", exc)
                    continue
                log.info("fix_system_time_skew: system time synchronized with rtc")

    def start_background_tasks(self) -> None:
        """Enable auditing and start the iptables watcher and the clock fixer threads."""
        audit_sock = _open_audit_multicast()
        try:
            _audit_enable()
        except OSError:
            audit_sock.close()
            raise
        for target, args in (
            (self._audit_loop, (audit_sock,)),
            (self._expire_loop, ()),
            (self._fix_system_time_skew, ()),
        ):
            threading.Thread(target=target, args=args, daemon=True).start()

    def local_ports(self) -> list[IPPort]:
        if sys.byteorder == "big":
            raise RuntimeError(
                "big endian architecture is unsupported, because the layout of "
                "/proc/net/tcp on big endian hosts is unknown"
            )
        ports = [
            IPPort(entry.ip, entry.port)
            for entry in procnettcp.parse_files()
            if entry.kind in (procnettcp.Kind.TCP, procnettcp.Kind.TCP6)
            and entry.state == procnettcp.State.LISTEN
        ]

        with self._lock:
            worth_checking = self._worth_checking_iptables
        log.debug("local_ports(): worth_checking_iptables=%s", worth_checking)
        if worth_checking:
            rules = iptables.get_ports()
            with self._lock:
                self._latest_iptables = rules
        else:
            with self._lock:
                rules = self._latest_iptables

        known = {port.port for port in ports}
        for rule in rules:
            if rule.port not in known:
                ports.append(IPPort(rule.ip, rule.port))
                known.add(rule.port)
        return ports

    def info(self) -> Info:
        return Info(local_ports=self.local_ports())

    def collect_event(self, ports: list[IPPort]) -> tuple[Event, list[IPPort]]:
        """Compare the current ports with ``ports``; return the event and the current ports."""
        try:
            current = self.local_ports()
        except Exception as exc:
            return Event(time=datetime.now(timezone.utc), errors=[str(exc)]), ports
        added, removed = compare_ports(ports, current)
        event = Event(
            time=datetime.now(timezone.utc),
            local_ports_added=added,
            local_ports_removed=removed,
        )
        return event, current

    def events(self, stop: threading.Event | None = None) -> Iterator[Event]:
        """Yield non-empty events, polling on every tick until ``stop`` is set."""
        ticks, close = self._new_ticker()
        try:
            ports: list[IPPort] = []
            while True:
                event, ports = self.collect_event(ports)
                if not event.is_empty():
                    yield event
                if not _wait_for_tick(ticks, stop):
                    return
                log.debug("tick!")
        finally:
            close()