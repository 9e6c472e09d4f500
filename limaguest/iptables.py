"""Find ports forwarded by CNI portmap rules in the iptables NAT table."""

from __future__ import annotations

import ipaddress
import re
import shutil
import socket
import subprocess
from dataclasses import dataclass
from typing import Iterable, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Matches the DNAT line portmap appends for a container, e.g.
#   -A CNI-DN-2e2f8d5b91929ef9fc152 -d 127.0.0.1/32 -p tcp -m tcp --dport 8081 -j DNAT --to-destination 10.4.0.7:80
# The destination IP is optional; without it the rule applies to all interfaces.
_FIND_PORT_RE = re.compile(
    r"-A\s+CNI-DN-\w*\s+"
    r"(?:-d ((?:\b25[0-5]|\b2[0-4][0-9]|\b[01]?[0-9][0-9]?)"
    r"(?:\.(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)){3}))?"
    r"(?:/32\s+)?-p (tcp)?.*--dport (\d+) -j DNAT",
    re.ASCII,
)


@dataclass(frozen=True)
class Entry:
    tcp: bool
    ip: IPAddress
    port: int


def get_ports() -> list[Entry]:
    """Return the forwarded ports that are open; empty when iptables is not installed."""
    path = shutil.which("iptables")
    if path is None:
        return []
    return check_ports_open(parse_ports_from_rules(list_nat_rules(path)))


def parse_ports_from_rules(rules: Iterable[str]) -> list[Entry]:
    entries = []
    for rule in rules:
        match = _FIND_PORT_RE.search(rule)
        if match is None:
            continue
        ip, protocol, port = match.groups()
        entries.append(
            Entry(
                tcp=protocol == "tcp",
                ip=ipaddress.ip_address(ip or "0.0.0.0"),
                port=int(port),
            )
        )
    return entries


def list_nat_rules(path: str) -> list[str]:
    """Run ``iptables -t nat -S`` and return its output, one rule per line."""
    result = subprocess.run(
        [path, "-t", "nat", "-S"], capture_output=True, text=True, check=True
    )
    rules = result.stdout.split("\n")
    if rules and rules[-1] == "":
        rules.pop()
    return rules


def _is_open(entry: Entry) -> bool:
    try:
        with socket.create_connection((str(entry.ip), entry.port), timeout=1.0):
            return True
    except OSError:
        return False


def check_ports_open(entries: Iterable[Entry]) -> list[Entry]:
    """Keep non-TCP entries and the TCP entries that accept a connection."""
    return [entry for entry in entries if not entry.tcp or _is_open(entry)]