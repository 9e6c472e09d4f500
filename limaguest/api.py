"""Wire types exchanged with the guest agent over its HTTP API."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

IPV4_LOOPBACK1 = ipaddress.IPv4Address("127.0.0.1")

_TIME_RE = re.compile(
    r"^(?P<base>\d{4,}-\d\d-\d\dT\d\d:\d\d:\d\d)(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d\d:\d\d)$"
)


def _format_time(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    text = dt.strftime("%Y-%m-%dT%H:%M:%S")
    if dt.microsecond:
        text += "." + f"{dt.microsecond:06d}".rstrip("0")
    offset = dt.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    minutes = int(offset.total_seconds()) // 60
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{mins:02d}"


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.match(text)
    if not match:
        raise ValueError(f"invalid RFC 3339 time {text!r}")
    frac = (match["frac"] or "")[:6].ljust(6, "0")
    tz = "+00:00" if match["tz"] == "Z" else match["tz"]
    return datetime.fromisoformat(f"{match['base']}.{frac}{tz}")


@dataclass(frozen=True)
class IPPort:
    ip: IPAddress
    port: int

    def __post_init__(self) -> None:
        if not isinstance(self.ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            object.__setattr__(self, "ip", ipaddress.ip_address(self.ip))

    def __str__(self) -> str:
        host = f"[{self.ip}]" if self.ip.version == 6 else str(self.ip)
        return f"{host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return {"ip": str(self.ip), "port": self.port}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IPPort":
        return cls(ipaddress.ip_address(data["ip"]), int(data["port"]))


def _ports_from(data: Any) -> list[IPPort]:
    return [IPPort.from_dict(item) for item in data or []]


@dataclass
class Info:
    """Agent information; local ports hold listening addresses such as 127.0.0.1 and 0.0.0.0."""

    local_ports: list[IPPort] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"localPorts": [p.to_dict() for p in self.local_ports]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Info":
        return cls(local_ports=_ports_from(data.get("localPorts")))


@dataclass
class Event:
    """A change in the guest; the first event lists all ports as added."""

    time: datetime | None = None
    local_ports_added: list[IPPort] = field(default_factory=list)
    local_ports_removed: list[IPPort] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.time is not None:
            data["time"] = _format_time(self.time)
        if self.local_ports_added:
            data["localPortsAdded"] = [p.to_dict() for p in self.local_ports_added]
        if self.local_ports_removed:
            data["localPortsRemoved"] = [p.to_dict() for p in self.local_ports_removed]
        if self.errors:
            data["errors"] = list(self.errors)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        raw_time = data.get("time")
        return cls(
            time=_parse_time(raw_time) if raw_time else None,
            local_ports_added=_ports_from(data.get("localPortsAdded")),
            local_ports_removed=_ports_from(data.get("localPortsRemoved")),
            errors=list(data.get("errors") or []),
        )

    def is_empty(self) -> bool:
        """True when the event carries nothing besides its time."""
        return not (self.local_ports_added or self.local_ports_removed or self.errors)