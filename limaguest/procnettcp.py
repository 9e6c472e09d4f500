"""Parse ``/proc/net/tcp`` and ``/proc/net/tcp6`` tables on little-endian hosts."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Iterable, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_HEX_RE = re.compile(r"[0-9A-Fa-f]+")

PROC_FILES = (("/proc/net/tcp", "tcp"), ("/proc/net/tcp6", "tcp6"))


class Kind(str, Enum):
    TCP = "tcp"
    TCP6 = "tcp6"


class State(IntEnum):
    ESTABLISHED = 0x1
    LISTEN = 0xA


@dataclass(frozen=True)
class Entry:
    kind: Kind
    ip: IPAddress
    port: int
    state: int


def _parse_hex(text: str, bits: int) -> int:
    if not _HEX_RE.fullmatch(text):
        raise ValueError(f"invalid hexadecimal number {text!r}")
    value = int(text, 16)
    if value >= 1 << bits:
        raise ValueError(f"hexadecimal number {text!r} out of range")
    return value


def _as_state(value: int) -> int:
    try:
        return State(value)
    except ValueError:
        return value


def _field(fields: list[str], index: int, line: str) -> str:
    try:
        return fields[index]
    except IndexError:
        raise ValueError(f"too few fields in line {line!r}") from None


def parse(stream: Iterable[str] | str, kind: Kind | str) -> list[Entry]:
    """Parse the text of a ``/proc/net/tcp``-style table; the first line is the header."""
    try:
        kind = Kind(kind)
    except ValueError:
        raise ValueError(f"unexpected kind {str(kind)!r}") from None
    lines = stream.splitlines() if isinstance(stream, str) else stream

    field_names: dict[str, int] = {}
    entries: list[Entry] = []
    for index, raw in enumerate(lines):
        line = raw.strip()
        if not line:
            continue
        fields = line.split()
        if index == 0:
            field_names = {name: pos for pos, name in enumerate(fields)}
            for required in ("local_address", "st"):
                if required not in field_names:
                    raise ValueError(f'field "{required}" not found')
            continue
        local_address = _field(fields, field_names.get("local_address", 0), line)
        ip, port = parse_address(local_address)
        state = _parse_hex(_field(fields, field_names.get("st", 0), line), 8)
        entries.append(Entry(kind=kind, ip=ip, port=port, state=_as_state(state)))
    return entries


def parse_address(s: str) -> tuple[IPAddress, int]:
    """Parse an address such as ``0100007F:0050`` (127.0.0.1, port 80).

    Each group of 4 bytes of the address is stored little endian.
    """
    hex_ip, sep, hex_port = s.partition(":")
    if not sep:
        raise ValueError(f"unparsable address {s!r}")
    if len(hex_ip) not in (8, 32):
        raise ValueError(
            f"unparsable address {s!r}, expected length of {hex_ip!r} to be 8 or 32, "
            f"got {len(hex_ip)}"
        )
    quartets = [hex_ip[start:start + 8] for start in range(0, len(hex_ip), 8)]
    raw = bytearray()
    for quartet in quartets:
        if not _HEX_RE.fullmatch(quartet):
            raise ValueError(f"unparsable address {s!r}: unparsable quartet {quartet!r}")
        raw += bytes.fromhex(quartet)[::-1]
    ip = ipaddress.ip_address(bytes(raw))
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    try:
        port = _parse_hex(hex_port, 16)
    except ValueError:
        raise ValueError(f"unparsable address {s!r}: unparsable port {hex_port!r}") from None
    return ip, port


def parse_files() -> list[Entry]:
    """Parse ``/proc/net/tcp`` and ``/proc/net/tcp6``, skipping whichever is absent."""
    entries: list[Entry] = []
    for path, kind in PROC_FILES:
        try:
            handle = open(path, encoding="ascii")
        except FileNotFoundError:
            continue
        with handle:
            entries.extend(parse(handle, kind))
    return entries