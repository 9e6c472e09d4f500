"""Values for the cloud-init data disk: proxy environment, certificates, boot commands and template arguments."""

from __future__ import annotations

import enum
import ipaddress
import logging
import os
import re
import socket
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Sequence, Union
from urllib.parse import SplitResult, urlsplit, urlunsplit

from .guessarg import validate_identifier

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

SLIRP_NIC_NAME = "eth0"
SLIRP_GATEWAY = "192.168.5.2"
SLIRP_DNS = "192.168.5.3"
SLIRP_IP_ADDRESS = "192.168.5.15"

LOWER_PROXY_VARS = ("ftp_proxy", "http_proxy", "https_proxy", "no_proxy")
UPPER_PROXY_VARS = tuple(name.upper() for name in LOWER_PROXY_VARS)

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


class ProvisionMode(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    BOOT = "boot"


@dataclass(frozen=True)
class Provision:
    mode: ProvisionMode
    script: str


@dataclass(frozen=True)
class Cert:
    lines: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class BootCmds:
    lines: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Mount:
    mount_point: str
    tag: str = ""
    type: str = ""
    options: str = ""


@dataclass(frozen=True)
class Disk:
    name: str
    device: str


@dataclass(frozen=True)
class Network:
    mac_address: str
    interface: str


@dataclass
class TemplateArgs:
    """Everything the cloud-init templates are rendered with."""

    name: str = ""
    iid: str = ""
    user: str = ""
    uid: int = 0
    ssh_pub_keys: list[str] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)
    mount_type: str = ""
    disks: list[Disk] = field(default_factory=list)
    containerd_system: bool = False
    containerd_user: bool = False
    networks: list[Network] = field(default_factory=list)
    slirp_nic_name: str = SLIRP_NIC_NAME
    slirp_gateway: str = SLIRP_GATEWAY
    slirp_dns: str = SLIRP_DNS
    slirp_ip_address: str = SLIRP_IP_ADDRESS
    udp_dns_local_port: int = 0
    tcp_dns_local_port: int = 0
    env: dict[str, str] = field(default_factory=dict)
    dns_addresses: list[str] = field(default_factory=list)
    ca_remove_defaults: bool | None = None
    ca_trusted: list[Cert] = field(default_factory=list)
    host_home_mount_point: str = ""
    boot_cmds: list[BootCmds] = field(default_factory=list)
    rosetta_enabled: bool = False
    rosetta_bin_fmt: bool = False


def _lookup_ip(host: str) -> list[IPAddress]:
    try:
        infos = socket.getaddrinfo(host, None)
    except (OSError, UnicodeError) as exc:
        log.debug("lookup %s: %s", host, exc)
        return []
    addresses: list[IPAddress] = []
    for info in infos:
        try:
            address = ipaddress.ip_address(str(info[4][0]).split("%", 1)[0])
        except ValueError:
            continue
        if address not in addresses:
            addresses.append(address)
    return addresses


def _split_host_port(hostport: str) -> tuple[str, str]:
    """Split a URL host into host name and port, as a URL parser would."""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in host {hostport!r}")
        rest = hostport[end + 1:]
        if rest and (not rest.startswith(":") or not rest[1:].isdigit() and rest[1:]):
            raise ValueError(f"invalid port {rest!r} after host")
        return hostport[1:end], rest[1:]
    host, sep, port = hostport.rpartition(":")
    if not sep:
        return hostport, ""
    if port and not port.isdigit():
        raise ValueError(f"invalid port {':' + port!r} after host")
    return host, port


def _parse_proxy_url(value: str) -> SplitResult:
    if _CONTROL_CHARS_RE.search(value):
        raise ValueError("invalid control character in URL")
    if value.startswith(":"):
        raise ValueError("missing protocol scheme")
    parsed = urlsplit(value)
    if not parsed.scheme and not parsed.netloc:
        if ":" in parsed.path.split("/", 1)[0]:
            raise ValueError("first path segment in URL cannot contain colon")
    _split_host_port(parsed.netloc.rpartition("@")[2])
    return parsed


def _replace_loopback(value: str, lookup_ip: Callable[[str], Iterable[IPAddress]]) -> str:
    parsed = _parse_proxy_url(value)
    userinfo, at, hostport = parsed.netloc.rpartition("@")
    hostname, port = _split_host_port(hostport)
    for ip in lookup_ip(hostname):
        if ipaddress.ip_address(ip).is_loopback:
            new_host = f"{SLIRP_GATEWAY}:{port}" if port else SLIRP_GATEWAY
            parsed = parsed._replace(netloc=f"{userinfo}{at}{new_host}")
            value = urlunsplit(parsed)
    return value


def setup_env(
    env: Mapping[str, str] | None,
    propagate_proxy_env: bool,
    proxy_settings: Mapping[str, str] | None = None,
    lookup_ip: Callable[[str], Iterable[IPAddress]] | None = None,
) -> dict[str, str]:
    """Merge proxy settings, ``env`` and (optionally) the process environment.

    Later sources win: system proxy settings, then ``env``, then the process
    environment. Loopback proxy hosts are replaced with the slirp gateway, and
    upper- and lowercase proxy variables are made equal, the lowercase winning.
    """
    lookup = lookup_ip if lookup_ip is not None else _lookup_ip
    result = dict(proxy_settings or {})
    result.update(env or {})
    all_vars = LOWER_PROXY_VARS + UPPER_PROXY_VARS

    if propagate_proxy_env:
        for name in all_vars:
            value = os.environ.get(name)
            if value is None:
                continue
            if name in result and result[name] != value:
                log.info("Overriding %r value %r with %r from limactl process environment",
                         name, result[name], value)
            result[name] = value

    for name in all_vars:
        if name not in result or name.lower() == "no_proxy":
            continue
        old = result[name]
        try:
            new = _replace_loopback(old, lookup)
        except ValueError as exc:
            log.warning("Ignoring invalid proxy %r=%s: %s", name, old, exc)
            continue
        if new != old:
            log.info("Replacing %r value %r with %r", name, old, new)
            result[name] = new

    for lower in LOWER_PROXY_VARS:
        upper = lower.upper()
        if lower in result:
            if upper in result and result[upper] != result[lower]:
                log.warning("Changing %r value from %r to %r to match %r",
                            upper, result[upper], result[lower], lower)
            result[upper] = result[lower]
        elif upper in result:
            result[lower] = result[upper]
    return result


def _nonempty_trimmed_lines(text: str) -> list[str]:
    return [line.strip() for line in text.split("\n") if line != ""]


def get_cert(content: str) -> Cert:
    """Split a PEM certificate into trimmed lines, dropping empty ones."""
    return Cert(lines=_nonempty_trimmed_lines(content))


def get_boot_cmds(provisions: Sequence[Provision]) -> list[BootCmds]:
    """Collect the scripts of boot-mode provisions as lists of commands."""
    return [
        BootCmds(lines=_nonempty_trimmed_lines(p.script))
        for p in provisions
        if ProvisionMode(p.mode) is ProvisionMode.BOOT
    ]


def disk_device_name_from_order(order: int) -> str:
    """Additional disks start at ``vdb``."""
    return f"vd{chr(ord('b') + order)}"


def validate_template_args(args: TemplateArgs) -> None:
    """Raise ValueError if the template arguments are unusable."""
    validate_identifier(args.name)
    validate_identifier(args.user)
    if args.user == "root":
        raise ValueError('field User must not be "root"')
    if args.uid == 0:
        raise ValueError("field UID must not be 0")
    if not args.ssh_pub_keys:
        raise ValueError("field SSHPubKeys must be set")
    for index, mount in enumerate(args.mounts):
        if not mount.mount_point.startswith("/"):
            raise ValueError(
                f"field mounts[{index}] must be absolute, got {mount.mount_point!r}"
            )