"""Guess what kind of thing a command-line argument names: template, URL, YAML path or instance."""

from __future__ import annotations

import json
import re
from urllib.parse import SplitResult, urlsplit

MAX_IDENTIFIER_LENGTH = 76
_IDENTIFIER_PATTERN = r"^[A-Za-z0-9]+(?:[._-](?:[A-Za-z0-9]+))*$"
_IDENTIFIER_RE = re.compile(_IDENTIFIER_PATTERN)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


def _quote(s: str) -> str:
    return json.dumps(s, ensure_ascii=False)


def validate_identifier(s: str) -> str:
    """Check that ``s`` is a valid instance identifier and return it unchanged."""
    if not s:
        raise ValueError("identifier must not be empty")
    if len(s) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"identifier {_quote(s)} greater than maximum length "
            f"({MAX_IDENTIFIER_LENGTH} characters)"
        )
    if not _IDENTIFIER_RE.match(s):
        raise ValueError(
            f"identifier {_quote(s)} must match pattern {_quote(_IDENTIFIER_PATTERN)}"
        )
    return s


def _parse_url(arg: str) -> SplitResult:
    if _CONTROL_CHARS_RE.search(arg):
        raise ValueError(f"parse {_quote(arg)}: invalid control character in URL")
    if arg.startswith(":"):
        raise ValueError(f"parse {_quote(arg)}: missing protocol scheme")
    parsed = urlsplit(arg)
    if not parsed.scheme and not parsed.netloc:
        first_segment = parsed.path.split("/", 1)[0]
        if ":" in first_segment:
            raise ValueError(
                f"parse {_quote(arg)}: first path segment in URL cannot contain colon"
            )
    return parsed


def _scheme(arg: str) -> str | None:
    try:
        return _parse_url(arg).scheme
    except ValueError:
        return None


def seems_template_url(arg: str) -> SplitResult | None:
    """Return the parsed URL when ``arg`` uses the ``template://`` scheme, else None."""
    try:
        parsed = _parse_url(arg)
    except ValueError:
        return None
    return parsed if parsed.scheme == "template" else None


def seems_http_url(arg: str) -> bool:
    return _scheme(arg) in ("http", "https")


def seems_file_url(arg: str) -> bool:
    return _scheme(arg) == "file"


def seems_yaml_path(arg: str) -> bool:
    if "/" in arg:
        return True
    lower = arg.lower()
    return lower.endswith(".yml") or lower.endswith(".yaml")


def _path_base(p: str) -> str:
    if not p:
        return "."
    stripped = p.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def inst_name_from_url(url_str: str) -> str:
    """Derive an instance name from the last path element of a URL."""
    parsed = _parse_url(url_str)
    return inst_name_from_yaml_path(_path_base(parsed.path))


def inst_name_from_yaml_path(yaml_path: str) -> str:
    """Derive an instance name from a YAML file name, e.g. ``fedora.yaml`` -> ``fedora``."""
    name = _path_base(yaml_path).lower()
    name = name.removesuffix(".yml").removesuffix(".yaml")
    name = name.replace(".", "-")
    try:
        validate_identifier(name)
    except ValueError as exc:
        raise ValueError(f"filename {_quote(yaml_path)} is invalid: {exc}") from exc
    return name