"""Download files over HTTP or from local paths, with optional caching and digest checks."""

from __future__ import annotations

import contextlib
import enum
import hashlib
import json
import os
import re
import shutil
import sys
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import BinaryIO, TextIO

_CHUNK_SIZE = 64 * 1024

# Digest algorithms that can be verified, with the length of their hex encoding.
_ALGORITHMS = {"sha256": 64, "sha384": 96, "sha512": 128}
_ALGORITHM_RE = re.compile(r"[a-z0-9]+(?:[.+_-][a-z0-9]+)*")
_HEX_RE = re.compile(r"[a-f0-9]+")


def _quote(s: str) -> str:
    return json.dumps(s, ensure_ascii=False)


class DownloadError(Exception):
    """A download failed: bad HTTP status, digest mismatch or missing cache directory."""


class Status(str, enum.Enum):
    UNKNOWN = ""
    DOWNLOADED = "downloaded"
    SKIPPED = "skipped"
    USED_CACHE = "used-cache"


@dataclass(frozen=True)
class Result:
    status: Status
    cache_path: str = ""
    validated_digest: bool = False


@dataclass(frozen=True)
class Digest:
    """A content digest such as ``sha256:<hex>``."""

    algorithm: str
    encoded: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.encoded}"

    @classmethod
    def parse(cls, text: str) -> "Digest":
        """Parse and validate ``algorithm:hex``; raise ValueError when it is invalid."""
        algorithm, sep, encoded = text.partition(":")
        if not sep or not algorithm or not encoded or not _ALGORITHM_RE.fullmatch(algorithm):
            raise ValueError(f"invalid checksum digest format: {_quote(text)}")
        length = _ALGORITHMS.get(algorithm)
        if length is None:
            raise ValueError(f"unsupported digest algorithm {_quote(algorithm)}")
        if len(encoded) != length:
            raise ValueError(f"invalid checksum digest length: {_quote(text)}")
        if not _HEX_RE.fullmatch(encoded):
            raise ValueError(f"invalid checksum digest format: {_quote(text)}")
        return cls(algorithm, encoded)

    @classmethod
    def of_file(cls, path: str | os.PathLike, algorithm: str = "sha256") -> "Digest":
        """Compute the digest of a file's content."""
        if algorithm not in _ALGORITHMS:
            raise ValueError(f"unsupported digest algorithm {_quote(algorithm)}")
        hasher = hashlib.new(algorithm)
        with open(path, "rb") as handle:
            for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
                hasher.update(chunk)
        return cls(algorithm, hasher.hexdigest())


def _user_cache_dir() -> str:
    if sys.platform == "win32":
        base = os.environ.get("LocalAppData", "")
        if not base:
            raise OSError("%LocalAppData% is not defined")
        return base
    if sys.platform == "darwin":
        home = os.environ.get("HOME", "")
        if not home:
            raise OSError("$HOME is not defined")
        return os.path.join(home, "Library", "Caches")
    xdg = os.environ.get("XDG_CACHE_HOME", "")
    if xdg:
        return xdg
    home = os.environ.get("HOME", "")
    if not home:
        raise OSError("neither $XDG_CACHE_HOME nor $HOME are defined")
    return os.path.join(home, ".cache")


def default_cache_dir() -> str:
    """The ``lima`` directory under the user's cache directory."""
    return os.path.join(_user_cache_dir(), "lima")


def is_local(s: str) -> bool:
    return "://" not in s or s.startswith("file://")


def canonical_local_path(s: str) -> str:
    """Strip a ``file://`` scheme (which needs an absolute path), expand ``~`` and make absolute."""
    if not s:
        raise ValueError("got empty path")
    if not is_local(s):
        raise ValueError(f"got non-local path: {_quote(s)}")
    if s.startswith("file://"):
        path = s[len("file://"):]
        if not os.path.isabs(path):
            raise ValueError(f"got non-absolute path {_quote(path)}")
        return path
    return os.path.abspath(os.path.expanduser(s))


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        with contextlib.suppress(FileNotFoundError):
            os.remove(path)


def _validate_local_file_digest(local_path: str, expected: Digest | None) -> None:
    if not local_path:
        raise ValueError("validate_local_file_digest: got empty local path")
    if expected is None:
        return
    actual = Digest.of_file(local_path, expected.algorithm)
    if actual != expected:
        raise DownloadError(f"expected digest {_quote(str(expected))}, got {_quote(str(actual))}")


def _copy_local(dst: str, src: str, expected: Digest | None) -> None:
    src_path = canonical_local_path(src)
    _validate_local_file_digest(src_path, expected)
    if not dst:
        # caching-only mode
        return
    shutil.copyfile(src_path, canonical_local_path(dst))


def _format_bytes(n: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if n < 1024 or unit == "TiB":
            return f"{n:.0f} {unit}" if unit == "B" else f"{n:.2f} {unit}"
        n /= 1024
    return f"{n:.2f} TiB"


class _Progress:
    """A plain progress report on a stream; redrawn in place on a terminal."""

    def __init__(self, total: int | None, hide: bool, stream: TextIO | None = None) -> None:
        self.stream = stream if stream is not None else sys.stderr
        self.total = total if total and total > 0 else None
        self.tty = self.stream.isatty()
        self.hidden = hide and not self.tty
        self.interval = 0.2 if self.tty else 5.0
        self.done = 0
        self.started = time.monotonic()
        self.last_draw = self.started

    def _line(self) -> str:
        elapsed = max(time.monotonic() - self.started, 1e-6)
        speed = f"{_format_bytes(self.done / elapsed)}/s"
        counters = _format_bytes(self.done)
        if self.total is not None:
            counters += f" / {_format_bytes(self.total)}"
            percent = f"{100.0 * self.done / self.total:.2f}%"
        else:
            percent = "?%"
        return f"{counters} ({percent}) {speed}"

    def _draw(self) -> None:
        if self.hidden:
            return
        end = "" if self.tty else "\n"
        prefix = "\r" if self.tty else ""
        self.stream.write(f"{prefix}{self._line()}{end}")
        self.stream.flush()

    def update(self, n: int) -> None:
        self.done += n
        now = time.monotonic()
        if now - self.last_draw >= self.interval:
            self.last_draw = now
            self._draw()

    def finish(self) -> None:
        self._draw()
        if self.tty and not self.hidden:
            self.stream.write("\n")
            self.stream.flush()


def _copy_stream(src: BinaryIO, dst: BinaryIO, hasher, progress: _Progress) -> None:
    for chunk in iter(lambda: src.read(_CHUNK_SIZE), b""):
        dst.write(chunk)
        if hasher is not None:
            hasher.update(chunk)
        progress.update(len(chunk))


def _download_http(local_path: str, url: str, expected: Digest | None, hide_progress: bool) -> None:
    if not local_path:
        raise ValueError("download_http: got empty local path")
    tmp_path = local_path + ".tmp"
    _remove_all(tmp_path)
    try:
        response = urllib.request.urlopen(url)
    except urllib.error.HTTPError as exc:
        exc.close()
        raise DownloadError(f"expected HTTP status 200, got {exc.code} {exc.reason}") from None
    with response, open(tmp_path, "wb") as out:
        if response.status != 200:
            raise DownloadError(f"expected HTTP status 200, got {response.status} {response.reason}")
        length = response.headers.get("Content-Length")
        total = int(length) if length and length.isdigit() else None
        progress = _Progress(total, hide_progress)
        hasher = hashlib.new(expected.algorithm) if expected is not None else None
        _copy_stream(response, out, hasher, progress)
        progress.finish()
        if hasher is not None:
            actual = Digest(expected.algorithm, hasher.hexdigest())
            if actual != expected:
                raise DownloadError(
                    f"expected digest {_quote(str(expected))}, got {_quote(str(actual))}"
                )
        out.flush()
        os.fsync(out.fileno())
    _remove_all(local_path)
    os.replace(tmp_path, local_path)


def _as_digest(value: Digest | str | None) -> Digest | None:
    if value is None or value == "":
        return None
    if isinstance(value, Digest):
        return value
    try:
        return Digest.parse(value)
    except ValueError as exc:
        algorithm = value.partition(":")[0]
        if algorithm and _ALGORITHM_RE.fullmatch(algorithm) and algorithm not in _ALGORITHMS:
            raise ValueError(
                f"expected digest algorithm {_quote(algorithm)} is not available"
            ) from exc
        raise


def download(
    local: str,
    remote: str,
    cache_dir: str | os.PathLike | None = None,
    expected_digest: Digest | str | None = None,
    hide_progress: bool = False,
) -> Result:
    """Fetch ``remote`` into ``local``.

    An existing ``local`` is left alone and reported as skipped, without digest
    validation. An empty ``local`` means caching only, which needs ``cache_dir``.
    Remote resources are cached under ``cache_dir`` when it is given; local
    sources are never cached. A cached file with a stored digest is verified by
    comparing digest strings, not by hashing the data.
    """
    expected = _as_digest(expected_digest)
    cache = os.fspath(cache_dir) if cache_dir else ""
    validated = expected is not None

    local_path = ""
    if not local:
        if not cache:
            raise DownloadError("caching-only mode requires the cache directory to be specified")
    else:
        local_path = canonical_local_path(local)
        if os.path.lexists(local_path):
            return Result(Status.SKIPPED, validated_digest=False)
        os.makedirs(os.path.dirname(local_path), mode=0o755, exist_ok=True)

    if is_local(remote):
        _copy_local(local_path, remote, expected)
        return Result(Status.DOWNLOADED, validated_digest=validated)

    if not cache:
        _download_http(local_path, remote, expected, hide_progress)
        return Result(Status.DOWNLOADED, validated_digest=validated)

    shad = os.path.join(
        cache, "download", "by-url-sha256", hashlib.sha256(remote.encode()).hexdigest()
    )
    shad_data = os.path.join(shad, "data")
    shad_digest = ""
    if expected is not None:
        if "/" in expected.algorithm or "\\" in expected.algorithm:
            raise ValueError(f"invalid digest algorithm {_quote(expected.algorithm)}")
        shad_digest = os.path.join(shad, expected.algorithm + ".digest")

    if os.path.exists(shad_data):
        cached_digest = None
        if shad_digest:
            with contextlib.suppress(OSError):
                with open(shad_digest, encoding="utf-8") as handle:
                    cached_digest = handle.read().strip()
        if cached_digest is not None:
            if str(expected) != cached_digest:
                raise DownloadError(
                    f"expected digest {_quote(str(expected))} does not match the cached digest "
                    f"{_quote(cached_digest)}"
                )
            _copy_local(local_path, shad_data, None)
        else:
            _copy_local(local_path, shad_data, expected)
        return Result(Status.USED_CACHE, cache_path=shad_data, validated_digest=validated)

    _remove_all(shad)
    os.makedirs(shad, mode=0o700)
    with open(os.path.join(shad, "url"), "w", encoding="utf-8") as handle:
        handle.write(remote)
    _download_http(shad_data, remote, expected, hide_progress)
    # the digest was verified while downloading
    _copy_local(local_path, shad_data, None)
    if shad_digest:
        with open(shad_digest, "w", encoding="utf-8") as handle:
            handle.write(str(expected))
    return Result(Status.DOWNLOADED, cache_path=shad_data, validated_digest=validated)