"""Client for the guest agent HTTP API on a UNIX socket."""

from __future__ import annotations

import http.client
import json
import os
import socket
from contextlib import closing
from typing import Iterator

from .api import Event, Info


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, socket_path: str, host: str) -> None:
        super().__init__(host)
        self._socket_path = socket_path

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self._socket_path)
        except OSError:
            sock.close()
            raise
        self.sock = sock


def _error_message(status: int, body: bytes) -> str:
    try:
        message = json.loads(body)["message"]
    except (ValueError, KeyError, TypeError):
        message = body.decode(errors="replace").strip()
    return f"unexpected HTTP status {status}: {message}"


class GuestAgentClient:
    """Talks to the guest agent; ``socket_path`` has no ``unix://`` prefix."""

    version = "v1"
    dummy_host = "lima-guestagent"

    def __init__(self, socket_path: str | os.PathLike) -> None:
        self.socket_path = os.fspath(socket_path)

    def _get(self, endpoint: str) -> tuple[_UnixHTTPConnection, http.client.HTTPResponse]:
        conn = _UnixHTTPConnection(self.socket_path, self.dummy_host)
        try:
            conn.request("GET", f"/{self.version}/{endpoint}")
            resp = conn.getresponse()
            if resp.status != 200:
                raise RuntimeError(_error_message(resp.status, resp.read()))
        except BaseException:
            conn.close()
            raise
        return conn, resp

    def info(self) -> Info:
        conn, resp = self._get("info")
        with closing(conn):
            return Info.from_dict(json.loads(resp.read()))

    def events(self) -> Iterator[Event]:
        """Yield events as the agent streams them; the request is made on first iteration."""
        conn, resp = self._get("events")
        with closing(conn):
            for line in resp:
                line = line.strip()
                if line:
                    yield Event.from_dict(json.loads(line))