"""HTTP API of the guest agent, served on a UNIX socket."""

from __future__ import annotations

import json
import logging
import os
import socketserver
import threading
from http.server import BaseHTTPRequestHandler
from typing import Any, Callable
from urllib.parse import urlsplit

log = logging.getLogger(__name__)

_COMPACT = (",", ":")


class _UnixHTTPServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True

    def __init__(self, socket_path: str, agent: Any) -> None:
        self.agent = agent
        self.stop_event = threading.Event()
        super().__init__(socket_path, _Handler)


class _Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server: _UnixHTTPServer

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        log.debug("%s", format % args)

    def _dispatch(self, method: str) -> None:
        route = _ROUTES.get(urlsplit(self.path).path)
        if route is None:
            self._send_body(404, "text/plain; charset=utf-8", b"404 page not found\n")
        elif method != "GET":
            self._send_body(405, "text/plain; charset=utf-8", b"")
        else:
            route(self)

    def do_GET(self) -> None:
        self._dispatch("GET")

    def do_POST(self) -> None:
        self._dispatch("POST")

    def do_PUT(self) -> None:
        self._dispatch("PUT")

    def do_DELETE(self) -> None:
        self._dispatch("DELETE")

    def do_PATCH(self) -> None:
        self._dispatch("PATCH")

    def _send_body(self, status: int, content_type: str, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, exc: BaseException) -> None:
        body = json.dumps({"message": str(exc)}, separators=_COMPACT).encode() + b"\n"
        self._send_body(500, "application/json", body)

    def _write_chunk(self, data: bytes) -> None:
        self.wfile.write(b"%x\r\n%s\r\n" % (len(data), data))
        self.wfile.flush()

    def get_info(self) -> None:
        """GET /v1/info"""
        try:
            info = self.server.agent.info()
        except Exception as exc:
            self._send_error_json(exc)
            return
        body = json.dumps(info.to_dict(), separators=_COMPACT).encode()
        self._send_body(200, "application/json", body)

    def get_events(self) -> None:
        """GET /v1/events, streamed as newline-delimited JSON."""
        self.send_response(200)
        self.send_header("Content-Type", "application/x-ndjson")
        self.send_header("Transfer-Encoding", "chunked")
        self.end_headers()
        self.wfile.flush()
        self.close_connection = True

        events = self.server.agent.events(self.server.stop_event)
        try:
            for event in events:
                line = json.dumps(event.to_dict(), separators=_COMPACT) + "\n"
                self._write_chunk(line.encode())
            self.wfile.write(b"0\r\n\r\n")
            self.wfile.flush()
        except OSError as exc:
            log.warning("%s", exc)
        finally:
            events.close()


_ROUTES: dict[str, Callable[[_Handler], None]] = {
    "/v1/info": _Handler.get_info,
    "/v1/events": _Handler.get_events,
}


class GuestAgentServer:
    """Serves an agent's ``info()`` and ``events(stop)`` over HTTP on a UNIX socket."""

    def __init__(self, socket_path: str | os.PathLike, agent: Any) -> None:
        self.socket_path = os.fspath(socket_path)
        self._server = _UnixHTTPServer(self.socket_path, agent)

    def serve_forever(self) -> None:
        self._server.serve_forever()

    def shutdown(self) -> None:
        """Stop event streams and the serving loop; call from another thread."""
        self._server.stop_event.set()
        self._server.shutdown()

    def close(self) -> None:
        self._server.server_close()

    def __enter__(self) -> "GuestAgentServer":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()