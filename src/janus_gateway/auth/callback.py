from __future__ import annotations

import logging
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from threading import Event, Thread
from typing import Any
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)


@dataclass
class CallbackCapture:
    event: Event = field(default_factory=Event)
    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None


def _first(query: dict[str, list[str]], key: str) -> str | None:
    values = query.get(key)
    if not values:
        return None
    return values[0]


def _build_callback_handler(capture: CallbackCapture, callback_path: str) -> type[BaseHTTPRequestHandler]:
    class OAuthCallbackHandler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            if parsed.path != callback_path or capture.event.is_set():
                self.send_response(404)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.end_headers()
                self.wfile.write(b"Not Found")
                return

            query = parse_qs(parsed.query)
            capture.code = _first(query, "code")
            capture.state = _first(query, "state")
            capture.error = _first(query, "error")
            capture.error_description = _first(query, "error_description")
            capture.event.set()

            self.send_response(200)
            self.send_header("Content-Type", "text/html; charset=utf-8")
            self.end_headers()
            if capture.error or not capture.code:
                body = "<h1>Login failed</h1><p>Return to the terminal to check details.</p>"
            else:
                body = "<h1>Login succeeded</h1><p>You can close this page now.</p>"
            self.wfile.write(body.encode("utf-8"))

        def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
            del format, args

    return OAuthCallbackHandler


class LoopbackCallbackServer:
    """One-shot HTTP listener on the fixed loopback redirect URI of a provider."""

    def __init__(self, redirect_uri: str) -> None:
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http":
            raise ValueError("redirect_uri must use http scheme for local callback server")
        if not parsed.hostname:
            raise ValueError(f"redirect_uri has no hostname: {redirect_uri}")
        self.redirect_uri = redirect_uri
        self.host = parsed.hostname
        self.port = parsed.port or 80
        self.callback_path = parsed.path or "/"
        self.capture = CallbackCapture()
        self._server: ThreadingHTTPServer | None = None
        self._thread: Thread | None = None

    def start(self) -> None:
        handler = _build_callback_handler(self.capture, callback_path=self.callback_path)
        self._server = ThreadingHTTPServer((self.host, self.port), handler)
        self._thread = Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.debug("callback listener started on %s", self.redirect_uri)

    def wait(self, timeout: float | None = None) -> CallbackCapture | None:
        if not self.capture.event.wait(timeout=timeout):
            return None
        return self.capture

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=1)
            self._thread = None

    def __enter__(self) -> "LoopbackCallbackServer":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()
