"""OAuth redirect receivers.

The authorization-code flow ends with the browser being redirected to a
local URL carrying ``code`` and ``state`` (or ``error``). A
:class:`CallbackReceiver` owns that URL and blocks until the redirect
arrives. :class:`LoopbackCallbackServer` is the real implementation; tests
substitute their own receiver.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlsplit

from gmail_cli.exceptions import AuthError

logger = logging.getLogger(__name__)

SUCCESS_PAGE = (
    b"<html><body><h1>Authentication complete</h1>"
    b"<p>You can close this window and return to the terminal.</p></body></html>"
)
ERROR_PAGE = (
    b"<html><body><h1>Authentication failed</h1>"
    b"<p>Return to the terminal for details.</p></body></html>"
)


class CallbackReceiver(ABC):
    """Receives the OAuth redirect for one login attempt."""

    @property
    @abstractmethod
    def redirect_uri(self) -> str:
        """Redirect URI to register with the authorization request."""

    @abstractmethod
    def wait_for_redirect(self, timeout: float) -> str:
        """Block until the redirect arrives.

        Args:
            timeout: Seconds to wait.

        Returns:
            The full redirect URL, including its query string.

        Raises:
            AuthError: If nothing arrives within ``timeout``.
        """

    def close(self) -> None:
        """Release any resources held by the receiver."""

    def __enter__(self) -> CallbackReceiver:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def is_oauth_redirect(path: str) -> bool:
    """Check if a request path carries an authorization response."""
    query = parse_qs(urlsplit(path).query)
    return "code" in query or "error" in query


class _RedirectHandler(BaseHTTPRequestHandler):
    server: _RedirectHTTPServer

    def do_GET(self) -> None:
        if not is_oauth_redirect(self.path):
            # Browsers also ask for /favicon.ico and friends
            self.send_response(404)
            self.end_headers()
            return

        query = parse_qs(urlsplit(self.path).query)
        page = ERROR_PAGE if "error" in query else SUCCESS_PAGE
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(page)))
        self.end_headers()
        self.wfile.write(page)
        self.server.redirect_path = self.path

    def log_message(self, format: str, *args) -> None:
        logger.debug("callback server: " + format, *args)


class _RedirectHTTPServer(HTTPServer):
    redirect_path: str | None = None


class LoopbackCallbackServer(CallbackReceiver):
    """Single-use HTTP listener on 127.0.0.1 with an OS-assigned port.

    Example:
        >>> with LoopbackCallbackServer() as receiver:
        ...     print(receiver.redirect_uri)
        ...     url = receiver.wait_for_redirect(timeout=120)
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0):
        self.host = host
        self._server = _RedirectHTTPServer((host, port), _RedirectHandler)
        self.port = self._server.server_address[1]

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}/"

    def wait_for_redirect(self, timeout: float) -> str:
        logger.info(f"Waiting for OAuth callback on port {self.port}...")
        deadline = time.monotonic() + timeout

        while self._server.redirect_path is None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AuthError(f"Timed out after {timeout:g}s waiting for the OAuth callback")
            self._server.timeout = remaining
            self._server.handle_request()

        return f"http://{self.host}:{self.port}{self._server.redirect_path}"

    def close(self) -> None:
        self._server.server_close()
