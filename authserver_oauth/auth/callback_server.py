"""Ephemeral loopback HTTP server that turns OAuth2 redirects into messages.

Desktop and CLI flows cannot receive window messages, so the redirect
lands on ``http://127.0.0.1:<random port>/callback`` instead. The query
is rendered as a terminal success/error page and dispatched as a
structured ``oauth_callback`` message to listeners on the owning event
loop, which makes the server a message source for the popup coordinator.
"""

# pylint: disable=C0103,W0212

from __future__ import annotations

import asyncio
import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlparse

from .messages import callback_from_query
from .popup import MessageEvent


if TYPE_CHECKING:
    from collections.abc import Callable


logger = logging.getLogger("authserver_oauth.auth")

_PAGE_STYLE = """
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f5f5f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 8px; box-shadow: 0 2px 10px rgba(0,0,0,.1); }
  h1 { font-size: 1.4rem; margin-bottom: 0.5rem; }
  .error { color: #ef4444; }
  p { color: #666; }
"""

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>{title}</title><style>{style}</style></head>
<body><div class="card">
  <h1 class="{css_class}">{heading}</h1>
  <p>{detail}</p>
</div></body></html>"""


def _render_page(title: str, heading: str, detail: str, css_class: str = "") -> str:
    return _PAGE_TEMPLATE.format(
        title=title,
        style=_PAGE_STYLE,
        css_class=css_class,
        heading=heading,
        detail=html.escape(detail, quote=True),
    )


_SUCCESS_HTML = _render_page(
    "Authentication Complete",
    "Authentication successful",
    "You can close this window and return to the application.",
)

_WAITING_HTML = _render_page(
    "Waiting for Authentication",
    "Waiting for authentication&hellip;",
    "Please complete the login in the browser window.",
)

_ALREADY_HANDLED_HTML = _render_page(
    "Callback Already Received",
    "This sign-in was already handled",
    "Return to the application to see the result. You can close this window.",
)


class LoopbackCallbackServer:
    """Loopback redirect target acting as a message source.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` for auto-assign).
    path : str
        Callback path (default ``"/callback"``).
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0, path: str = "/callback") -> None:
        """Initialize the callback server."""
        self._host = host
        self._port = port
        self._path = path
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._listeners: list[Callable[[MessageEvent], None]] = []
        self._captured = threading.Event()
        self._actual_port: int = 0

    @property
    def origin(self) -> str:
        """The server origin (``http://127.0.0.1:<port>``)."""
        return f"http://{self._host}:{self._actual_port}"

    @property
    def redirect_uri(self) -> str:
        """The redirect URI to register with the Auth Server."""
        return f"{self.origin}{self._path}"

    @property
    def captured(self) -> bool:
        """Whether a callback has been received."""
        return self._captured.is_set()

    # ── MessageSource ────────────────────────────────────────────────

    def add_listener(self, listener: Callable[[MessageEvent], None]) -> None:
        """Register a listener for callback messages."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[MessageEvent], None]) -> None:
        """Unregister a listener."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _dispatch(self, event: MessageEvent) -> None:
        """Deliver ``event`` to listeners (runs on the event loop thread)."""
        for listener in list(self._listeners):
            listener(event)

    # ── Server ───────────────────────────────────────────────────────

    def start(self) -> str:
        """Start the server on a daemon thread.

        Must be called from a running event loop; messages are delivered
        on that loop.

        Returns
        -------
        str
            The redirect URI.
        """
        self._loop = asyncio.get_running_loop()
        self._captured.clear()
        server_ref = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for OAuth2 callbacks."""

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)

                if parsed.path == server_ref._path:
                    message = callback_from_query(parse_qs(parsed.query))

                    if server_ref._captured.is_set():
                        # Only the first callback is captured
                        self._send_html(_ALREADY_HANDLED_HTML)
                        return

                    server_ref._captured.set()
                    if message.get("error"):
                        detail = str(message.get("error_description") or message["error"])
                        self._send_html(
                            _render_page(
                                "Authentication Error",
                                "Authentication failed",
                                detail,
                                css_class="error",
                            )
                        )
                    else:
                        self._send_html(_SUCCESS_HTML)

                    server_ref._deliver(message)
                elif parsed.path == "/":
                    self._send_html(_WAITING_HTML)
                else:
                    self.send_error(404)

            def _send_html(self, html_content: str) -> None:
                """Send an HTML response with security headers."""
                encoded = html_content.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                """Redirect HTTP server logging to the package logger."""
                if args:
                    logger.debug("Loopback callback server: %s", args[0] % args[1:])

        self._server = HTTPServer((self._host, self._port), _CallbackHandler)
        self._actual_port = self._server.server_address[1]

        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

        logger.debug("Loopback callback server started on %s", self.redirect_uri)
        return self.redirect_uri

    def _deliver(self, message: dict[str, Any]) -> None:
        """Hand a message from the server thread to the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("Callback received after the event loop closed; dropping it")
            return
        loop.call_soon_threadsafe(self._dispatch, MessageEvent(message, self.origin))

    def stop(self) -> None:
        """Shut down the server and join its thread."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
