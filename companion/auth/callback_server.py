"""Loopback HTTP receiver for OAuth redirects.

Used when the configured redirect URI is ``http://127.0.0.1:<port>/<path>``
instead of the app's custom scheme. The handler only transports the
redirect; state and code handling stay in the OAuth flow controller.
"""

import logging
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Callable, Optional
from urllib.parse import urlparse, parse_qs

__all__ = ["LoopbackCallbackServer", "is_loopback_redirect"]

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"127.0.0.1", "localhost"}

_PAGE = """\
<!DOCTYPE html>
<html>
<head>
    <title>Algorithm Companion - {title}</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, sans-serif; display: flex; justify-content: center; align-items: center; min-height: 100vh; margin: 0; background: #f3f4f6; }}
        .card {{ background: white; border-radius: 12px; padding: 40px; text-align: center; box-shadow: 0 4px 12px rgba(0,0,0,.1); max-width: 400px; }}
        h1 {{ font-size: 22px; color: #111827; margin: 0 0 8px; }}
        p {{ color: #6b7280; margin: 0; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{title}</h1>
        <p>{message}</p>
    </div>
</body>
</html>
"""

_SUCCESS_HTML = _PAGE.format(
    title="Authorization Received",
    message="You can close this tab and return to Algorithm Companion.",
)
_ERROR_HTML = _PAGE.format(
    title="Authorization Failed",
    message="Something went wrong. Please try again from the app.",
)


def is_loopback_redirect(redirect_uri: str) -> bool:
    """True for http redirect URIs pointing at this machine."""
    parsed = urlparse(redirect_uri)
    return parsed.scheme == "http" and (parsed.hostname or "") in LOOPBACK_HOSTS


class _CallbackHandler(BaseHTTPRequestHandler):
    """HTTP handler that forwards the authorization redirect."""

    def do_GET(self):  # noqa: N802 - required by BaseHTTPRequestHandler
        parsed = urlparse(self.path)

        if parsed.path != self.server.callback_path:
            self.send_response(404)
            self.end_headers()
            return

        # Only forward the first callback; ignore subsequent requests.
        with self.server.lock:
            if self.server.callback_received.is_set():
                self._respond(200, _SUCCESS_HTML)
                return
            self.server.callback_received.set()

        params = parse_qs(parsed.query)
        if "code" in params:
            self._respond(200, _SUCCESS_HTML)
        else:
            self._respond(400, _ERROR_HTML)

        callback_url = f"{self.server.base_url}{self.path}"
        try:
            self.server.on_callback(callback_url)
        except Exception as e:
            logger.error(f"Callback handler failed: {e}")

    def _respond(self, status: int, body: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        self.wfile.write(body.encode())

    def log_message(self, format, *args):
        """Route default HTTP server logs through logging."""
        logger.debug(f"Callback server: {format % args}")


class LoopbackCallbackServer:
    """Serves one OAuth redirect on a daemon thread."""

    def __init__(self, redirect_uri: str, on_callback: Callable[[str], None]):
        """Initialize the server (not yet listening).

        Args:
            redirect_uri: Loopback redirect URI; port 0 picks a free port
            on_callback: Receives the full redirect URL once
        """
        parsed = urlparse(redirect_uri)
        self._host = parsed.hostname or "127.0.0.1"
        self._port = parsed.port or 0
        self._path = parsed.path or "/"
        self._on_callback = on_callback
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def redirect_uri(self) -> str:
        """The redirect URI actually being served (resolved port)."""
        port = self._server.server_address[1] if self._server else self._port
        return f"http://{self._host}:{port}{self._path}"

    def start(self) -> str:
        """Start listening.

        Returns:
            The effective redirect URI
        """
        self._server = HTTPServer((self._host, self._port), _CallbackHandler)
        self._server.lock = threading.Lock()
        self._server.callback_received = threading.Event()
        self._server.callback_path = self._path
        self._server.on_callback = self._on_callback
        self._server.base_url = f"http://{self._host}:{self._server.server_address[1]}"

        logger.info(f"Callback server listening on port {self._server.server_address[1]}")
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        return self.redirect_uri

    def stop(self) -> None:
        """Shut down the server and join its thread."""
        server, self._server = self._server, None
        thread, self._thread = self._thread, None
        if server is None:
            return
        if thread is threading.current_thread():
            # Called from inside a request: shutdown() would wait on this thread.
            threading.Thread(target=_shutdown, args=(server,), daemon=True).start()
            return
        _shutdown(server)
        if thread is not None:
            thread.join(timeout=2.0)


def _shutdown(server: HTTPServer) -> None:
    server.shutdown()
    server.server_close()
