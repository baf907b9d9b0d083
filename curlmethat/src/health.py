from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest

LOGGER = logging.getLogger(__name__)

_METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves the kubelet health checks and the Prometheus scrape endpoint.

    ``/readyz`` mirrors the watch source: ready once the initial ConfigMap
    list succeeded, not ready again after the watch has ended.
    """

    watching: threading.Event

    def _reply(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._reply(200, b"ok")
        elif self.path == "/readyz":
            watching = self.watching.is_set()
            state = b"watching=true" if watching else b"watching=false"
            self._reply(200 if watching else 503, state)
        elif self.path == "/metrics":
            self._reply(200, generate_latest(), _METRICS_CONTENT_TYPE)
        else:
            self._reply(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Serve health checks on *port* from a daemon thread; *ready* is the watch source's event."""
    handler = type("_WatchingHealthHandler", (_HealthHandler,), {"watching": ready})
    server = ThreadingHTTPServer(("0.0.0.0", port), handler)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
