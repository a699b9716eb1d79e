from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

Response = tuple[int, bytes, str]

_TEXT = "text/plain; charset=utf-8"


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, leadership, readiness and Prometheus metrics."""

    ready_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _healthz(self) -> Response:
        return 200, b"ok", _TEXT

    def _leadz(self) -> Response:
        if self._is_leader():
            return 200, b"ok", _TEXT
        return 503, b"not leader", _TEXT

    def _readyz(self) -> Response:
        # A standby replica is healthy but must not receive readiness.
        ready = self.ready_event.is_set()
        leader = self._is_leader()
        body = f"ready={str(ready).lower()} leader={str(leader).lower()}".encode()
        return (200 if ready and leader else 503), body, _TEXT

    def _metrics(self) -> Response:
        return 200, generate_latest(), CONTENT_TYPE_LATEST

    ROUTES: dict[str, Callable[[_HealthHandler], Response]] = {
        "/healthz": _healthz,
        "/leadz": _leadz,
        "/readyz": _readyz,
        "/metrics": _metrics,
    }

    def do_GET(self) -> None:
        route = self.ROUTES.get(self.path.split("?", 1)[0])
        if route is None:
            status, body, content_type = 404, b"not found", _TEXT
        else:
            status, body, content_type = route(self)
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("canary_controller.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, leader: threading.Event | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the controller's readiness and leadership events."""

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        leader_event = leader

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready, leader=leader))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
