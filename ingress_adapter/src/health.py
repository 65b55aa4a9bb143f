from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` and ``/metrics`` for the adapter pod.

    ``/readyz`` answers with a JSON document naming the IngressClasses the
    controller currently serves, so ``kubectl port-forward`` plus ``curl`` is
    enough to see whether delegation was picked up.
    """

    ready_event: threading.Event
    active_classes: Callable[[], frozenset[str]]

    def do_GET(self) -> None:
        route = self.path.split("?", 1)[0]
        if route == "/healthz":
            self._send(200, b"ok", "text/plain; charset=utf-8")
        elif route == "/readyz":
            self._send_readiness()
        elif route == "/metrics":
            self._send(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._send(404, b"not found", "text/plain; charset=utf-8")

    def _send_readiness(self) -> None:
        ready = self.ready_event.is_set()
        body = json.dumps(
            {"ready": ready, "ingressClasses": sorted(self.active_classes())}
        ).encode()
        self._send(200 if ready else 503, body, "application/json")

    def _send(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    ready: threading.Event,
    port: int,
    active_classes: Callable[[], frozenset[str]] = frozenset,
) -> ThreadingHTTPServer:
    """Serve the health endpoints from a daemon thread and return the server.

    ``ready`` gates ``/readyz``; ``active_classes`` is polled on every
    readiness request and must be safe to call from another thread.
    """
    handler = type(
        "BoundHealthHandler",
        (_HealthHandler,),
        {"ready_event": ready, "active_classes": staticmethod(active_classes)},
    )
    server = ThreadingHTTPServer(("0.0.0.0", port), handler)  # noqa: S104
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
