from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

from prometheus_client import generate_latest

CONFIG_DUMP_PATHS = frozenset({"/api/config_dump", "/debug/config_dump"})
DUMP_RESOURCES = frozenset({"summary", "all"})

DumpProvider = Callable[[bool], dict[str, Any]]


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, metrics and config dump endpoints."""

    ready_event: threading.Event
    dump_provider: DumpProvider | None = None

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _config_dump(self, query: str) -> None:
        provider = type(self).dump_provider
        if provider is None:
            self._respond(404)
            return
        resource = (parse_qs(query).get("resource") or ["summary"])[0]
        if resource not in DUMP_RESOURCES:
            self._respond(400, f"invalid resource {resource!r}".encode(), "text/plain")
            return
        body = json.dumps(provider(resource == "all"), indent=2, sort_keys=True, default=str)
        self._respond(200, body.encode("utf-8"), "application/json")

    def do_GET(self) -> None:
        url = urlsplit(self.path)
        if url.path == "/healthz":
            self._respond(200, b"ok")
        elif url.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif url.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        elif url.path in CONFIG_DUMP_PATHS:
            self._config_dump(url.query)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("routeplane.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, dump_provider: DumpProvider | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness event and dump provider.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    # A plain function assigned in the class body would become a method.
    _BoundHealthHandler.dump_provider = staticmethod(dump_provider) if dump_provider else None
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, dump_provider: DumpProvider | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics/config dump server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, dump_provider=dump_provider)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
