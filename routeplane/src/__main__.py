from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from typing import Any

from routeplane.src.config import ServerConfig, load_config
from routeplane.src.health import start_health_server
from routeplane.src.kube import ClusterClient, build_clients, load_kube_configuration
from routeplane.src.manager import ControlPlane
from routeplane.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

RUNTIME_VERSION = "0.1.0"
REDACTED_VALUE = "[REDACTED]"

# Credential-bearing keys that may show up in API error bodies and request URLs.
_SECRET_KEYS = r"authorization|token|access_token|password|passwd|secret|api[_-]?key|tls\.key"
_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(rf"(?i)(\b(?:{_SECRET_KEYS})\b\s*[:=]\s*)[^\s,;]+"),
    re.compile(rf"(?i)([?&](?:{_SECRET_KEYS})=)[^&\s]+"),
)

# LogRecord attributes that are not caller-supplied ``extra`` fields.
_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def redact_sensitive_text(value: str) -> str:
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(rf"\g<1>{REDACTED_VALUE}", value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are carried through verbatim."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_FIELDS and key not in entry:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


def configure_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.addHandler(handler)
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))


def build_control_plane(config: ServerConfig) -> ControlPlane:
    load_kube_configuration()
    core_api, custom_api = build_clients()
    return ControlPlane(config, ClusterClient(core_api, custom_api))


def install_shutdown_handlers(shutdown_event: threading.Event) -> None:
    """Translate SIGTERM and SIGINT into *shutdown_event*."""

    def _on_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received %s, stopping control plane", signal.Signals(signum).name)
        shutdown_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, _on_signal)


def main() -> None:
    configure_logging()
    config = load_config()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "controller_name": config.controller_name,
        }
    )
    LOGGER.info(
        "Starting control plane %s for route kinds %s",
        config.controller_name,
        ", ".join(route_kind.kind for route_kind in config.route_kinds),
    )

    control_plane = build_control_plane(config)
    server = start_health_server(
        ready=control_plane.ready,
        port=config.health_port,
        dump_provider=control_plane.config_dump,
    )

    shutdown_event = threading.Event()
    install_shutdown_handlers(shutdown_event)
    try:
        control_plane.run(shutdown_event=shutdown_event)
    finally:
        server.shutdown()
    LOGGER.info("Control plane stopped")


if __name__ == "__main__":
    main()
