from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from routeplane.src.gatewayapi import ROUTE_KINDS, RouteKind, route_kind_by_name

DEFAULT_CONTROLLER_NAME = "routeplane.io/gatewayclass-controller"


class ConfigError(ValueError):
    """Raised when the control-plane configuration is invalid."""


@dataclass(frozen=True)
class ServerConfig:
    """Immutable control-plane configuration loaded at startup.

    Attributes:
        controller_name: GatewayClass ``controllerName`` this process serves.
        route_kinds: Route kinds with a reconciler, watch and status writer.
        health_port: Port of the health, metrics and config dump server.
        status_queue_size: Bound of each per-kind status write queue.
        watch_timeout_seconds: Server-side timeout of one watch request.
        reconcile_max_backoff_seconds: Cap of the per-item requeue backoff.
    """

    controller_name: str = DEFAULT_CONTROLLER_NAME
    route_kinds: tuple[RouteKind, ...] = ROUTE_KINDS
    health_port: int = 8080
    status_queue_size: int = 1024
    watch_timeout_seconds: int = 30
    reconcile_max_backoff_seconds: int = 30


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_route_kinds(raw: str) -> tuple[RouteKind, ...]:
    kinds: list[RouteKind] = []
    for name in raw.split(","):
        if not name.strip():
            continue
        try:
            route_kind = route_kind_by_name(name)
        except KeyError as exc:
            raise ConfigError(f"ROUTE_KINDS contains unknown route kind {name.strip()!r}") from exc
        if route_kind not in kinds:
            kinds.append(route_kind)
    if not kinds:
        raise ConfigError("ROUTE_KINDS must name at least one route kind")
    return tuple(kinds)


def load_config(env: Mapping[str, str] | None = None) -> ServerConfig:
    """Load the control-plane configuration from the environment.

    Environment variables (with defaults):
        ``CONTROLLER_NAME``: GatewayClass controller name (:data:`DEFAULT_CONTROLLER_NAME`).
        ``ROUTE_KINDS``: comma-separated route kinds (all supported kinds).
        ``HEALTH_PORT``: health/metrics/config dump port (``8080``).
        ``STATUS_QUEUE_SIZE``: per-kind status queue bound (``1024``).
        ``WATCH_TIMEOUT_SECONDS``: watch request timeout (``30``).
        ``RECONCILE_MAX_BACKOFF_SECONDS``: requeue backoff cap (``30``).
    """
    values = env if env is not None else os.environ

    controller_name = values.get("CONTROLLER_NAME", DEFAULT_CONTROLLER_NAME).strip()
    if not controller_name:
        raise ConfigError("CONTROLLER_NAME must be a non-empty string")

    raw_kinds = values.get("ROUTE_KINDS")
    route_kinds = parse_route_kinds(raw_kinds) if raw_kinds is not None else ROUTE_KINDS

    return ServerConfig(
        controller_name=controller_name,
        route_kinds=route_kinds,
        health_port=env_int("HEALTH_PORT", 8080, minimum=0, maximum=65535, env=values),
        status_queue_size=env_int("STATUS_QUEUE_SIZE", 1024, minimum=1, env=values),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 30, minimum=1, env=values),
        reconcile_max_backoff_seconds=env_int(
            "RECONCILE_MAX_BACKOFF_SECONDS", 30, minimum=1, env=values
        ),
    )
