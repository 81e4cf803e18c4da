from __future__ import annotations

import copy
from collections.abc import Iterable
from typing import Any

from routeplane.src.errors import ClusterAPIError, ConflictError, NotFoundError
from routeplane.src.gatewayapi import GATEWAY_GROUP, HTTP_ROUTE, NamespacedName, RouteKind

CONTROLLER_NAME = "routeplane.io/gatewayclass-controller"


def make_route(
    kind: RouteKind = HTTP_ROUTE,
    name: str = "web",
    namespace: str = "default",
    backends: Iterable[Any] = (("web-svc", 80),),
    gateway: str = "eg",
    hostnames: Iterable[str] = (),
    generation: int = 1,
    parent_refs: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Build a route object; a backend is ``(name, port)`` or a raw backendRef dict."""
    backend_refs: list[dict[str, Any]] = []
    for backend in backends:
        if isinstance(backend, dict):
            backend_refs.append(dict(backend))
        else:
            service_name, port = backend
            ref: dict[str, Any] = {"name": service_name}
            if port is not None:
                ref["port"] = port
            backend_refs.append(ref)
    spec: dict[str, Any] = {
        "parentRefs": parent_refs if parent_refs is not None else [{"name": gateway}],
        "rules": [{"backendRefs": backend_refs}],
    }
    if hostnames:
        spec["hostnames"] = list(hostnames)
    return {
        "apiVersion": kind.api_version,
        "kind": kind.kind,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "generation": generation,
            "resourceVersion": str(generation),
        },
        "spec": spec,
    }


def make_service(
    name: str, namespace: str = "default", ports: Iterable[int] = (80,)
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"ports": [{"port": port} for port in ports]},
    }


def make_namespace(name: str) -> dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


def make_gateway(
    name: str = "eg",
    namespace: str = "default",
    class_name: str = "routeplane",
    listeners: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    if listeners is None:
        listeners = [{"name": "http", "protocol": "HTTP", "port": 80}]
    return {
        "apiVersion": f"{GATEWAY_GROUP}/v1",
        "kind": "Gateway",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"gatewayClassName": class_name, "listeners": listeners},
    }


def make_gateway_class(
    name: str = "routeplane", controller_name: str = CONTROLLER_NAME
) -> dict[str, Any]:
    return {
        "apiVersion": f"{GATEWAY_GROUP}/v1",
        "kind": "GatewayClass",
        "metadata": {"name": name},
        "spec": {"controllerName": controller_name},
    }


class FakeClusterClient:
    """In-memory stand-in for :class:`routeplane.src.kube.ClusterClient`."""

    def __init__(self) -> None:
        self.routes: dict[str, dict[NamespacedName, dict[str, Any]]] = {}
        self.namespaces: dict[str, dict[str, Any]] = {}
        self.services: dict[NamespacedName, dict[str, Any]] = {}
        self.gateways: dict[NamespacedName, dict[str, Any]] = {}
        self.gateway_classes: dict[str, dict[str, Any]] = {}
        self.status_writes: list[tuple[str, NamespacedName, dict[str, Any]]] = []
        self.conflicts_remaining = 0
        self.list_error: ClusterAPIError | None = None
        self.list_calls = 0

    def add_route(self, route: dict[str, Any]) -> dict[str, Any]:
        self.routes.setdefault(route["kind"], {})[NamespacedName.of(route)] = route
        return route

    def remove_route(self, route: dict[str, Any]) -> None:
        self.routes.get(route["kind"], {}).pop(NamespacedName.of(route), None)

    def add_namespace(self, name: str) -> None:
        self.namespaces[name] = make_namespace(name)

    def add_service(self, service: dict[str, Any]) -> None:
        self.services[NamespacedName.of(service)] = service

    def add_gateway(self, gateway: dict[str, Any], controller_name: str = CONTROLLER_NAME) -> None:
        self.gateways[NamespacedName.of(gateway)] = gateway
        class_name = gateway["spec"]["gatewayClassName"]
        self.gateway_classes.setdefault(class_name, make_gateway_class(class_name, controller_name))

    def list_routes(
        self, route_kind: RouteKind, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        routes = self.routes.get(route_kind.kind, {})
        return [
            copy.deepcopy(route)
            for key, route in sorted(routes.items())
            if namespace is None or key.namespace == namespace
        ]

    def get_route(self, route_kind: RouteKind, key: NamespacedName) -> dict[str, Any]:
        route = self.routes.get(route_kind.kind, {}).get(key)
        if route is None:
            raise NotFoundError(f"{route_kind.kind} {key} not found")
        return copy.deepcopy(route)

    def replace_route_status(
        self, route_kind: RouteKind, key: NamespacedName, body: dict[str, Any]
    ) -> dict[str, Any]:
        if self.conflicts_remaining > 0:
            self.conflicts_remaining -= 1
            raise ConflictError(f"conflict on {route_kind.kind} {key} status")
        if key not in self.routes.get(route_kind.kind, {}):
            raise NotFoundError(f"{route_kind.kind} {key} not found")
        self.routes[route_kind.kind][key]["status"] = copy.deepcopy(body.get("status"))
        self.status_writes.append((route_kind.kind, key, copy.deepcopy(body)))
        return body

    def get_namespace(self, name: str) -> dict[str, Any]:
        if name not in self.namespaces:
            raise NotFoundError(f"namespace {name} not found")
        return copy.deepcopy(self.namespaces[name])

    def get_service(self, key: NamespacedName) -> dict[str, Any]:
        if key not in self.services:
            raise NotFoundError(f"service {key} not found")
        return copy.deepcopy(self.services[key])

    def get_gateway(self, key: NamespacedName) -> dict[str, Any]:
        if key not in self.gateways:
            raise NotFoundError(f"gateway {key} not found")
        return copy.deepcopy(self.gateways[key])

    def get_gateway_class(self, name: str) -> dict[str, Any]:
        if name not in self.gateway_classes:
            raise NotFoundError(f"gatewayclass {name} not found")
        return copy.deepcopy(self.gateway_classes[name])

    def list_raw(
        self, source: str, route_kind: RouteKind | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        if source == "routes" and route_kind is not None:
            items = self.list_routes(route_kind)
        elif source == "gateways":
            items = [copy.deepcopy(gateway) for _, gateway in sorted(self.gateways.items())]
        elif source == "services":
            items = [copy.deepcopy(service) for _, service in sorted(self.services.items())]
        else:
            raise ValueError(source)
        return items, "100"

    def list_func(
        self, source: str, route_kind: RouteKind | None = None
    ) -> tuple[Any, dict[str, Any]]:
        return self.list_raw, {"source": source}
