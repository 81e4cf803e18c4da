from __future__ import annotations

import copy
import threading
from collections.abc import Hashable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from routeplane.src.gatewayapi import ROUTE_KINDS, NamespacedName, RouteKind
from routeplane.src.status import StatusPublisher

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class ResourceMap(Generic[K, V]):
    """Thread-safe key/value map holding the last-known-good copy of objects.

    Every operation is atomic on its own.  Callers never read-modify-write an
    entry; they re-derive the value from the cluster and store it again.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._items: dict[K, V] = {}

    def store(self, key: K, value: V) -> None:
        with self._lock:
            self._items[key] = value

    def load(self, key: K) -> V | None:
        with self._lock:
            return self._items.get(key)

    def delete(self, key: K) -> bool:
        """Remove *key*; returns True if an entry was present."""
        with self._lock:
            if key not in self._items:
                return False
            del self._items[key]
            return True

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def keys(self) -> list[K]:
        with self._lock:
            return list(self._items)

    def items(self) -> list[tuple[K, V]]:
        with self._lock:
            return list(self._items.items())

    def copy(self) -> dict[K, V]:
        """Return a deep copy of the current contents."""
        with self._lock:
            return copy.deepcopy(self._items)


@dataclass(frozen=True)
class ResourceSnapshot:
    """Point-in-time copy of the provider resources consumed by translation."""

    routes: dict[str, dict[NamespacedName, dict[str, Any]]] = field(default_factory=dict)
    namespaces: dict[str, dict[str, Any]] = field(default_factory=dict)
    services: dict[NamespacedName, dict[str, Any]] = field(default_factory=dict)
    gateways: dict[NamespacedName, dict[str, Any]] = field(default_factory=dict)


class ProviderResources:
    """The resource store shared by every reconciler.

    Partitioned by kind: one :class:`ResourceMap` per route kind plus the
    Namespaces, Services and Gateways referenced by those routes.  Each route
    kind also owns a :class:`StatusPublisher` carrying the statuses computed
    for its routes.
    """

    def __init__(self, route_kinds: Iterable[RouteKind] = ROUTE_KINDS) -> None:
        self.route_kinds: tuple[RouteKind, ...] = tuple(route_kinds)
        self._routes: dict[str, ResourceMap[NamespacedName, dict[str, Any]]] = {
            route_kind.kind: ResourceMap(route_kind.kind) for route_kind in self.route_kinds
        }
        self._route_statuses: dict[str, StatusPublisher] = {
            route_kind.kind: StatusPublisher(route_kind.kind) for route_kind in self.route_kinds
        }
        self.namespaces: ResourceMap[str, dict[str, Any]] = ResourceMap("Namespace")
        self.services: ResourceMap[NamespacedName, dict[str, Any]] = ResourceMap("Service")
        self.gateways: ResourceMap[NamespacedName, dict[str, Any]] = ResourceMap("Gateway")

    def routes(self, route_kind: RouteKind) -> ResourceMap[NamespacedName, dict[str, Any]]:
        return self._routes[route_kind.kind]

    def route_statuses(self, route_kind: RouteKind) -> StatusPublisher:
        return self._route_statuses[route_kind.kind]

    def snapshot(self) -> ResourceSnapshot:
        return ResourceSnapshot(
            routes={kind: routes.copy() for kind, routes in self._routes.items()},
            namespaces=self.namespaces.copy(),
            services=self.services.copy(),
            gateways=self.gateways.copy(),
        )

    def summary(self) -> dict[str, list[str]]:
        """Return the sorted keys held for every kind, for the config dump."""
        result: dict[str, list[str]] = {}
        for kind, routes in self._routes.items():
            result[kind] = sorted(str(key) for key in routes.keys())
        result["Namespace"] = sorted(self.namespaces.keys())
        result["Service"] = sorted(str(key) for key in self.services.keys())
        result["Gateway"] = sorted(str(key) for key in self.gateways.keys())
        return result
