from __future__ import annotations

import threading
from collections.abc import Iterable

from routeplane.src.gatewayapi import NamespacedName, RouteKind


class BackendRefIndex:
    """Secondary index from a backend identity to the routes referencing it.

    Answers "which routes does this Service change affect" without scanning
    every route.  A reverse map (route to backends) lets an update replace a
    route's previous entries so stale references never linger.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._routes_by_backend: dict[tuple[str, NamespacedName], set[NamespacedName]] = {}
        self._backends_by_route: dict[tuple[str, NamespacedName], frozenset[NamespacedName]] = {}

    def update(
        self,
        route_kind: RouteKind,
        route: NamespacedName,
        backends: Iterable[NamespacedName],
    ) -> None:
        """Replace the indexed backends of *route* with *backends*."""
        new_backends = frozenset(backends)
        with self._lock:
            old_backends = self._backends_by_route.get((route_kind.kind, route), frozenset())
            for backend in old_backends - new_backends:
                self._discard(route_kind.kind, backend, route)
            for backend in new_backends - old_backends:
                self._routes_by_backend.setdefault((route_kind.kind, backend), set()).add(route)
            if new_backends:
                self._backends_by_route[(route_kind.kind, route)] = new_backends
            else:
                self._backends_by_route.pop((route_kind.kind, route), None)

    def remove(self, route_kind: RouteKind, route: NamespacedName) -> frozenset[NamespacedName]:
        """Drop *route* from the index and return the backends it referenced."""
        with self._lock:
            old_backends = self._backends_by_route.pop((route_kind.kind, route), frozenset())
            for backend in old_backends:
                self._discard(route_kind.kind, backend, route)
            return old_backends

    def _discard(self, kind: str, backend: NamespacedName, route: NamespacedName) -> None:
        routes = self._routes_by_backend.get((kind, backend))
        if routes is None:
            return
        routes.discard(route)
        if not routes:
            del self._routes_by_backend[(kind, backend)]

    def routes_for_backend(
        self, route_kind: RouteKind, backend: NamespacedName
    ) -> list[NamespacedName]:
        with self._lock:
            return sorted(self._routes_by_backend.get((route_kind.kind, backend), ()))

    def backends_for_route(
        self, route_kind: RouteKind, route: NamespacedName
    ) -> frozenset[NamespacedName]:
        with self._lock:
            return self._backends_by_route.get((route_kind.kind, route), frozenset())

    def is_referenced(self, backend: NamespacedName) -> bool:
        """Return True if a route of any kind still references *backend*."""
        with self._lock:
            return any(key[1] == backend for key in self._routes_by_backend)
