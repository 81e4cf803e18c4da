from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from routeplane.src.errors import (
    ClusterAPIError,
    DependencyNotFoundError,
    InvalidParentRefError,
    MultiStatusError,
    NotFoundError,
    StatusError,
)
from routeplane.src.gatewayapi import (
    GATEWAY_GROUP,
    KIND_GATEWAY,
    ROUTE_KINDS,
    NamespacedName,
    RouteKind,
    backend_identity,
    namespace_deref_or,
    parent_ref_targets,
    service_backend_identities,
    validate_backend_refs,
)
from routeplane.src.index import BackendRefIndex
from routeplane.src.kube import ClusterClient
from routeplane.src.status import StatusUpdate, StatusUpdater, Update, handle_subscription
from routeplane.src.store import ProviderResources
from routeplane.src.translator import preserve_transition_times

LOGGER = logging.getLogger(__name__)


def is_managed_gateway(
    client: ClusterClient, controller_name: str, gateway: Mapping[str, Any]
) -> bool:
    """Return True if the GatewayClass of *gateway* is served by *controller_name*.

    Raises :class:`~routeplane.src.errors.NotFoundError` when the class is gone.
    """
    class_name = str((gateway.get("spec") or {}).get("gatewayClassName") or "")
    gateway_class = client.get_gateway_class(class_name)
    return (gateway_class.get("spec") or {}).get("controllerName") == controller_name


def validate_parent_refs(
    client: ClusterClient,
    namespace: str,
    controller_name: str,
    parent_refs: Iterable[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    """Return the Gateways named by *parent_refs* that this control plane manages.

    A Gateway is accepted when its GatewayClass is served by
    *controller_name*.  Refs to anything but a Gateway, or to a Gateway or
    GatewayClass that does not exist, raise :class:`InvalidParentRefError`.
    """
    gateways: list[dict[str, Any]] = []
    for ref in parent_refs:
        kind = ref.get("kind")
        if kind is not None and kind != KIND_GATEWAY:
            raise InvalidParentRefError(f"invalid kind {kind!r}")
        group = ref.get("group")
        if group is not None and group != GATEWAY_GROUP:
            raise InvalidParentRefError(f"invalid group {group!r}")

        gateway_key = NamespacedName(
            namespace=namespace_deref_or(ref.get("namespace"), namespace),
            name=str(ref.get("name") or ""),
        )
        try:
            gateway = client.get_gateway(gateway_key)
        except NotFoundError as exc:
            raise InvalidParentRefError(f"failed to get gateway {gateway_key}") from exc

        try:
            managed = is_managed_gateway(client, controller_name, gateway)
        except NotFoundError as exc:
            class_name = str((gateway.get("spec") or {}).get("gatewayClassName") or "")
            raise InvalidParentRefError(f"failed to get gatewayclass {class_name}") from exc
        if managed:
            gateways.append(gateway)
    return gateways


def is_route_present_in_namespace(
    client: ClusterClient, namespace: str, route_kinds: Iterable[RouteKind]
) -> bool:
    """Return True if a route of any of *route_kinds* exists in *namespace*."""
    return any(client.list_routes(route_kind, namespace=namespace) for route_kind in route_kinds)


class RouteReconciler:
    """Level-triggered reconciler for one route kind.

    Each pass re-lists every route of the kind and re-derives the cached
    routes, their Namespaces, referenced Services and parent Gateways, and
    the backend reference index.  Partial progress is kept when a later step
    fails; the next pass converges what is left.

    Errors raised by :meth:`reconcile`:

    * :class:`~routeplane.src.errors.ReconcileError` subclasses are
      retriable and the caller re-queues the identity with backoff.
    * :class:`~routeplane.src.errors.StatusError` means one or more routes
      were rejected.  The rejection is already published as route status;
      the caller consumes the trigger without retrying.
    """

    def __init__(
        self,
        route_kind: RouteKind,
        client: ClusterClient,
        resources: ProviderResources,
        index: BackendRefIndex,
        status_updater: StatusUpdater,
        controller_name: str,
        route_kinds: Iterable[RouteKind] = ROUTE_KINDS,
        on_rejected: Callable[[RouteKind, dict[str, Any], StatusError], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.route_kind = route_kind
        self.client = client
        self.resources = resources
        self.index = index
        self.status_updater = status_updater
        self.controller_name = controller_name
        self.route_kinds = tuple(route_kinds)
        self.on_rejected = on_rejected
        self.logger = logger or LOGGER

    @property
    def kind(self) -> str:
        return self.route_kind.kind

    def routes_for_gateway(self, gateway: Mapping[str, Any]) -> list[NamespacedName]:
        """Map a Gateway change to the routes of this kind attached to it."""
        gateway_key = NamespacedName.of(gateway)
        try:
            routes = self.client.list_routes(self.route_kind)
        except ClusterAPIError:
            self.logger.exception("Failed to list %s for gateway %s", self.kind, gateway_key)
            return []

        requests: list[NamespacedName] = []
        for route in routes:
            route_key = NamespacedName.of(route)
            try:
                gateways = validate_parent_refs(
                    self.client,
                    route_key.namespace,
                    self.controller_name,
                    self.route_kind.parent_refs(route),
                )
            except (InvalidParentRefError, ClusterAPIError) as exc:
                self.logger.info(
                    "Invalid parentRefs for %s %s, bypassing reconciliation: %s",
                    self.kind,
                    route_key,
                    exc,
                )
                continue
            if any(NamespacedName.of(candidate) == gateway_key for candidate in gateways):
                requests.append(route_key)
        return requests

    def routes_for_service(self, service: Mapping[str, Any]) -> list[NamespacedName]:
        """Map a Service change to the routes of this kind that reference it."""
        return self.index.routes_for_backend(self.route_kind, NamespacedName.of(service))

    def reconcile(self, request: NamespacedName) -> None:
        self.logger.info("Reconciling %s %s", self.kind, request)

        routes = self.client.list_routes(self.route_kind)

        found = False
        missing: list[str] = []
        rejected = MultiStatusError()
        routes_map = self.resources.routes(self.route_kind)

        for route in routes:
            route_key = NamespacedName.of(route)
            if route_key == request:
                found = True

            try:
                validate_backend_refs(self.route_kind, route)
            except StatusError as exc:
                self.logger.warning("Rejected %s %s: %s", self.kind, route_key, exc)
                rejected.add(exc)
                # The current generation is invalid; an older cached copy must not keep routing.
                if routes_map.delete(route_key):
                    self.index.remove(self.route_kind, route_key)
                if self.on_rejected is not None:
                    self.on_rejected(self.route_kind, route, exc)
                continue

            routes_map.store(route_key, route)
            self.index.update(
                self.route_kind, route_key, service_backend_identities(self.route_kind, route)
            )
            self.logger.debug("Added %s %s to resource map", self.kind, route_key)

            self._store_parent_gateways(route_key, route)

            try:
                namespace = self.client.get_namespace(route_key.namespace)
            except NotFoundError:
                if self.resources.namespaces.delete(route_key.namespace):
                    self.logger.info("Deleted namespace %s from resource map", route_key.namespace)
                missing.append(f"namespace {route_key.namespace}")
                continue
            self.resources.namespaces.store(route_key.namespace, namespace)

            for ref in self.route_kind.backend_refs(route):
                service_key = backend_identity(ref, route_key.namespace)
                try:
                    service = self.client.get_service(service_key)
                except NotFoundError:
                    if self.resources.services.delete(service_key):
                        self.logger.info("Deleted service %s from resource map", service_key)
                    missing.append(f"service {service_key}")
                    continue
                self.resources.services.store(service_key, service)

        if not found:
            self._forget(request)
        self._prune_gateways()

        if missing:
            raise DependencyNotFoundError(missing)
        if not rejected.empty:
            raise rejected

        self.logger.info("Reconciled %s %s", self.kind, request)

    def _store_parent_gateways(self, route_key: NamespacedName, route: Mapping[str, Any]) -> None:
        try:
            gateways = validate_parent_refs(
                self.client,
                route_key.namespace,
                self.controller_name,
                self.route_kind.parent_refs(route),
            )
        except InvalidParentRefError as exc:
            self.logger.info("Invalid parentRefs for %s %s: %s", self.kind, route_key, exc)
            return
        for gateway in gateways:
            self.resources.gateways.store(NamespacedName.of(gateway), gateway)

    def _prune_gateways(self) -> None:
        """Drop cached Gateways that no cached route names as a parent."""
        referenced: set[NamespacedName] = set()
        for route_kind in self.resources.route_kinds:
            for route_key, route in self.resources.routes(route_kind).items():
                referenced.update(
                    parent_ref_targets(route_kind.parent_refs(route), route_key.namespace)
                )
        for gateway_key in self.resources.gateways.keys():
            if gateway_key not in referenced and self.resources.gateways.delete(gateway_key):
                self.logger.info("Deleted unreferenced gateway %s from resource map", gateway_key)

    def _forget(self, request: NamespacedName) -> None:
        """Drop a deleted route and any records only it kept alive."""
        self.resources.routes(self.route_kind).delete(request)
        self.resources.route_statuses(self.route_kind).delete(request)
        previous_backends = self.index.remove(self.route_kind, request)
        self.logger.info("Deleted %s %s from resource map", self.kind, request)

        if not is_route_present_in_namespace(self.client, request.namespace, self.route_kinds):
            self.resources.namespaces.delete(request.namespace)
            self.logger.info("Deleted namespace %s from resource map", request.namespace)
            self.resources.services.delete(request)

        for backend in previous_backends:
            if not self.index.is_referenced(backend) and self.resources.services.delete(backend):
                self.logger.info("Deleted unreferenced service %s from resource map", backend)

    def _status_update(self, update: Update[NamespacedName, dict[str, Any]]) -> None:
        if update.delete or update.value is None:
            return
        parents = ((update.value.get("status") or {}).get("parents")) or []
        controller_name = self.controller_name

        def mutate(route: dict[str, Any]) -> dict[str, Any]:
            status = route.setdefault("status", {})
            existing = status.get("parents") or []
            foreign = [p for p in existing if p.get("controllerName") != controller_name]
            ours = [p for p in existing if p.get("controllerName") == controller_name]
            status["parents"] = foreign + preserve_transition_times(ours, parents)
            return route

        self.status_updater.send(
            StatusUpdate(key=update.key, kind=self.route_kind, mutator=mutate)
        )

    def subscribe_and_update_status(self, stop_event: threading.Event) -> None:
        """Forward published statuses of this kind to the status updater."""
        handle_subscription(
            self.resources.route_statuses(self.route_kind).subscribe(stop_event),
            self._status_update,
        )
        self.logger.info("%s status subscriber shutting down", self.kind)
