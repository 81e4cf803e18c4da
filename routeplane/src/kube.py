from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiClient, CoreV1Api, CustomObjectsApi
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from routeplane.src.errors import ClusterAPIError, ConflictError, NotFoundError
from routeplane.src.gatewayapi import (
    GATEWAY_GROUP,
    NamespacedName,
    RouteKind,
)

LOGGER = logging.getLogger(__name__)

GATEWAY_VERSION = "v1"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and custom-object API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def translate_api_exception(exc: ApiException, what: str) -> ClusterAPIError:
    if exc.status == 404:
        return NotFoundError(f"{what} not found")
    if exc.status == 409:
        return ConflictError(f"conflict on {what}")
    return ClusterAPIError(f"request for {what} failed: {exc.reason}", status=exc.status)


class ClusterClient:
    """Typed access to the cluster objects the control plane reads and writes.

    Every object is returned in its JSON (dict) shape regardless of whether
    the underlying API is typed or custom, and every ``ApiException`` is
    translated into the control-plane error taxonomy.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        api_client: ApiClient | None = None,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.api_client = api_client or ApiClient()

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def _call(self, what: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return func(**kwargs)
        except ApiException as exc:
            raise translate_api_exception(exc, what) from exc

    def list_routes(
        self, route_kind: RouteKind, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        if namespace:
            result = self._call(
                f"{route_kind.plural} in {namespace}",
                self.custom_api.list_namespaced_custom_object,
                group=route_kind.group,
                version=route_kind.version,
                namespace=namespace,
                plural=route_kind.plural,
            )
        else:
            result = self._call(
                route_kind.plural,
                self.custom_api.list_cluster_custom_object,
                group=route_kind.group,
                version=route_kind.version,
                plural=route_kind.plural,
            )
        items = self._to_dict(result).get("items") or []
        # List responses omit apiVersion/kind on items for custom objects served by some apiservers.
        for item in items:
            item.setdefault("apiVersion", route_kind.api_version)
            item.setdefault("kind", route_kind.kind)
        return items

    def get_route(self, route_kind: RouteKind, key: NamespacedName) -> dict[str, Any]:
        return self._to_dict(
            self._call(
                f"{route_kind.kind} {key}",
                self.custom_api.get_namespaced_custom_object,
                group=route_kind.group,
                version=route_kind.version,
                namespace=key.namespace,
                plural=route_kind.plural,
                name=key.name,
            )
        )

    def replace_route_status(
        self, route_kind: RouteKind, key: NamespacedName, body: dict[str, Any]
    ) -> dict[str, Any]:
        return self._to_dict(
            self._call(
                f"{route_kind.kind} {key} status",
                self.custom_api.replace_namespaced_custom_object_status,
                group=route_kind.group,
                version=route_kind.version,
                namespace=key.namespace,
                plural=route_kind.plural,
                name=key.name,
                body=body,
            )
        )

    def get_namespace(self, name: str) -> dict[str, Any]:
        return self._to_dict(
            self._call(f"namespace {name}", self.core_api.read_namespace, name=name)
        )

    def get_service(self, key: NamespacedName) -> dict[str, Any]:
        return self._to_dict(
            self._call(
                f"service {key}",
                self.core_api.read_namespaced_service,
                name=key.name,
                namespace=key.namespace,
            )
        )

    def get_gateway(self, key: NamespacedName) -> dict[str, Any]:
        return self._to_dict(
            self._call(
                f"gateway {key}",
                self.custom_api.get_namespaced_custom_object,
                group=GATEWAY_GROUP,
                version=GATEWAY_VERSION,
                namespace=key.namespace,
                plural="gateways",
                name=key.name,
            )
        )

    def get_gateway_class(self, name: str) -> dict[str, Any]:
        return self._to_dict(
            self._call(
                f"gatewayclass {name}",
                self.custom_api.get_cluster_custom_object,
                group=GATEWAY_GROUP,
                version=GATEWAY_VERSION,
                plural="gatewayclasses",
                name=name,
            )
        )

    def list_func(
        self, source: str, route_kind: RouteKind | None = None
    ) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and arguments used to list-then-watch *source*.

        *source* is ``"routes"`` (requires *route_kind*), ``"gateways"`` or
        ``"services"``.
        """
        if source == "routes":
            if route_kind is None:
                raise ValueError("route_kind is required to watch routes")
            return self.custom_api.list_cluster_custom_object, {
                "group": route_kind.group,
                "version": route_kind.version,
                "plural": route_kind.plural,
            }
        if source == "gateways":
            return self.custom_api.list_cluster_custom_object, {
                "group": GATEWAY_GROUP,
                "version": GATEWAY_VERSION,
                "plural": "gateways",
            }
        if source == "services":
            return self.core_api.list_service_for_all_namespaces, {}
        raise ValueError(f"unknown watch source {source!r}")

    def list_raw(
        self, source: str, route_kind: RouteKind | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        """List *source* and return its items and the list resourceVersion."""
        func, kwargs = self.list_func(source, route_kind)
        result = self._to_dict(self._call(source, func, **kwargs))
        resource_version = (result.get("metadata") or {}).get("resourceVersion")
        return list(result.get("items") or []), resource_version
