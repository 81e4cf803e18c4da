from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from routeplane.src.errors import (
    ROUTE_REASON_INVALID_GROUP,
    ROUTE_REASON_INVALID_KIND,
    ROUTE_REASON_INVALID_NAMESPACE,
    RouteStatusError,
)

GATEWAY_GROUP = "gateway.networking.k8s.io"
CORE_GROUP = ""
KIND_GATEWAY = "Gateway"
KIND_SERVICE = "Service"


@dataclass(frozen=True, order=True)
class NamespacedName:
    """Identity of a namespaced object within one resource kind.

    Cluster-scoped objects (Namespaces, GatewayClasses) use an empty namespace.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"

    @classmethod
    def of(cls, obj: Mapping[str, Any]) -> NamespacedName:
        metadata = obj.get("metadata") or {}
        return cls(namespace=metadata.get("namespace") or "", name=metadata.get("name") or "")


def rule_backend_refs(route: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Return every ``spec.rules[].backendRefs[]`` entry of a route."""
    refs: list[dict[str, Any]] = []
    for rule in (route.get("spec") or {}).get("rules") or []:
        refs.extend(rule.get("backendRefs") or [])
    return refs


def spec_parent_refs(route: Mapping[str, Any]) -> list[dict[str, Any]]:
    return list((route.get("spec") or {}).get("parentRefs") or [])


@dataclass(frozen=True)
class RouteKind:
    """Capability set of one route kind.

    The reconciler is generic over route kinds; everything kind-specific is
    reached through this object, including how backend and parent references
    are pulled out of a route.
    """

    kind: str
    plural: str
    version: str
    group: str = GATEWAY_GROUP
    backend_refs: Callable[[Mapping[str, Any]], list[dict[str, Any]]] = field(
        default=rule_backend_refs, compare=False, repr=False
    )
    parent_refs: Callable[[Mapping[str, Any]], list[dict[str, Any]]] = field(
        default=spec_parent_refs, compare=False, repr=False
    )

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def owns(self, obj: Any) -> bool:
        """Return True if *obj* is an object of this kind."""
        if not isinstance(obj, Mapping):
            return False
        api_version = str(obj.get("apiVersion") or "")
        return obj.get("kind") == self.kind and api_version.partition("/")[0] == self.group


HTTP_ROUTE = RouteKind(kind="HTTPRoute", plural="httproutes", version="v1")
GRPC_ROUTE = RouteKind(kind="GRPCRoute", plural="grpcroutes", version="v1")
TLS_ROUTE = RouteKind(kind="TLSRoute", plural="tlsroutes", version="v1alpha2")
TCP_ROUTE = RouteKind(kind="TCPRoute", plural="tcproutes", version="v1alpha2")
UDP_ROUTE = RouteKind(kind="UDPRoute", plural="udproutes", version="v1alpha2")

ROUTE_KINDS: tuple[RouteKind, ...] = (HTTP_ROUTE, GRPC_ROUTE, TLS_ROUTE, TCP_ROUTE, UDP_ROUTE)


def route_kind_by_name(name: str) -> RouteKind:
    for route_kind in ROUTE_KINDS:
        if route_kind.kind.lower() == name.strip().lower():
            return route_kind
    raise KeyError(name)


def namespace_deref_or(namespace: str | None, default: str) -> str:
    if namespace:
        return namespace
    return default


def backend_identity(ref: Mapping[str, Any], route_namespace: str) -> NamespacedName:
    """Resolve a backend reference to the identity of the object it names.

    An unset namespace always means the referencing route's namespace.
    """
    return NamespacedName(
        namespace=namespace_deref_or(ref.get("namespace"), route_namespace),
        name=str(ref.get("name") or ""),
    )


def service_backend_identities(
    route_kind: RouteKind, route: Mapping[str, Any]
) -> list[NamespacedName]:
    """Return the unique Service identities referenced by a route, in order."""
    route_namespace = NamespacedName.of(route).namespace
    identities: list[NamespacedName] = []
    for ref in route_kind.backend_refs(route):
        if (ref.get("kind") or KIND_SERVICE) != KIND_SERVICE:
            continue
        identity = backend_identity(ref, route_namespace)
        if identity not in identities:
            identities.append(identity)
    return identities


def validate_backend_ref(ref: Mapping[str, Any] | None) -> None:
    """Validate that *ref* points at a Service in the route's own namespace.

    Raises :class:`RouteStatusError`.  An explicit namespace is rejected
    before anything else is looked at, so cross-namespace references always
    report the same reason.
    """
    if ref is None:
        return
    if ref.get("namespace") is not None:
        raise RouteStatusError(ROUTE_REASON_INVALID_NAMESPACE, "invalid namespace; must be nil")
    group = ref.get("group")
    if group is not None and group != CORE_GROUP:
        raise RouteStatusError(
            ROUTE_REASON_INVALID_GROUP, "invalid group; must be nil or empty string"
        )
    kind = ref.get("kind")
    if kind is not None and kind != KIND_SERVICE:
        raise RouteStatusError(
            ROUTE_REASON_INVALID_KIND, f"invalid kind {kind!r}; must be {KIND_SERVICE!r}"
        )


def validate_backend_refs(route_kind: RouteKind, route: Mapping[str, Any]) -> None:
    for ref in route_kind.backend_refs(route):
        validate_backend_ref(ref)


def route_hostnames(route: Mapping[str, Any]) -> list[str]:
    return list((route.get("spec") or {}).get("hostnames") or [])


def parent_ref_targets(
    parent_refs: Iterable[Mapping[str, Any]], route_namespace: str
) -> list[NamespacedName]:
    """Return the Gateway identities named by parent refs, without validation."""
    return [
        NamespacedName(
            namespace=namespace_deref_or(ref.get("namespace"), route_namespace),
            name=str(ref.get("name") or ""),
        )
        for ref in parent_refs
    ]
