from __future__ import annotations

import pytest

from routeplane.src.errors import (
    ROUTE_REASON_INVALID_GROUP,
    ROUTE_REASON_INVALID_KIND,
    ROUTE_REASON_INVALID_NAMESPACE,
    RouteStatusError,
)
from routeplane.src.gatewayapi import (
    HTTP_ROUTE,
    TLS_ROUTE,
    UDP_ROUTE,
    NamespacedName,
    RouteKind,
    backend_identity,
    parent_ref_targets,
    route_kind_by_name,
    service_backend_identities,
    validate_backend_ref,
    validate_backend_refs,
)
from routeplane.tests.fakes import make_route


@pytest.mark.parametrize(
    "ref",
    [
        {"name": "web", "namespace": "other"},
        {"name": "web", "namespace": "other", "group": "example.com"},
        {"name": "web", "namespace": "other", "kind": "Bucket"},
        {"name": "web", "namespace": "default", "group": "", "kind": "Service"},
    ],
)
def test_explicit_namespace_is_rejected_before_group_and_kind(ref: dict[str, str]) -> None:
    with pytest.raises(RouteStatusError) as exc_info:
        validate_backend_ref(ref)

    assert exc_info.value.reason == ROUTE_REASON_INVALID_NAMESPACE
    assert str(exc_info.value) == "invalid namespace; must be nil"


def test_backend_ref_with_foreign_group_is_rejected() -> None:
    with pytest.raises(RouteStatusError) as exc_info:
        validate_backend_ref({"name": "web", "group": "example.com"})

    assert exc_info.value.reason == ROUTE_REASON_INVALID_GROUP


def test_backend_ref_with_foreign_kind_is_rejected() -> None:
    with pytest.raises(RouteStatusError) as exc_info:
        validate_backend_ref({"name": "web", "kind": "Bucket"})

    assert exc_info.value.reason == ROUTE_REASON_INVALID_KIND


def test_plain_service_refs_are_accepted() -> None:
    validate_backend_ref({"name": "web", "port": 80})
    validate_backend_ref({"name": "web", "group": "", "kind": "Service"})
    validate_backend_ref(None)
    validate_backend_refs(HTTP_ROUTE, make_route(backends=[("a", 80), ("b", 8080)]))


def test_backend_identity_defaults_to_route_namespace() -> None:
    assert backend_identity({"name": "web"}, "tenant") == NamespacedName("tenant", "web")
    assert backend_identity({"name": "web", "namespace": ""}, "tenant") == NamespacedName(
        "tenant", "web"
    )


def test_service_backend_identities_are_unique_and_ordered() -> None:
    route = make_route(
        namespace="tenant",
        backends=[("b", 80), ("a", 80), ("b", 8080), {"name": "bucket", "kind": "Bucket"}],
    )

    assert service_backend_identities(HTTP_ROUTE, route) == [
        NamespacedName("tenant", "b"),
        NamespacedName("tenant", "a"),
    ]


def test_route_kind_uses_pluggable_backend_ref_extraction() -> None:
    def forward_to(route: dict) -> list[dict]:
        return list(route["spec"].get("forwardTo") or [])

    custom = RouteKind(kind="HTTPRoute", plural="httproutes", version="v1", backend_refs=forward_to)
    route = {"metadata": {"name": "r", "namespace": "ns"}, "spec": {"forwardTo": [{"name": "x"}]}}

    assert service_backend_identities(custom, route) == [NamespacedName("ns", "x")]
    assert custom == HTTP_ROUTE


def test_route_kind_owns_objects_of_its_kind_and_group() -> None:
    assert TLS_ROUTE.owns(make_route(kind=TLS_ROUTE))
    assert not TLS_ROUTE.owns(make_route(kind=UDP_ROUTE))
    assert not TLS_ROUTE.owns({"apiVersion": "example.com/v1", "kind": "TLSRoute"})
    assert not TLS_ROUTE.owns(None)


def test_route_kind_by_name_is_case_insensitive() -> None:
    assert route_kind_by_name(" tlsroute ") == TLS_ROUTE
    with pytest.raises(KeyError):
        route_kind_by_name("FooRoute")


def test_namespaced_name_formatting() -> None:
    key = NamespacedName.of({"metadata": {"namespace": "tenant", "name": "web"}})

    assert key == NamespacedName("tenant", "web")
    assert str(key) == "tenant/web"
    assert str(NamespacedName("", "cluster-scoped")) == "cluster-scoped"


def test_parent_ref_targets_default_namespace() -> None:
    refs = [{"name": "eg"}, {"name": "shared", "namespace": "infra"}]

    assert parent_ref_targets(refs, "tenant") == [
        NamespacedName("tenant", "eg"),
        NamespacedName("infra", "shared"),
    ]
