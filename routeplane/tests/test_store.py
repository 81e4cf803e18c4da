from __future__ import annotations

import threading

from routeplane.src.gatewayapi import HTTP_ROUTE, TCP_ROUTE, NamespacedName
from routeplane.src.store import ProviderResources, ResourceMap
from routeplane.tests.fakes import make_route, make_service


def test_resource_map_store_load_delete() -> None:
    resources: ResourceMap[str, int] = ResourceMap("test")

    resources.store("a", 1)
    assert resources.load("a") == 1
    assert "a" in resources
    assert resources.delete("a") is True
    assert resources.delete("a") is False
    assert resources.load("a") is None
    assert len(resources) == 0


def test_resource_map_is_safe_under_concurrent_writers() -> None:
    resources: ResourceMap[int, int] = ResourceMap("test")

    def writer(offset: int) -> None:
        for index in range(500):
            resources.store(offset + index, index)
            if index % 2:
                resources.delete(offset + index)

    threads = [threading.Thread(target=writer, args=(offset * 1000,)) for offset in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(resources) == 4 * 250


def test_snapshot_is_isolated_from_later_writes() -> None:
    resources = ProviderResources()
    route = make_route()
    key = NamespacedName.of(route)
    resources.routes(HTTP_ROUTE).store(key, route)

    snapshot = resources.snapshot()
    snapshot.routes["HTTPRoute"][key]["spec"]["hostnames"] = ["mutated.example.com"]
    resources.routes(HTTP_ROUTE).delete(key)

    assert key in snapshot.routes["HTTPRoute"]
    assert "hostnames" not in route["spec"]


def test_routes_are_partitioned_by_kind() -> None:
    resources = ProviderResources()
    key = NamespacedName("default", "web")
    resources.routes(HTTP_ROUTE).store(key, make_route())

    assert resources.routes(TCP_ROUTE).load(key) is None
    assert resources.route_statuses(HTTP_ROUTE) is not resources.route_statuses(TCP_ROUTE)


def test_summary_lists_keys_per_kind() -> None:
    resources = ProviderResources()
    resources.routes(HTTP_ROUTE).store(NamespacedName("b", "web"), make_route(namespace="b"))
    resources.routes(HTTP_ROUTE).store(NamespacedName("a", "web"), make_route(namespace="a"))
    resources.namespaces.store("a", {})
    resources.services.store(NamespacedName("a", "svc"), make_service("svc", "a"))

    summary = resources.summary()

    assert summary["HTTPRoute"] == ["a/web", "b/web"]
    assert summary["Namespace"] == ["a"]
    assert summary["Service"] == ["a/svc"]
    assert summary["Gateway"] == []
