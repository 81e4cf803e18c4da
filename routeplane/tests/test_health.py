from __future__ import annotations

import json
import threading
import urllib.error
import urllib.request
from typing import Any

from routeplane.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Tests for the health, readiness, metrics and config dump endpoints."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.dump_calls: list[bool] = []

        def dump(include_all: bool) -> dict[str, Any]:
            self.dump_calls.append(include_all)
            return {
                "resources": {"HTTPRoute": ["default/web"]},
                "totalCount": 1,
                "all": include_all,
            }

        self.server = start_health_server(ready=self.ready, port=0, dump_provider=dump)
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_when_not_ready(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false"

    def test_readyz_returns_200_when_ready(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true"

    def test_metrics_are_exposed(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "routeplane_reconcile_total" in body

    def test_config_dump_defaults_to_summary(self) -> None:
        status, body = _get(f"{self.base_url}/api/config_dump")
        assert status == 200
        assert json.loads(body)["totalCount"] == 1
        assert self.dump_calls == [False]

    def test_config_dump_all_resources(self) -> None:
        status, body = _get(f"{self.base_url}/api/config_dump?resource=all")
        assert status == 200
        assert json.loads(body)["all"] is True

    def test_config_dump_debug_alias(self) -> None:
        status, _ = _get(f"{self.base_url}/debug/config_dump?resource=summary")
        assert status == 200
        assert self.dump_calls == [False]

    def test_config_dump_rejects_unknown_resource(self) -> None:
        status, body = _get(f"{self.base_url}/api/config_dump?resource=secrets")
        assert status == 400
        assert "secrets" in body
        assert self.dump_calls == []

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404


def test_config_dump_is_404_without_provider() -> None:
    server = start_health_server(ready=threading.Event(), port=0)
    try:
        status, _ = _get(f"http://127.0.0.1:{server.server_address[1]}/api/config_dump")
    finally:
        server.shutdown()
    assert status == 404
