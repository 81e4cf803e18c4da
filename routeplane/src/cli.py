from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import yaml
from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from routeplane.src.kube import load_kube_configuration

CONFIG_DUMP_PATH = "/api/config_dump"
DEFAULT_LABEL_SELECTOR = "control-plane=routeplane"
DEFAULT_NAMESPACE = "routeplane-system"
DEFAULT_ADMIN_PORT = 8080
DIRECT_NAMESPACE = "addresses"
HTTP_TIMEOUT_SECONDS = 10
REDACTED = "<redacted>"


class DumpError(RuntimeError):
    """Raised when a config dump cannot be collected from every target."""


@dataclass(frozen=True)
class DumpTarget:
    namespace: str
    name: str
    address: str


def config_dump_url(address: str, include_all: bool) -> str:
    url = f"http://{address}{CONFIG_DUMP_PATH}"
    if include_all:
        url = f"{url}?resource=all"
    return url


def fetch_config_dump(address: str, include_all: bool) -> dict[str, Any]:
    url = config_dump_url(address, include_all)
    request = urllib.request.Request(url=url, method="GET")  # noqa: S310
    try:
        with urllib.request.urlopen(request, timeout=HTTP_TIMEOUT_SECONDS) as resp:  # noqa: S310
            payload = resp.read()
    except urllib.error.HTTPError as exc:
        raise DumpError(f"{url}: HTTP status {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise DumpError(f"{url}: {exc.reason}") from exc

    try:
        config_dump = json.loads(payload)
    except ValueError as exc:
        raise DumpError(f"{url}: response is not JSON") from exc
    if not isinstance(config_dump, dict):
        raise DumpError(f"{url}: response is not a JSON object")

    mask_secret_data(config_dump)
    return config_dump


def is_secret_map(value: dict[str, Any], path: Sequence[str]) -> bool:
    """Return True if *value* looks like a Secret whose data must not be printed.

    That is a ``kind: Secret`` object, or any object carrying ``data`` or
    ``stringData`` that also has a string ``type`` or sits under a
    ``secrets`` key.
    """
    kind = value.get("kind")
    if isinstance(kind, str) and kind.lower() == "secret":
        return True

    if value.get("data") is None and value.get("stringData") is None:
        return False
    if isinstance(value.get("type"), str):
        return True
    return "secrets" in path


def redact_secret_data(value: Any) -> Any:
    if not isinstance(value, dict):
        return REDACTED
    for key in value:
        value[key] = REDACTED
    return value


def mask_secret_fields(value: dict[str, Any]) -> None:
    for field_name in ("data", "stringData"):
        if field_name in value:
            value[field_name] = redact_secret_data(value[field_name])


def mask_secret_data(value: Any, path: tuple[str, ...] = ()) -> None:
    """Redact secret payloads anywhere inside *value*, in place."""
    if isinstance(value, dict):
        if is_secret_map(value, path):
            mask_secret_fields(value)
        for key, item in value.items():
            mask_secret_data(item, (*path, str(key)))
    elif isinstance(value, list):
        for item in value:
            mask_secret_data(item, path)


def fetch_running_pods(
    core_api: CoreV1Api,
    namespace: str,
    pod_name: str | None = None,
    label_selectors: Iterable[str] = (),
    all_namespaces: bool = False,
    port: int = DEFAULT_ADMIN_PORT,
) -> list[DumpTarget]:
    """Find the control-plane pods to query; every one of them must be running."""
    selectors = list(label_selectors)
    label_selector = ",".join(selectors or [DEFAULT_LABEL_SELECTOR])

    try:
        if all_namespaces:
            pods = core_api.list_pod_for_all_namespaces(label_selector=label_selector).items
        elif pod_name and not selectors:
            pods = [core_api.read_namespaced_pod(name=pod_name, namespace=namespace)]
        else:
            pods = core_api.list_namespaced_pod(
                namespace=namespace, label_selector=label_selector
            ).items
    except ApiException as exc:
        raise DumpError(f"listing control-plane pods failed: {exc.status} {exc.reason}") from exc

    if not pods:
        raise DumpError(f"no pods found for label selector {label_selector!r}")

    targets: list[DumpTarget] = []
    for pod in pods:
        pod_key = f"{pod.metadata.namespace}/{pod.metadata.name}"
        if pod.status is None or pod.status.phase != "Running":
            raise DumpError(f"pod {pod_key} is not running")
        if not pod.status.pod_ip:
            raise DumpError(f"pod {pod_key} has no IP address")
        targets.append(
            DumpTarget(
                namespace=pod.metadata.namespace,
                name=pod.metadata.name,
                address=f"{pod.status.pod_ip}:{port}",
            )
        )
    return targets


def retrieve_config_dumps(
    targets: Sequence[DumpTarget],
    include_all: bool,
    fetch: Callable[[str, bool], dict[str, Any]] = fetch_config_dump,
) -> dict[str, dict[str, Any]]:
    """Fetch every target's dump concurrently into ``{namespace: {pod: dump}}``."""
    dumps: dict[str, dict[str, Any]] = {target.namespace: {} for target in targets}
    errors: list[str] = []
    with ThreadPoolExecutor(max_workers=max(1, min(len(targets), 8))) as pool:
        futures = [(target, pool.submit(fetch, target.address, include_all)) for target in targets]
        for target, future in futures:
            try:
                dumps[target.namespace][target.name] = future.result()
            except DumpError as exc:
                errors.append(str(exc))
    if errors:
        raise DumpError("\n".join(errors))
    return dumps


def marshal_config_dump(config_dump: dict[str, Any], output: str) -> str:
    if output == "yaml":
        return yaml.safe_dump(config_dump, sort_keys=True, default_flow_style=False).rstrip("\n")
    return json.dumps(config_dump, indent=2, sort_keys=True)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="routeplane-dump",
        description="Retrieve the configuration dump of running routeplane control planes",
    )
    parser.add_argument(
        "resource",
        nargs="?",
        default="summary",
        choices=["summary", "all"],
        help="Dump variant: summary (default) or all cached objects and listeners",
    )
    parser.add_argument("pod", nargs="?", help="Name of a single control-plane pod to query")
    parser.add_argument("-n", "--namespace", default=DEFAULT_NAMESPACE, help="Pod namespace")
    parser.add_argument(
        "-l",
        "--selector",
        dest="label_selectors",
        action="append",
        default=[],
        help=(
            f"Pod label selector (defaults to {DEFAULT_LABEL_SELECTOR}). "
            "Can be provided multiple times."
        ),
    )
    parser.add_argument(
        "-A", "--all-namespaces", action="store_true", help="Query pods in every namespace"
    )
    parser.add_argument(
        "--address",
        dest="addresses",
        action="append",
        default=[],
        help="HOST:PORT of a dump endpoint to query directly instead of discovering pods",
    )
    parser.add_argument(
        "--port", type=int, default=DEFAULT_ADMIN_PORT, help="Dump endpoint port on each pod"
    )
    parser.add_argument("-o", "--output", choices=["json", "yaml"], default="json")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None, core_api: CoreV1Api | None = None) -> int:
    args = _parse_args(argv)
    include_all = args.resource == "all"

    try:
        if args.addresses:
            targets = [
                DumpTarget(namespace=DIRECT_NAMESPACE, name=address, address=address)
                for address in args.addresses
            ]
        else:
            if core_api is None:
                load_kube_configuration()
                core_api = CoreV1Api()
            targets = fetch_running_pods(
                core_api,
                namespace=args.namespace,
                pod_name=args.pod,
                label_selectors=args.label_selectors,
                all_namespaces=args.all_namespaces,
                port=args.port,
            )
        config_dump = retrieve_config_dumps(targets, include_all)
    except DumpError as exc:
        print(f"Config dump failed:\n{exc}", file=sys.stderr)
        return 1

    print(marshal_config_dump(config_dump, args.output))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
