from __future__ import annotations

import copy
import json
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from hashlib import sha256
from typing import Any

from routeplane.src.errors import (
    ROUTE_REASON_BACKEND_NOT_FOUND,
    ROUTE_REASON_HOSTNAME_CONFLICT,
    ROUTE_REASON_NO_MATCHING_LISTENER_HOSTNAME,
    ROUTE_REASON_NO_MATCHING_PARENT,
    ROUTE_REASON_NOT_ALLOWED_BY_LISTENERS,
    ROUTE_REASON_PORT_NOT_FOUND,
    ROUTE_REASON_PORT_NOT_SPECIFIED,
    MultiStatusError,
    RouteStatusError,
    StatusError,
    condition_message,
)
from routeplane.src.gatewayapi import (
    ROUTE_KINDS,
    NamespacedName,
    RouteKind,
    backend_identity,
    parent_ref_targets,
    route_hostnames,
    validate_backend_ref,
)
from routeplane.src.matcher import (
    PROTOCOL_TCP,
    PROTOCOL_UDP,
    WILDCARD_HOSTNAME,
    FilterChain,
    Listener,
    SocketAddress,
    add_server_names_match,
    add_virtual_host,
)
from routeplane.src.metrics import METRICS
from routeplane.src.store import ResourceSnapshot

LOGGER = logging.getLogger(__name__)

CONDITION_ACCEPTED = "Accepted"
CONDITION_RESOLVED_REFS = "ResolvedRefs"

ALLOWED_ROUTE_KINDS: dict[str, frozenset[str]] = {
    "HTTP": frozenset({"HTTPRoute", "GRPCRoute"}),
    "HTTPS": frozenset({"HTTPRoute", "GRPCRoute"}),
    "TLS": frozenset({"TLSRoute"}),
    "TCP": frozenset({"TCPRoute"}),
    "UDP": frozenset({"UDPRoute"}),
}
TLS_PROTOCOLS = frozenset({"HTTPS", "TLS"})
# Cleartext protocols whose routes are told apart by the Host header.
VIRTUAL_HOST_PROTOCOLS = frozenset({"HTTP"})

NETWORK_FILTERS = {
    "HTTP": "envoy.filters.network.http_connection_manager",
    "HTTPS": "envoy.filters.network.http_connection_manager",
    "TLS": "envoy.filters.network.tcp_proxy",
    "TCP": "envoy.filters.network.tcp_proxy",
    "UDP": "envoy.filters.udp_listener.udp_proxy",
}


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _hostnames_intersect(listener_hostname: str, hostname: str) -> str | None:
    """Return the more specific of two intersecting hostnames, or None."""
    if listener_hostname == hostname:
        return hostname
    if listener_hostname.startswith("*.") and hostname.endswith(listener_hostname[1:]):
        return hostname
    if hostname.startswith("*.") and listener_hostname.endswith(hostname[1:]):
        return listener_hostname
    return None


def effective_hostnames(listener_hostname: str | None, hostnames: Iterable[str]) -> list[str]:
    """Return the hostnames a route serves on a listener.

    A route or listener without hostnames matches everything on the other
    side; when neither has any, the result is the wildcard ``["*"]``.  An
    empty list means the route and listener share no hostname.
    """
    route_names = list(hostnames)
    if not route_names:
        return [listener_hostname] if listener_hostname else [WILDCARD_HOSTNAME]
    if not listener_hostname:
        return list(dict.fromkeys(route_names))
    result: list[str] = []
    for hostname in route_names:
        match = _hostnames_intersect(listener_hostname, hostname)
        if match is not None and match not in result:
            result.append(match)
    return result


def make_condition(
    condition_type: str,
    accepted: bool,
    reason: str,
    message: str,
    generation: int | None,
    now: str,
) -> dict[str, Any]:
    return {
        "type": condition_type,
        "status": "True" if accepted else "False",
        "reason": reason,
        "message": message,
        "observedGeneration": generation,
        "lastTransitionTime": now,
    }


def _same_condition(left: Mapping[str, Any], right: Mapping[str, Any]) -> bool:
    return all(
        left.get(key) == right.get(key)
        for key in ("type", "status", "reason", "message", "observedGeneration")
    )


def preserve_transition_times(
    previous_parents: Iterable[Mapping[str, Any]],
    desired_parents: Iterable[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    """Return *desired_parents* with unchanged conditions keeping their old timestamps.

    Without this every translation would produce a new ``lastTransitionTime``
    and therefore a status write, which in turn re-triggers the watch.
    """
    previous = list(previous_parents)
    result: list[dict[str, Any]] = []
    for desired in desired_parents:
        merged = copy.deepcopy(dict(desired))
        match = next(
            (
                parent
                for parent in previous
                if parent.get("parentRef") == desired.get("parentRef")
                and parent.get("controllerName") == desired.get("controllerName")
            ),
            None,
        )
        if match is not None:
            old_conditions = match.get("conditions") or []
            for condition in merged.get("conditions") or []:
                for old in old_conditions:
                    if _same_condition(old, condition):
                        condition["lastTransitionTime"] = old.get("lastTransitionTime")
                        break
        result.append(merged)
    return result


def route_with_parents(route: Mapping[str, Any], parents: list[dict[str, Any]]) -> dict[str, Any]:
    published = copy.deepcopy(dict(route))
    published["status"] = {"parents": parents}
    return published


def rejected_route_status(
    route_kind: RouteKind,
    route: Mapping[str, Any],
    controller_name: str,
    err: StatusError,
    now: str,
) -> dict[str, Any]:
    """Build the status published for a route whose backend refs were rejected."""
    generation = (route.get("metadata") or {}).get("generation")
    message = condition_message(err)
    parents = [
        {
            "parentRef": dict(ref),
            "controllerName": controller_name,
            "conditions": [
                make_condition(CONDITION_ACCEPTED, False, err.reason, message, generation, now),
                make_condition(
                    CONDITION_RESOLVED_REFS, False, err.reason, message, generation, now
                ),
            ],
        }
        for ref in route_kind.parent_refs(route)
    ]
    return route_with_parents(route, parents)


@dataclass
class _ListenerEntry:
    gateway: NamespacedName
    spec: Mapping[str, Any]
    listener: Listener
    # hostname -> name of the filter chain that claimed it
    claimed: dict[str, str] = field(default_factory=dict)

    @property
    def protocol(self) -> str:
        return str(self.spec.get("protocol") or "").upper()

    @property
    def hostname(self) -> str | None:
        return self.spec.get("hostname")


@dataclass
class TranslationResult:
    listeners: list[Listener] = field(default_factory=list)
    route_statuses: dict[str, dict[NamespacedName, dict[str, Any]]] = field(default_factory=dict)


class Translator:
    """Turns a resource snapshot into proxy listeners and route statuses.

    Gateways and routes are processed in sorted order so the output is
    deterministic for a given snapshot.  Hostname uniqueness per listener is
    enforced here: the first route (by kind, then namespace/name) to claim a
    hostname keeps it, later claimants are rejected with ``HostnameConflict``.
    Cleartext HTTP routes become virtual hosts of one shared chain; TLS routes
    get their own chain selected by server name.
    """

    def __init__(
        self,
        controller_name: str,
        route_kinds: Iterable[RouteKind] = ROUTE_KINDS,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        logger: logging.Logger | None = None,
    ) -> None:
        self.controller_name = controller_name
        self.route_kinds = tuple(route_kinds)
        self.now_fn = now_fn
        self.logger = logger or LOGGER

    def translate(self, snapshot: ResourceSnapshot) -> TranslationResult:
        now = self.now_fn()
        entries = self._build_listeners(snapshot)
        result = TranslationResult(listeners=[entry.listener for entry in entries])

        for route_kind in self.route_kinds:
            routes = snapshot.routes.get(route_kind.kind) or {}
            statuses: dict[NamespacedName, dict[str, Any]] = {}
            for route_key in sorted(routes):
                route = routes[route_key]
                parents = self._translate_route(
                    route_kind, route_key, route, entries, snapshot, now
                )
                if parents:
                    statuses[route_key] = route_with_parents(route, parents)
            result.route_statuses[route_kind.kind] = statuses

        METRICS.translations_total.inc()
        return result

    def _build_listeners(self, snapshot: ResourceSnapshot) -> list[_ListenerEntry]:
        entries: list[_ListenerEntry] = []
        for gateway_key in sorted(snapshot.gateways):
            gateway = snapshot.gateways[gateway_key]
            for spec in (gateway.get("spec") or {}).get("listeners") or []:
                protocol = str(spec.get("protocol") or "").upper()
                listener = Listener(
                    name=f"{gateway_key}/{spec.get('name')}",
                    address=SocketAddress(
                        port_value=int(spec.get("port") or 0),
                        protocol=PROTOCOL_UDP if protocol == "UDP" else PROTOCOL_TCP,
                    ),
                )
                entries.append(_ListenerEntry(gateway=gateway_key, spec=spec, listener=listener))
        return entries

    def _translate_route(
        self,
        route_kind: RouteKind,
        route_key: NamespacedName,
        route: Mapping[str, Any],
        entries: list[_ListenerEntry],
        snapshot: ResourceSnapshot,
        now: str,
    ) -> list[dict[str, Any]]:
        generation = (route.get("metadata") or {}).get("generation")
        backends, resolve_errors = self._resolve_backends(route_kind, route_key, route, snapshot)
        if resolve_errors.empty:
            resolved = make_condition(
                CONDITION_RESOLVED_REFS,
                True,
                CONDITION_RESOLVED_REFS,
                "Resolved all the Object references for the Route",
                generation,
                now,
            )
        else:
            resolved = make_condition(
                CONDITION_RESOLVED_REFS,
                False,
                resolve_errors.reason,
                condition_message(resolve_errors),
                generation,
                now,
            )

        parents: list[dict[str, Any]] = []
        refs = route_kind.parent_refs(route)
        for ref, gateway_key in zip(refs, parent_ref_targets(refs, route_key.namespace)):
            if gateway_key not in snapshot.gateways:
                continue
            attach_errors = self._attach(route_kind, route, ref, gateway_key, entries, backends)
            if attach_errors.empty:
                accepted = make_condition(
                    CONDITION_ACCEPTED,
                    True,
                    CONDITION_ACCEPTED,
                    "Route is accepted",
                    generation,
                    now,
                )
            else:
                self.logger.info(
                    "%s %s not accepted by %s: %s",
                    route_kind.kind,
                    route_key,
                    gateway_key,
                    attach_errors,
                )
                accepted = make_condition(
                    CONDITION_ACCEPTED,
                    False,
                    attach_errors.reason,
                    condition_message(attach_errors),
                    generation,
                    now,
                )
            parents.append(
                {
                    "parentRef": dict(ref),
                    "controllerName": self.controller_name,
                    "conditions": [accepted, dict(resolved)],
                }
            )
        return parents

    def _resolve_backends(
        self,
        route_kind: RouteKind,
        route_key: NamespacedName,
        route: Mapping[str, Any],
        snapshot: ResourceSnapshot,
    ) -> tuple[list[str], MultiStatusError]:
        errors = MultiStatusError()
        backends: list[str] = []
        for ref in route_kind.backend_refs(route):
            try:
                validate_backend_ref(ref)
            except StatusError as exc:
                errors.add(exc)
                continue
            service_key = backend_identity(ref, route_key.namespace)
            service = snapshot.services.get(service_key)
            if service is None:
                errors.add(
                    RouteStatusError(
                        ROUTE_REASON_BACKEND_NOT_FOUND, f"service {service_key} not found"
                    )
                )
                continue
            port = ref.get("port")
            if port is None:
                errors.add(
                    RouteStatusError(
                        ROUTE_REASON_PORT_NOT_SPECIFIED,
                        f"a port must be specified for service {service_key}",
                    )
                )
                continue
            ports = (service.get("spec") or {}).get("ports") or []
            if not any(candidate.get("port") == port for candidate in ports):
                errors.add(
                    RouteStatusError(
                        ROUTE_REASON_PORT_NOT_FOUND,
                        f"port {port} not found on service {service_key}",
                    )
                )
                continue
            backends.append(f"{service_key}:{port}")
        return backends, errors

    def _attach(
        self,
        route_kind: RouteKind,
        route: Mapping[str, Any],
        ref: Mapping[str, Any],
        gateway_key: NamespacedName,
        entries: list[_ListenerEntry],
        backends: list[str],
    ) -> MultiStatusError:
        errors = MultiStatusError()
        route_key = NamespacedName.of(route)
        section_name = ref.get("sectionName")
        port = ref.get("port")
        candidates = [
            entry
            for entry in entries
            if entry.gateway == gateway_key
            and (section_name is None or entry.spec.get("name") == section_name)
            and (port is None or entry.spec.get("port") == port)
        ]
        if not candidates:
            errors.add(
                RouteStatusError(
                    ROUTE_REASON_NO_MATCHING_PARENT,
                    f"no listener of gateway {gateway_key} matches the parent reference",
                )
            )
            return errors

        allowed = [
            entry
            for entry in candidates
            if route_kind.kind in ALLOWED_ROUTE_KINDS.get(entry.protocol, ())
        ]
        if not allowed:
            errors.add(
                RouteStatusError(
                    ROUTE_REASON_NOT_ALLOWED_BY_LISTENERS,
                    f"{route_kind.kind} is not allowed by the listeners of gateway {gateway_key}",
                )
            )
            return errors

        attached = False
        for entry in allowed:
            hostnames = effective_hostnames(entry.hostname, route_hostnames(route))
            if not hostnames:
                errors.add(
                    RouteStatusError(
                        ROUTE_REASON_NO_MATCHING_LISTENER_HOSTNAME,
                        f"no hostname of the route matches listener {entry.listener.name}",
                    )
                )
                continue
            try:
                self._add_filter_chain(entry, route_kind, route_key, hostnames, backends)
            except StatusError as exc:
                errors.add(exc)
                continue
            attached = True

        if attached:
            return MultiStatusError()
        return errors

    def _add_filter_chain(
        self,
        entry: _ListenerEntry,
        route_kind: RouteKind,
        route_key: NamespacedName,
        hostnames: list[str],
        backends: list[str],
    ) -> None:
        listener = entry.listener
        chain_name = f"{route_kind.kind.lower()}/{route_key}"
        is_tls = entry.protocol in TLS_PROTOCOLS
        virtual_hosts = entry.protocol in VIRTUAL_HOST_PROTOCOLS
        sni_matched = is_tls and listener.protocol == PROTOCOL_TCP
        # Plain TCP and UDP traffic carries no hostname, so those listeners
        # hold a single catch-all chain.
        if virtual_hosts or sni_matched:
            claims = list(hostnames)
        else:
            claims = [WILDCARD_HOSTNAME]

        conflicts = [
            hostname
            for hostname in claims
            if entry.claimed.get(hostname, chain_name) != chain_name
        ]
        if conflicts:
            owners = sorted({entry.claimed[hostname] for hostname in conflicts})
            raise RouteStatusError(
                ROUTE_REASON_HOSTNAME_CONFLICT,
                f"hostnames {', '.join(conflicts)} on listener {listener.name} "
                f"are already routed to {', '.join(owners)}",
            )
        for hostname in claims:
            entry.claimed[hostname] = chain_name

        network_filter = NETWORK_FILTERS.get(entry.protocol, NETWORK_FILTERS["TCP"])
        if virtual_hosts:
            add_virtual_host(listener, network_filter, chain_name, hostnames, backends)
            return

        filter_chain = FilterChain(
            name=chain_name,
            filters=[
                {
                    "name": network_filter,
                    "hostnames": list(hostnames),
                    "backends": list(backends),
                }
            ],
        )
        if claims == [WILDCARD_HOSTNAME]:
            listener.default_filter_chain = filter_chain
            return
        add_server_names_match(listener, filter_chain, claims, is_tls)
        if all(chain.name != chain_name for chain in listener.filter_chains):
            listener.filter_chains.append(filter_chain)


class XdsSnapshot:
    """Versioned proxy configuration handed to the distribution layer.

    The version only moves when the serialized listeners change, so repeated
    translations of the same state do not cause proxies to re-apply config.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._version = 0
        self._hash = ""
        self._listeners: list[Listener] = []

    @staticmethod
    def _hash_listeners(listeners: Iterable[Listener]) -> str:
        payload = json.dumps(
            [listener.as_dict() for listener in listeners], sort_keys=True, separators=(",", ":")
        )
        return sha256(payload.encode("utf-8")).hexdigest()

    def update(self, listeners: list[Listener]) -> bool:
        """Replace the listeners; returns True if the version changed."""
        digest = self._hash_listeners(listeners)
        with self._lock:
            if digest == self._hash:
                return False
            self._hash = digest
            self._listeners = list(listeners)
            self._version += 1
            METRICS.xds_snapshot_version.set(self._version)
            return True

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def listeners(self) -> list[Listener]:
        with self._lock:
            return list(self._listeners)

    def as_dict(self, include_all: bool = True) -> dict[str, Any]:
        with self._lock:
            if include_all:
                listeners: list[Any] = [listener.as_dict() for listener in self._listeners]
            else:
                listeners = [listener.name for listener in self._listeners]
            return {"version": str(self._version), "listeners": listeners}
