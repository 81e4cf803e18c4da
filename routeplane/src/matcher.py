from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

LOGGER = logging.getLogger(__name__)

PROTOCOL_TCP = "TCP"
PROTOCOL_UDP = "UDP"

TLS_INSPECTOR = "envoy.filters.listener.tls_inspector"
SERVER_NAME_INPUT = "envoy.matching.inputs.server_name"
WILDCARD_HOSTNAME = "*"


@dataclass
class SocketAddress:
    address: str = "0.0.0.0"  # noqa: S104
    port_value: int = 0
    protocol: str = PROTOCOL_TCP


@dataclass
class ListenerFilter:
    name: str
    typed_config: dict[str, Any] = field(default_factory=dict)


@dataclass
class FilterChainMatch:
    server_names: list[str] = field(default_factory=list)
    transport_protocol: str = ""


@dataclass
class FilterChain:
    name: str
    filter_chain_match: FilterChainMatch | None = None
    filters: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class Action:
    """Terminal matcher action naming the filter chain to use."""

    name: str


@dataclass
class OnMatch:
    action: Action


@dataclass
class MatcherTree:
    input: str
    exact_match_map: dict[str, OnMatch] = field(default_factory=dict)


@dataclass
class Matcher:
    matcher_tree: MatcherTree
    on_no_match: OnMatch | None = None


@dataclass
class Listener:
    name: str
    address: SocketAddress | None = None
    listener_filters: list[ListenerFilter] = field(default_factory=list)
    filter_chains: list[FilterChain] = field(default_factory=list)
    default_filter_chain: FilterChain | None = None
    filter_chain_matcher: Matcher | None = None

    @property
    def protocol(self) -> str:
        if self.address is None:
            return PROTOCOL_TCP
        return self.address.protocol

    def has_listener_filter(self, name: str) -> bool:
        return any(listener_filter.name == name for listener_filter in self.listener_filters)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def add_listener_filter(listener: Listener, name: str) -> None:
    """Install the listener filter *name* unless it is already present."""
    if listener.has_listener_filter(name):
        return
    listener.listener_filters.append(
        ListenerFilter(name=name, typed_config={"@type": f"type.googleapis.com/{name}"})
    )


def add_server_names_match(
    listener: Listener | None,
    filter_chain: FilterChain,
    hostnames: Sequence[str],
    is_tls: bool,
) -> None:
    """Route connections for *hostnames* on *listener* to *filter_chain*.

    Matching is done by the listener's shared matcher tree keyed on the TLS
    server name; the chain's own ``filter_chain_match`` is never set.

    Nothing is changed when:

    * the listener is missing or is a UDP (QUIC) listener, where server-name
      matching does not apply;
    * the chain is a cleartext chain, since only TLS connections carry a
      server name.  This goes beyond the listener and transport checks:
      cleartext HTTP routes are told apart by Host header through
      :func:`add_virtual_host` instead;
    * the only hostname is the wildcard ``*``, which is left to the
      listener's no-match handling.

    A hostname that is already in the tree is re-pointed at this chain.
    """
    if listener is None or listener.protocol != PROTOCOL_TCP:
        return
    if not is_tls:
        return

    names = [hostname for hostname in hostnames if hostname != WILDCARD_HOSTNAME]
    if not names:
        return

    if listener.filter_chain_matcher is None:
        listener.filter_chain_matcher = Matcher(matcher_tree=MatcherTree(input=SERVER_NAME_INPUT))

    exact_match_map = listener.filter_chain_matcher.matcher_tree.exact_match_map
    for hostname in names:
        previous = exact_match_map.get(hostname)
        if previous is not None and previous.action.name != filter_chain.name:
            LOGGER.debug(
                "Hostname %s on listener %s moved from filter chain %s to %s",
                hostname,
                listener.name,
                previous.action.name,
                filter_chain.name,
            )
        exact_match_map[hostname] = OnMatch(action=Action(name=filter_chain.name))

    add_listener_filter(listener, TLS_INSPECTOR)


def add_virtual_host(
    listener: Listener,
    network_filter: str,
    name: str,
    domains: Sequence[str],
    backends: Sequence[str],
) -> None:
    """Serve *domains* from the virtual host *name* on the listener's shared chain.

    Cleartext listeners cannot choose a filter chain per connection, so their
    routes share the default chain and are selected by Host header.  A virtual
    host already named *name* is replaced.
    """
    chain = listener.default_filter_chain
    if chain is None:
        chain = FilterChain(
            name=listener.name, filters=[{"name": network_filter, "virtual_hosts": []}]
        )
        listener.default_filter_chain = chain
    virtual_hosts = chain.filters[0]["virtual_hosts"]
    virtual_hosts[:] = [host for host in virtual_hosts if host["name"] != name]
    virtual_hosts.append({"name": name, "domains": list(domains), "backends": list(backends)})
