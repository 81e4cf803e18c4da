from __future__ import annotations

import pytest

from routeplane.src.matcher import (
    PROTOCOL_TCP,
    PROTOCOL_UDP,
    SERVER_NAME_INPUT,
    TLS_INSPECTOR,
    FilterChain,
    Listener,
    SocketAddress,
    add_server_names_match,
    add_virtual_host,
)


def _listener(protocol: str = PROTOCOL_TCP) -> Listener:
    return Listener(name="default/eg/tls", address=SocketAddress(port_value=443, protocol=protocol))


def _tls_inspectors(listener: Listener) -> int:
    return sum(1 for f in listener.listener_filters if f.name == TLS_INSPECTOR)


def test_nil_listener_is_ignored() -> None:
    filter_chain = FilterChain(name="test-filter-chain")

    add_server_names_match(None, filter_chain, ["example.com"], True)

    assert filter_chain.filter_chain_match is None


def test_udp_listener_is_left_untouched() -> None:
    listener = _listener(PROTOCOL_UDP)
    filter_chain = FilterChain(name="test-filter-chain")

    add_server_names_match(listener, filter_chain, ["example.com"], True)

    assert listener.filter_chain_matcher is None
    assert listener.listener_filters == []
    assert filter_chain.filter_chain_match is None


def test_tcp_listener_with_hostnames_gets_exact_match_tree() -> None:
    listener = _listener()
    filter_chain = FilterChain(name="test-filter-chain")

    add_server_names_match(listener, filter_chain, ["example.com", "api.example.com"], True)

    matcher = listener.filter_chain_matcher
    assert matcher is not None
    assert matcher.on_no_match is None
    assert matcher.matcher_tree.input == SERVER_NAME_INPUT
    entries = {
        hostname: on_match.action.name
        for hostname, on_match in matcher.matcher_tree.exact_match_map.items()
    }
    assert entries == {"example.com": "test-filter-chain", "api.example.com": "test-filter-chain"}
    assert _tls_inspectors(listener) == 1
    assert filter_chain.filter_chain_match is None


def test_wildcard_hostname_creates_no_matcher_or_inspector() -> None:
    listener = _listener()
    filter_chain = FilterChain(name="test-filter-chain")

    add_server_names_match(listener, filter_chain, ["*"], True)

    assert listener.filter_chain_matcher is None
    assert _tls_inspectors(listener) == 0
    assert filter_chain.filter_chain_match is None


def test_cleartext_chain_is_not_matched_by_server_name() -> None:
    listener = _listener()

    add_server_names_match(listener, FilterChain(name="plain"), ["example.com"], False)

    assert listener.filter_chain_matcher is None
    assert listener.listener_filters == []


def test_chains_share_one_matcher_and_one_inspector() -> None:
    listener = _listener()
    first = FilterChain(name="first")
    second = FilterChain(name="second")

    add_server_names_match(listener, first, ["a.example.com"], True)
    matcher = listener.filter_chain_matcher
    add_server_names_match(listener, second, ["b.example.com", "*"], True)

    assert listener.filter_chain_matcher is matcher
    assert set(matcher.matcher_tree.exact_match_map) == {"a.example.com", "b.example.com"}
    assert _tls_inspectors(listener) == 1


def test_repeated_hostname_is_reassigned_to_latest_chain() -> None:
    listener = _listener()

    add_server_names_match(listener, FilterChain(name="first"), ["example.com"], True)
    add_server_names_match(listener, FilterChain(name="second"), ["example.com"], True)

    exact_match_map = listener.filter_chain_matcher.matcher_tree.exact_match_map
    assert exact_match_map["example.com"].action.name == "second"


@pytest.mark.parametrize("hostnames", [[], ["*", "*"]])
def test_no_concrete_hostnames_is_a_noop(hostnames: list[str]) -> None:
    listener = _listener()

    add_server_names_match(listener, FilterChain(name="chain"), hostnames, True)

    assert listener.filter_chain_matcher is None
    assert listener.as_dict()["listener_filters"] == []


def test_virtual_hosts_share_the_default_chain() -> None:
    listener = Listener(name="default/eg/http", address=SocketAddress(port_value=80))

    add_virtual_host(listener, "hcm", "httproute/default/a", ["a.example.com"], ["svc:80"])
    add_virtual_host(listener, "hcm", "httproute/default/b", ["b.example.com"], ["svc:81"])
    add_virtual_host(listener, "hcm", "httproute/default/a", ["a.example.com"], ["svc:82"])

    chain = listener.default_filter_chain
    assert chain.name == "default/eg/http"
    assert chain.filters[0]["name"] == "hcm"
    assert chain.filters[0]["virtual_hosts"] == [
        {"name": "httproute/default/b", "domains": ["b.example.com"], "backends": ["svc:81"]},
        {"name": "httproute/default/a", "domains": ["a.example.com"], "backends": ["svc:82"]},
    ]
    assert listener.filter_chains == []
    assert listener.filter_chain_matcher is None
