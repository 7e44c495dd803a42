# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Tests for routebinding.py."""

import pytest

from models import AllowedRoutes, GatewayResource
from routebinding import (
    KIND_GRPC_ROUTE,
    KIND_HTTP_ROUTE,
    BindingReason,
    BindingValidator,
    RouteInfo,
    filter_supported_kinds,
    get_allowed_kinds,
    hostnames_intersect,
    is_namespace_allowed,
    is_route_kind_allowed,
    listener_hostname_matches,
)


def make_gateway(listeners, namespace="gateway-ns"):
    return GatewayResource.model_validate(
        {
            "metadata": {"name": "gw", "namespace": namespace},
            "spec": {"gatewayClassName": "tunnel", "listeners": listeners},
        }
    )


def route_info(namespace="gateway-ns", hostnames=None, kind=KIND_HTTP_ROUTE, section_name=None):
    return RouteInfo(
        name="r1",
        namespace=namespace,
        hostnames=hostnames or [],
        kind=kind,
        section_name=section_name,
    )


@pytest.mark.parametrize(
    "hostname, expected",
    [
        ("app.example.com", True),
        ("a.b.example.com", True),
        ("example.com", False),
        ("other.org", False),
        ("APP.Example.com", True),
    ],
)
def test_wildcard_hostname_intersection(hostname, expected):
    assert hostnames_intersect("*.example.com", hostname) is expected
    assert hostnames_intersect(hostname, "*.example.com") is expected


def test_two_wildcards_intersect_when_one_is_a_suffix_of_the_other():
    assert hostnames_intersect("*.example.com", "*.app.example.com")
    assert not hostnames_intersect("*.example.com", "*.example.org")


def test_listener_without_hostname_matches_everything():
    assert listener_hostname_matches(None, ["anything.org"])
    assert listener_hostname_matches("app.example.com", [])
    assert not listener_hostname_matches("app.example.com", ["other.example.com"])


def test_protocol_default_kinds():
    kinds, explicit = get_allowed_kinds(None, "HTTPS")
    assert [kind.kind for kind in kinds] == [KIND_HTTP_ROUTE, KIND_GRPC_ROUTE]
    assert explicit is False

    assert not is_route_kind_allowed(None, "TCP", KIND_HTTP_ROUTE)
    assert is_route_kind_allowed(None, "HTTP", KIND_GRPC_ROUTE)


def test_filter_supported_kinds_flags_explicit_unsupported_kinds():
    allowed = AllowedRoutes.model_validate({"kinds": [{"kind": "HTTPRoute"}, {"kind": "TCPRoute"}]})
    supported, has_supported, has_invalid = filter_supported_kinds(allowed, "HTTP")
    assert [kind.kind for kind in supported] == [KIND_HTTP_ROUTE]
    assert has_supported and has_invalid

    supported, has_supported, has_invalid = filter_supported_kinds(None, "TLS")
    assert supported == []
    assert not has_supported
    # Protocol defaults are never reported as invalid.
    assert not has_invalid


def test_namespace_policies():
    gateway = make_gateway(
        [
            {"name": "same", "protocol": "HTTP"},
            {"name": "all", "protocol": "HTTP", "allowedRoutes": {"namespaces": {"from": "All"}}},
            {
                "name": "selector",
                "protocol": "HTTP",
                "allowedRoutes": {"namespaces": {"from": "Selector", "selector": {"matchLabels": {"a": "b"}}}},
            },
        ]
    )
    same, all_, selector = gateway.spec.listeners

    assert is_namespace_allowed(same, "gateway-ns", "gateway-ns")
    assert not is_namespace_allowed(same, "gateway-ns", "other-ns")
    assert is_namespace_allowed(all_, "gateway-ns", "other-ns")
    assert not is_namespace_allowed(selector, "gateway-ns", "other-ns")
    assert is_namespace_allowed(selector, "gateway-ns", "gateway-ns")


@pytest.mark.parametrize("hostnames", [[], ["app.example.com"], ["*.example.com"]])
def test_same_policy_rejects_other_namespace_regardless_of_hostname(hostnames):
    gateway = make_gateway([{"name": "http", "protocol": "HTTP", "hostname": "*.example.com"}])

    result = BindingValidator().validate(gateway, route_info(namespace="other-ns", hostnames=hostnames))

    assert not result["accepted"]
    assert result["reason"] == BindingReason.NotAllowedByListeners


def test_accepted_route_reports_matched_listeners():
    gateway = make_gateway(
        [
            {"name": "http", "protocol": "HTTP"},
            {"name": "other", "protocol": "HTTP", "hostname": "other.org"},
        ]
    )

    result = BindingValidator().validate(gateway, route_info(hostnames=["app.example.com"]))

    assert result["accepted"]
    assert result["reason"] == BindingReason.Accepted
    assert result["matched_listeners"] == ["http"]


def test_hostname_mismatch():
    gateway = make_gateway([{"name": "http", "protocol": "HTTP", "hostname": "*.example.com"}])

    result = BindingValidator().validate(gateway, route_info(hostnames=["example.com"]))

    assert result["reason"] == BindingReason.NoMatchingListenerHostname


def test_missing_section_name_is_no_matching_parent():
    gateway = make_gateway([{"name": "http", "protocol": "HTTP"}])

    result = BindingValidator().validate(gateway, route_info(section_name="https"))

    assert not result["accepted"]
    assert result["reason"] == BindingReason.NoMatchingParent


def test_section_name_limits_listeners():
    gateway = make_gateway(
        [
            {"name": "http", "protocol": "HTTP"},
            {"name": "https", "protocol": "HTTPS"},
        ]
    )

    result = BindingValidator().validate(gateway, route_info(section_name="https"))

    assert result["matched_listeners"] == ["https"]


def test_kind_not_allowed():
    gateway = make_gateway(
        [{"name": "http", "protocol": "HTTP", "allowedRoutes": {"kinds": [{"kind": "HTTPRoute"}]}}]
    )

    result = BindingValidator().validate(gateway, route_info(kind=KIND_GRPC_ROUTE))

    assert result["reason"] == BindingReason.NotAllowedByListeners
    assert "GRPCRoute" in result["message"]


def test_only_unsupported_kinds():
    gateway = make_gateway(
        [{"name": "tcp", "protocol": "HTTP", "allowedRoutes": {"kinds": [{"kind": "TCPRoute"}]}}]
    )

    result = BindingValidator().validate(gateway, route_info())

    assert result["reason"] == BindingReason.NotAllowedByListeners
    assert "not supported" in result["message"]
