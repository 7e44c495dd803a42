# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Tests for gateway_status.py."""

from conftest import http_route
from gateway_status import (
    NO_SUPPORTED_KINDS_MESSAGE,
    SOME_UNSUPPORTED_KINDS_MESSAGE,
    build_config_error_status,
    build_gateway_class_status,
    build_gateway_status,
    count_attached_routes,
)
from ingress import GRPCRouteAdapter, HTTPRouteAdapter
from models import GatewayClassResource, GatewayResource, GRPCRouteResource, HTTPRouteResource
from utils import ConfigResolutionError


def make_gateway(listeners, status=None):
    data = {
        "metadata": {"name": "gw", "namespace": "ns", "generation": 4},
        "spec": {"gatewayClassName": "tunnel", "listeners": listeners},
    }
    if status is not None:
        data["status"] = status
    return GatewayResource.model_validate(data)


def http_adapter(name, **kwargs):
    return HTTPRouteAdapter(HTTPRouteResource.model_validate(http_route(name, **kwargs)))


def test_count_attached_routes_per_listener():
    gateway = make_gateway(
        [
            {"name": "http", "protocol": "HTTP"},
            {"name": "api", "protocol": "HTTP", "hostname": "api.example.com"},
        ]
    )
    grpc = GRPCRouteAdapter(
        GRPCRouteResource.model_validate(
            {
                "metadata": {"name": "g1", "namespace": "ns"},
                "spec": {"parentRefs": [{"name": "gw", "sectionName": "api"}], "hostnames": []},
            }
        )
    )
    routes = [
        http_adapter("r1", hostnames=["app.example.com"]),
        http_adapter("r2", hostnames=["api.example.com"]),
        # Rejected by the Same namespace policy.
        http_adapter("r3", namespace="other-ns"),
        grpc,
    ]

    assert count_attached_routes(gateway, routes) == {"http": 2, "api": 2}


def test_count_ignores_other_gateways():
    gateway = make_gateway([{"name": "http", "protocol": "HTTP"}])
    route = http_adapter("r1")
    route.route.spec.parentRefs[0].name = "other"

    assert count_attached_routes(gateway, [route]) == {"http": 0}


def test_gateway_status():
    gateway = make_gateway(
        [
            {"name": "http", "protocol": "HTTP"},
            {"name": "mixed", "protocol": "HTTP", "allowedRoutes": {"kinds": [{"kind": "HTTPRoute"}, {"kind": "TCPRoute"}]}},
            {"name": "tcp", "protocol": "TCP"},
        ]
    )

    status = build_gateway_status(gateway, "tunnel-123", {"http": 3})

    assert status["addresses"] == [{"type": "Hostname", "value": "tunnel-123.cfargotunnel.com"}]
    assert [(c["type"], c["status"]) for c in status["conditions"]] == [
        ("Accepted", "True"),
        ("Programmed", "True"),
    ]
    http, mixed, tcp = status["listeners"]
    assert http["attachedRoutes"] == 3
    assert [kind["kind"] for kind in http["supportedKinds"]] == ["HTTPRoute", "GRPCRoute"]
    assert http["conditions"][2]["status"] == "True"
    assert http["conditions"][0]["observedGeneration"] == 4

    assert mixed["attachedRoutes"] == 0
    assert mixed["conditions"][2]["reason"] == "InvalidRouteKinds"
    assert mixed["conditions"][2]["message"] == SOME_UNSUPPORTED_KINDS_MESSAGE

    assert tcp["supportedKinds"] == []
    assert tcp["conditions"][2]["message"] == NO_SUPPORTED_KINDS_MESSAGE


def test_gateway_status_keeps_transition_times():
    previous = {
        "conditions": [
            {"type": "Accepted", "status": "True", "reason": "Accepted", "lastTransitionTime": "2024-01-01T00:00:00Z"},
            {"type": "Programmed", "status": "False", "reason": "Invalid", "lastTransitionTime": "2024-01-01T00:00:00Z"},
        ]
    }
    gateway = make_gateway([{"name": "http", "protocol": "HTTP"}], status=previous)

    conditions = build_gateway_status(gateway, "t", {})["conditions"]

    assert conditions[0]["lastTransitionTime"] == "2024-01-01T00:00:00Z"
    assert conditions[1]["lastTransitionTime"] != "2024-01-01T00:00:00Z"


def test_config_error_status_clears_addresses_and_listeners():
    gateway = make_gateway([{"name": "http", "protocol": "HTTP"}])

    status = build_config_error_status(gateway, ConfigResolutionError("secret ns/creds not found"))

    assert status["addresses"] is None
    assert status["listeners"] is None
    accepted, programmed = status["conditions"]
    assert (accepted["status"], accepted["reason"]) == ("False", "InvalidParameters")
    assert (programmed["status"], programmed["reason"]) == ("False", "Invalid")
    assert accepted["message"] == "Failed to resolve GatewayClassConfig: secret ns/creds not found"


def test_config_error_message_is_truncated():
    gateway = make_gateway([])

    status = build_config_error_status(gateway, ConfigResolutionError("x" * 1000))

    assert len(status["conditions"][0]["message"]) == 256


def test_gateway_class_status_keeps_foreign_conditions():
    gateway_class = GatewayClassResource.model_validate(
        {
            "metadata": {"name": "tunnel", "generation": 2},
            "spec": {"controllerName": "cf.k8s.lex.la/tunnel-controller"},
            "status": {"conditions": [{"type": "Custom", "status": "True", "reason": "Other"}]},
        }
    )

    conditions = build_gateway_class_status(gateway_class)["conditions"]

    assert [(c["type"], c["status"]) for c in conditions] == [
        ("Custom", "True"),
        ("Accepted", "True"),
        ("SupportedVersion", "True"),
    ]
