# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Tests for tunnel_client.py."""

import json

import httpx
import pytest

from models import IngressRule, catch_all_rule
from tunnel_client import (
    ERROR_AUTH,
    ERROR_CLIENT,
    ERROR_NETWORK,
    ERROR_RATE_LIMIT,
    ERROR_SERVER,
    ERROR_TIMEOUT,
    ERROR_UNKNOWN,
    TunnelAPIError,
    TunnelClient,
    classify_error,
    classify_status,
)

CONFIG_PATH = "/client/v4/accounts/acc/cfd_tunnel/tun/configurations"


def make_client(handler):
    return TunnelClient("secret-token", transport=httpx.MockTransport(handler))


def test_get_configuration():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == CONFIG_PATH
        assert request.headers["Authorization"] == "Bearer secret-token"
        return httpx.Response(
            200,
            json={
                "success": True,
                "errors": [],
                "result": {
                    "config": {
                        "ingress": [
                            {"hostname": "app.example.com", "service": "http://svc:80"},
                            {"service": "http_status:404"},
                        ]
                    }
                },
            },
        )

    with make_client(handler) as client:
        rules = client.get_configuration("acc", "tun")

    assert rules == [IngressRule(hostname="app.example.com", service="http://svc:80"), catch_all_rule()]


def test_get_configuration_without_config():
    def handler(request):
        return httpx.Response(200, json={"success": True, "result": {"config": None}})

    with make_client(handler) as client:
        assert client.get_configuration("acc", "tun") == []


def test_update_configuration_sends_full_rule_list():
    sent = {}

    def handler(request):
        sent["method"] = request.method
        sent["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "result": {}})

    rules = [IngressRule(hostname="app.example.com", path="/api*", service="http://svc:80"), catch_all_rule()]
    with make_client(handler) as client:
        client.update_configuration("acc", "tun", rules)

    assert sent["method"] == "PUT"
    assert sent["body"] == {
        "config": {
            "ingress": [
                {"hostname": "app.example.com", "path": "/api*", "service": "http://svc:80"},
                {"service": "http_status:404"},
            ]
        }
    }


def test_error_status_raises_classified_error():
    def handler(request):
        return httpx.Response(
            403, json={"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]}
        )

    with make_client(handler) as client:
        with pytest.raises(TunnelAPIError) as excinfo:
            client.get_configuration("acc", "tun")

    assert excinfo.value.status_code == 403
    assert excinfo.value.error_type == ERROR_AUTH
    assert "Authentication error" in str(excinfo.value)


def test_unsuccessful_body_raises():
    def handler(request):
        return httpx.Response(200, json={"success": False, "errors": [{"code": 1, "message": "nope"}]})

    with make_client(handler) as client:
        with pytest.raises(TunnelAPIError):
            client.update_configuration("acc", "tun", [catch_all_rule()])


def test_transport_errors_are_wrapped():
    def timeout(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    with make_client(timeout) as client:
        with pytest.raises(TunnelAPIError) as excinfo:
            client.list_accounts()
    assert excinfo.value.error_type == ERROR_TIMEOUT

    with make_client(refused) as client:
        with pytest.raises(TunnelAPIError) as excinfo:
            client.list_accounts()
    assert excinfo.value.error_type == ERROR_NETWORK


def test_list_accounts():
    def handler(request):
        assert request.url.path == "/client/v4/accounts"
        return httpx.Response(200, json={"success": True, "result": [{"id": "acc", "name": "Main"}]})

    with make_client(handler) as client:
        assert client.list_accounts() == [{"id": "acc", "name": "Main"}]


@pytest.mark.parametrize(
    "status_code, message, expected",
    [
        (401, "", ERROR_AUTH),
        (429, "", ERROR_RATE_LIMIT),
        (503, "", ERROR_SERVER),
        (404, "", ERROR_CLIENT),
        (None, "context deadline exceeded", ERROR_TIMEOUT),
        (None, "dial tcp: connection refused", ERROR_NETWORK),
        (None, "something odd", ERROR_UNKNOWN),
    ],
)
def test_classify_status(status_code, message, expected):
    assert classify_status(status_code, message) == expected


def test_classify_error():
    request = httpx.Request("GET", "https://api.cloudflare.com")

    assert classify_error(TunnelAPIError("x", status_code=429)) == ERROR_RATE_LIMIT
    assert classify_error(httpx.ConnectTimeout("slow", request=request)) == ERROR_TIMEOUT
    assert classify_error(httpx.ConnectError("down", request=request)) == ERROR_NETWORK
    assert classify_error(ValueError("weird")) == ERROR_UNKNOWN
