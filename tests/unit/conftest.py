#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import base64
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest
import yaml
from lightkube import Client
from lightkube.core.exceptions import ApiError

from models import (
    GatewayClassConfigResource,
    GatewayClassResource,
    GatewayResource,
    GRPCRouteResource,
    HTTPRouteResource,
    ReferenceGrantResource,
)
from settings import ControllerSettings

MODELS = {
    "gateway": GatewayResource,
    "gateway_class": GatewayClassResource,
    "gateway_class_config": GatewayClassConfigResource,
    "http_route": HTTPRouteResource,
    "grpc_route": GRPCRouteResource,
    "reference_grant": ReferenceGrantResource,
}

BASE_OBJECTS = """
gateway_class:
  metadata: {name: tunnel, generation: 1, resourceVersion: "1"}
  spec:
    controllerName: cf.k8s.lex.la/tunnel-controller
    parametersRef: {group: cf.k8s.lex.la, kind: GatewayClassConfig, name: tunnel-config}
gateway_class_config:
  metadata: {name: tunnel-config, generation: 1, resourceVersion: "1"}
  spec:
    tunnelID: tunnel-123
    accountID: account-1
    cloudflareCredentialsSecretRef: {name: cf-credentials}
    cloudflared: {enabled: false}
gateway:
  metadata: {name: gw, namespace: ns, generation: 1, resourceVersion: "1"}
  spec:
    gatewayClassName: tunnel
    listeners:
      - {name: http, protocol: HTTP, port: 80}
"""


def api_error(status_code: int, reason: str = "NotFound") -> ApiError:
    request = httpx.Request("GET", "https://kubernetes.default.svc")
    response = httpx.Response(
        status_code,
        json={"kind": "Status", "code": status_code, "message": "error", "reason": reason},
        request=request,
    )
    return ApiError(request=request, response=response)


def not_found() -> ApiError:
    return api_error(404)


def encode(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


class FakeCRDManager:
    """In-memory stand-in for KubernetesCRDManager."""

    def __init__(self):
        self.objects = {}
        self.secrets = {}
        self.services = {}
        self.list_errors = {}
        self.status_writes = []

    def add(self, resource_type, data):
        obj = MODELS[resource_type].model_validate(data)
        self.objects[(resource_type, obj.metadata.namespace, obj.metadata.name)] = obj
        return obj

    def add_secret(self, name, namespace, data):
        self.secrets[(namespace, name)] = {key: encode(value) for key, value in data.items()}

    def add_service(self, name, namespace, service_type="ClusterIP", external_name=None):
        self.services[(namespace, name)] = SimpleNamespace(
            spec=SimpleNamespace(type=service_type, externalName=external_name)
        )

    def get_resource(self, resource_type, name, namespace=None):
        obj = self.objects.get((resource_type, namespace, name))
        return obj.model_copy(deep=True) if obj is not None else None

    def list_resources(self, resource_type, namespace="*"):
        if resource_type in self.list_errors:
            raise self.list_errors[resource_type]
        return [
            obj.model_copy(deep=True)
            for (kind, obj_namespace, _), obj in sorted(
                self.objects.items(), key=lambda item: (item[0][1] or "", item[0][2])
            )
            if kind == resource_type and namespace in ("*", obj_namespace)
        ]

    def get_secret_data(self, name, namespace):
        data = self.secrets.get((namespace, name))
        return dict(data) if data is not None else None

    def get_service(self, name, namespace):
        if (namespace, name) not in self.services:
            raise not_found()
        return self.services[(namespace, name)]

    def patch_status(self, resource_type, name, namespace, build_status, attempts=5):
        fresh = self.get_resource(resource_type, name, namespace)
        if fresh is None:
            return False
        status = build_status(fresh)
        if status is None:
            return False

        data = fresh.model_dump(exclude_none=True, by_alias=True)
        merged = data.get("status") or {}
        for key, value in status.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        data["status"] = merged
        self.add(resource_type, data)
        self.status_writes.append((resource_type, namespace, name, status))
        return True

    def status_of(self, resource_type, name, namespace=None):
        return self.objects[(resource_type, namespace, name)].status


class FakeTunnel:
    """In-memory stand-in for TunnelClient."""

    def __init__(self, rules=None, accounts=None):
        self.rules = list(rules or [])
        self.accounts = accounts if accounts is not None else [{"id": "account-1"}]
        self.updates = []
        self.get_error = None
        self.update_error = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None

    def get_configuration(self, account_id, tunnel_id):
        if self.get_error is not None:
            raise self.get_error
        return list(self.rules)

    def update_configuration(self, account_id, tunnel_id, rules):
        if self.update_error is not None:
            raise self.update_error
        self.rules = list(rules)
        self.updates.append(list(rules))

    def list_accounts(self):
        return self.accounts


def http_route(name, namespace="ns", hostnames=None, backend="svc", backend_namespace=None, **extra):
    """Return the dict of an HTTPRoute attached to ns/gw with one rule."""
    backend_ref = {"name": backend, "port": 80}
    if backend_namespace:
        backend_ref["namespace"] = backend_namespace
    data = {
        "metadata": {"name": name, "namespace": namespace, "generation": 1, "resourceVersion": "1"},
        "spec": {
            "parentRefs": [{"name": "gw", "namespace": "ns"}],
            "hostnames": hostnames if hostnames is not None else ["app.example.com"],
            "rules": [{"backendRefs": [backend_ref]}],
        },
    }
    data["spec"].update(extra)
    return data


@pytest.fixture(autouse=True)
def mock_lightkube_client():
    """Global mock for the Lightkube Client to avoid loading kubeconfig in CI."""
    with patch.object(Client, "__init__", lambda self, *args, **kwargs: None):
        with patch.object(Client, "_client", create=True):
            with patch.object(Client, "get"):
                with patch.object(Client, "patch"):
                    with patch.object(Client, "list"):
                        yield


@pytest.fixture()
def settings():
    return ControllerSettings(gateway_class_name="tunnel")


@pytest.fixture()
def cluster():
    """A cluster holding the tunnel GatewayClass, its config, credentials and Gateway ns/gw."""
    manager = FakeCRDManager()
    for resource_type, data in yaml.safe_load(BASE_OBJECTS).items():
        manager.add(resource_type, data)
    manager.add_secret("cf-credentials", "default", {"api-token": "token-abc\n"})
    manager.add_service("svc", "ns")
    return manager


@pytest.fixture()
def tunnel():
    return FakeTunnel()
