#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""This module defines Pydantic schemas for the Gateway API and tunnel resources handled by the controller."""
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

GATEWAY_API_GROUP = "gateway.networking.k8s.io"
CONFIG_API_GROUP = "cf.k8s.lex.la"
CATCH_ALL_SERVICE = "http_status:404"


# Global metadata schema
class Metadata(BaseModel):
    """Global metadata schema for Kubernetes resources."""

    name: str
    namespace: Optional[str] = None
    generation: Optional[int] = None
    resourceVersion: Optional[str] = None  # noqa: N815
    labels: Optional[Dict[str, str]] = None
    annotations: Optional[Dict[str, str]] = None


class Condition(BaseModel):
    """Condition follows the metav1.Condition shape used by all Gateway API statuses."""

    type: str
    status: str
    reason: str
    message: str = ""
    observedGeneration: Optional[int] = None  # noqa: N815
    lastTransitionTime: Optional[str] = None  # noqa: N815


# Gateway schema
class FromNamespaces(str, Enum):
    """FromNamespaces is the namespace isolation policy of a listener."""

    All = "All"
    Same = "Same"
    Selector = "Selector"


class RouteNamespaces(BaseModel):
    """RouteNamespaces defines the namespaces from which routes may attach."""

    from_: FromNamespaces = Field(default=FromNamespaces.Same, alias="from")
    selector: Optional[Dict[str, Any]] = None
    model_config = ConfigDict(populate_by_name=True)


class RouteGroupKind(BaseModel):
    """RouteGroupKind identifies a route kind, with an empty group meaning the Gateway API group."""

    group: Optional[str] = None
    kind: str


class AllowedRoutes(BaseModel):
    """AllowedRoutes defines which routes may bind to a listener."""

    namespaces: Optional[RouteNamespaces] = None
    kinds: Optional[List[RouteGroupKind]] = None


class Listener(BaseModel):
    """Listener defines a port and protocol configuration."""

    name: str
    protocol: str
    port: Optional[int] = None
    hostname: Optional[str] = None
    allowedRoutes: Optional[AllowedRoutes] = None  # noqa: N815


class GatewaySpec(BaseModel):
    """GatewaySpec defines the specification of a gateway."""

    gatewayClassName: str  # noqa: N815
    listeners: List[Listener] = []


class GatewayStatusAddress(BaseModel):
    """GatewayStatusAddress is an address advertised by the gateway."""

    type: str = "Hostname"
    value: str


class ListenerStatus(BaseModel):
    """ListenerStatus reports the state of a single listener."""

    name: str
    supportedKinds: List[RouteGroupKind] = []  # noqa: N815
    attachedRoutes: int = 0  # noqa: N815
    conditions: List[Condition] = []


class GatewayStatus(BaseModel):
    """GatewayStatus is written to the status subresource of a Gateway."""

    addresses: Optional[List[GatewayStatusAddress]] = None
    conditions: List[Condition] = []
    listeners: Optional[List[ListenerStatus]] = None


class GatewayResource(BaseModel):
    """GatewayResource defines the structure of a Gateway Kubernetes resource."""

    metadata: Metadata
    spec: GatewaySpec
    status: Optional[GatewayStatus] = None


# GatewayClass schema
class ParametersReference(BaseModel):
    """ParametersReference points a GatewayClass at its configuration object."""

    group: str
    kind: str
    name: str
    namespace: Optional[str] = None


class GatewayClassSpec(BaseModel):
    """GatewayClassSpec defines the controller owning a class and its parameters."""

    controllerName: str  # noqa: N815
    parametersRef: Optional[ParametersReference] = None  # noqa: N815


class GatewayClassStatus(BaseModel):
    """GatewayClassStatus is written to the status subresource of a GatewayClass."""

    conditions: List[Condition] = []


class GatewayClassResource(BaseModel):
    """GatewayClassResource defines the structure of a GatewayClass Kubernetes resource."""

    metadata: Metadata
    spec: GatewayClassSpec
    status: Optional[GatewayClassStatus] = None


# Route schemas shared by HTTPRoute and GRPCRoute
class ParentReference(BaseModel):
    """ParentReference specifies the parent gateway resource for a route."""

    group: Optional[str] = None
    kind: Optional[str] = None
    name: str
    namespace: Optional[str] = None
    sectionName: Optional[str] = None  # noqa: N815
    port: Optional[int] = None


class BackendRef(BaseModel):
    """BackendRef specifies the backend service reference that traffic will be routed to."""

    group: Optional[str] = None
    kind: Optional[str] = None
    name: str
    namespace: Optional[str] = None
    port: Optional[int] = None
    weight: Optional[int] = None
    filters: Optional[List[Dict[str, Any]]] = None


class RouteParentStatus(BaseModel):
    """RouteParentStatus reports the binding state of a route for one parent reference."""

    parentRef: ParentReference  # noqa: N815
    controllerName: str  # noqa: N815
    conditions: List[Condition] = []


class RouteStatus(BaseModel):
    """RouteStatus is written to the status subresource of an HTTPRoute or GRPCRoute."""

    parents: List[RouteParentStatus] = []


# HTTPRoute schema
class PathMatchType(str, Enum):
    """PathMatchType defines the semantics of an HTTP path match."""

    Exact = "Exact"
    PathPrefix = "PathPrefix"
    RegularExpression = "RegularExpression"


class HTTPPathMatch(BaseModel):
    """HTTPPathMatch defines the type and value of path matching."""

    type: PathMatchType = PathMatchType.PathPrefix
    value: str = "/"


class HTTPRouteMatch(BaseModel):
    """HTTPRouteMatch defines the request matching configuration."""

    path: Optional[HTTPPathMatch] = None
    headers: Optional[List[Dict[str, Any]]] = None
    queryParams: Optional[List[Dict[str, Any]]] = None  # noqa: N815
    method: Optional[str] = None


class HTTPRouteRule(BaseModel):
    """HTTPRouteRule defines the routing rule configuration."""

    matches: Optional[List[HTTPRouteMatch]] = None
    filters: Optional[List[Dict[str, Any]]] = None
    backendRefs: Optional[List[BackendRef]] = None  # noqa: N815


class HTTPRouteSpec(BaseModel):
    """HTTPRouteSpec defines the specification of an HTTPRoute Kubernetes resource."""

    parentRefs: List[ParentReference] = []  # noqa: N815
    hostnames: List[str] = []
    rules: List[HTTPRouteRule] = []


class HTTPRouteResource(BaseModel):
    """HTTPRouteResource defines the structure of an HTTPRoute Kubernetes resource."""

    metadata: Metadata
    spec: HTTPRouteSpec
    status: Optional[RouteStatus] = None


# GRPCRoute schema
class GRPCMethodMatch(BaseModel):
    """GRPCMethodMatch selects requests by gRPC service and method."""

    type: str = "Exact"
    service: Optional[str] = None
    method: Optional[str] = None


class GRPCRouteMatch(BaseModel):
    """GRPCRouteMatch defines the request matching configuration of a GRPCRoute."""

    method: Optional[GRPCMethodMatch] = None
    headers: Optional[List[Dict[str, Any]]] = None


class GRPCRouteRule(BaseModel):
    """GRPCRouteRule defines the routing rule configuration of a GRPCRoute."""

    matches: Optional[List[GRPCRouteMatch]] = None
    filters: Optional[List[Dict[str, Any]]] = None
    backendRefs: Optional[List[BackendRef]] = None  # noqa: N815


class GRPCRouteSpec(BaseModel):
    """GRPCRouteSpec defines the specification of a GRPCRoute Kubernetes resource."""

    parentRefs: List[ParentReference] = []  # noqa: N815
    hostnames: List[str] = []
    rules: List[GRPCRouteRule] = []


class GRPCRouteResource(BaseModel):
    """GRPCRouteResource defines the structure of a GRPCRoute Kubernetes resource."""

    metadata: Metadata
    spec: GRPCRouteSpec
    status: Optional[RouteStatus] = None


# ReferenceGrant schema
class ReferenceGrantFrom(BaseModel):
    """ReferenceGrantFrom describes a trusted origin namespace and kind."""

    group: str = ""
    kind: str
    namespace: str


class ReferenceGrantTo(BaseModel):
    """ReferenceGrantTo describes what kinds of objects may be referenced."""

    group: str = ""
    kind: str
    name: Optional[str] = None


class ReferenceGrantSpec(BaseModel):
    """ReferenceGrantSpec lists the permitted (from, to) reference pairs."""

    from_: List[ReferenceGrantFrom] = Field(default=[], alias="from")
    to: List[ReferenceGrantTo] = []
    # Allows building specs with `from_=` as well as from a dict carrying the reserved `from` key.
    model_config = ConfigDict(populate_by_name=True)


class ReferenceGrantResource(BaseModel):
    """ReferenceGrantResource defines the structure of a ReferenceGrant Kubernetes resource."""

    metadata: Metadata
    spec: ReferenceGrantSpec


# GatewayClassConfig schema
class SecretKeyReference(BaseModel):
    """SecretKeyReference points at a single key of a Kubernetes secret."""

    name: str
    namespace: Optional[str] = None
    key: Optional[str] = None


class CloudflaredConfig(BaseModel):
    """CloudflaredConfig holds the tunnel daemon deployment flags."""

    enabled: bool = True
    replicas: int = 1
    namespace: str = "cloudflare-tunnel-system"
    protocol: Optional[str] = None


class GatewayClassConfigSpec(BaseModel):
    """GatewayClassConfigSpec defines the credentials and tunnel identity for a gateway class."""

    cloudflareCredentialsSecretRef: SecretKeyReference  # noqa: N815
    tunnelID: str  # noqa: N815
    accountID: Optional[str] = None  # noqa: N815
    tunnelTokenSecretRef: Optional[SecretKeyReference] = None  # noqa: N815
    cloudflared: CloudflaredConfig = CloudflaredConfig()


class GatewayClassConfigResource(BaseModel):
    """GatewayClassConfigResource defines the structure of a GatewayClassConfig Kubernetes resource."""

    metadata: Metadata
    spec: GatewayClassConfigSpec


# Tunnel ingress schema
class IngressRule(BaseModel):
    """IngressRule is a single entry of the tunnel's ordered ingress list."""

    hostname: Optional[str] = None
    path: Optional[str] = None
    service: str
    originRequest: Optional[Dict[str, Any]] = None  # noqa: N815

    @property
    def is_catch_all(self) -> bool:
        """Return True for the terminal rule rejecting unmatched traffic."""
        return not self.hostname and not self.path and self.service == CATCH_ALL_SERVICE

    def key(self) -> Tuple[str, str, str]:
        """Return the identity used when comparing remote and desired rules."""
        return (self.hostname or "", self.path or "", self.service)

    def to_api(self) -> Dict[str, Any]:
        """Export the rule for the tunnel configuration API."""
        # None means "unset" for the tunnel API, so it must not be sent.
        return self.model_dump(exclude_none=True)


def catch_all_rule() -> IngressRule:
    """Return a fresh catch-all rule."""
    return IngressRule(service=CATCH_ALL_SERVICE)
