#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Route to Gateway binding rules.

A route binds to a Gateway through its parent references. Each reference is checked against the
listeners of the Gateway in the following order:

1. the listener named by ``sectionName``, or every listener when no section is given;
2. route kind admission, from the listener's explicit kinds or its protocol defaults;
3. the listener namespace policy (``All``, ``Same`` or ``Selector``);
4. hostname intersection between the route hostnames and the listener hostname.

The first failing step decides the rejection reason.
"""

import logging
from enum import Enum
from typing import List, Optional, Tuple, TypedDict

from models import (
    GATEWAY_API_GROUP,
    AllowedRoutes,
    FromNamespaces,
    GatewayResource,
    Listener,
    RouteGroupKind,
)

logger = logging.getLogger(__name__)

KIND_GATEWAY = "Gateway"
KIND_HTTP_ROUTE = "HTTPRoute"
KIND_GRPC_ROUTE = "GRPCRoute"
KIND_TLS_ROUTE = "TLSRoute"
KIND_TCP_ROUTE = "TCPRoute"
KIND_UDP_ROUTE = "UDPRoute"

SUPPORTED_ROUTE_KINDS = (KIND_HTTP_ROUTE, KIND_GRPC_ROUTE)

_PROTOCOL_DEFAULT_KINDS = {
    "HTTP": (KIND_HTTP_ROUTE, KIND_GRPC_ROUTE),
    "HTTPS": (KIND_HTTP_ROUTE, KIND_GRPC_ROUTE),
    "TLS": (KIND_TLS_ROUTE,),
    "TCP": (KIND_TCP_ROUTE,),
    "UDP": (KIND_UDP_ROUTE,),
}


class BindingReason(str, Enum):
    """BindingReason is the reason code reported on the route Accepted condition."""

    Accepted = "Accepted"
    NotAllowedByListeners = "NotAllowedByListeners"
    NoMatchingListenerHostname = "NoMatchingListenerHostname"
    NoMatchingParent = "NoMatchingParent"


class RouteInfo(TypedDict):
    """Class to hold the parts of a route relevant to binding."""

    name: str
    namespace: str
    hostnames: List[str]
    kind: str
    section_name: Optional[str]


class BindingResult(TypedDict):
    """Outcome of binding one parent reference of a route to a Gateway."""

    accepted: bool
    reason: BindingReason
    message: str
    matched_listeners: List[str]


def _rejected(reason: BindingReason, message: str) -> BindingResult:
    return BindingResult(accepted=False, reason=reason, message=message, matched_listeners=[])


# ============================================================================
# Kind admission
# ============================================================================
def get_allowed_kinds(
    allowed_routes: Optional[AllowedRoutes], protocol: str
) -> Tuple[List[RouteGroupKind], bool]:
    """Return the route kinds a listener admits and whether they were listed explicitly.

    Listeners without an explicit kind list fall back to the defaults of their protocol. Unknown
    protocols are treated like HTTP.
    """
    if allowed_routes is not None and allowed_routes.kinds:
        return list(allowed_routes.kinds), True

    kinds = _PROTOCOL_DEFAULT_KINDS.get(protocol, (KIND_HTTP_ROUTE, KIND_GRPC_ROUTE))
    return [RouteGroupKind(group=GATEWAY_API_GROUP, kind=kind) for kind in kinds], False


def _kind_group(kind: RouteGroupKind) -> str:
    return kind.group or GATEWAY_API_GROUP


def is_route_kind_allowed(
    allowed_routes: Optional[AllowedRoutes], protocol: str, route_kind: str
) -> bool:
    """Check if a route kind may bind to a listener."""
    kinds, _ = get_allowed_kinds(allowed_routes, protocol)
    return any(
        kind.kind == route_kind and _kind_group(kind) == GATEWAY_API_GROUP for kind in kinds
    )


def filter_supported_kinds(
    allowed_routes: Optional[AllowedRoutes], protocol: str
) -> Tuple[List[RouteGroupKind], bool, bool]:
    """Filter a listener's kinds down to the ones this controller can program.

    Returns:
        Tuple[List[RouteGroupKind], bool, bool]: the supported kinds, whether at least one kind is
        supported, and whether an explicitly listed kind was rejected. Protocol defaults never
        count as rejected.
    """
    kinds, explicit = get_allowed_kinds(allowed_routes, protocol)
    supported = []
    has_invalid = False
    for kind in kinds:
        if _kind_group(kind) == GATEWAY_API_GROUP and kind.kind in SUPPORTED_ROUTE_KINDS:
            supported.append(kind)
        elif explicit:
            has_invalid = True
    return supported, bool(supported), has_invalid


# ============================================================================
# Hostnames
# ============================================================================
def _wildcard_matches(wildcard: str, hostname: str) -> bool:
    # "*.example.com" matches "a.example.com" and "a.b.example.com", never "example.com".
    return hostname.endswith(wildcard[1:])


def hostnames_intersect(first: str, second: str) -> bool:
    """Check whether two hostnames, either of which may be a wildcard, can match the same host."""
    first = first.lower()
    second = second.lower()
    if first == second:
        return True

    first_wild = first.startswith("*.")
    second_wild = second.startswith("*.")
    if first_wild and second_wild:
        return first[1:].endswith(second[1:]) or second[1:].endswith(first[1:])
    if first_wild:
        return _wildcard_matches(first, second)
    if second_wild:
        return _wildcard_matches(second, first)
    return False


def listener_hostname_matches(listener_hostname: Optional[str], route_hostnames: List[str]) -> bool:
    """Check whether any route hostname intersects the listener hostname.

    Routes without hostnames and listeners without a hostname match everything.
    """
    if not route_hostnames or not listener_hostname:
        return True
    return any(hostnames_intersect(listener_hostname, host) for host in route_hostnames)


# ============================================================================
# Namespaces
# ============================================================================
def is_namespace_allowed(listener: Listener, gateway_namespace: str, route_namespace: str) -> bool:
    """Apply the listener namespace policy.

    ``Selector`` is not evaluated against namespace labels; it only admits routes from the
    gateway's own namespace.
    """
    policy = FromNamespaces.Same
    if listener.allowedRoutes is not None and listener.allowedRoutes.namespaces is not None:
        policy = listener.allowedRoutes.namespaces.from_

    if policy == FromNamespaces.All:
        return True
    if policy == FromNamespaces.Selector:
        logger.debug(
            "Listener %s uses a namespace selector, only admitting namespace %s",
            listener.name,
            gateway_namespace,
        )
    return route_namespace == gateway_namespace


# ============================================================================
# Validator
# ============================================================================
class BindingValidator:
    """Validates route bindings against the listeners of a Gateway."""

    def validate(self, gateway: GatewayResource, route_info: RouteInfo) -> BindingResult:
        """Decide whether a route's parent reference binds to the gateway.

        Args:
            gateway (GatewayResource): The referenced gateway.
            route_info (RouteInfo): The route name, namespace, hostnames, kind and the sectionName of the reference.

        Returns:
            BindingResult: Accepted with the names of the matched listeners, or the first rejection reason.
        """
        gateway_ref = f"{gateway.metadata.namespace}/{gateway.metadata.name}"
        candidates = list(gateway.spec.listeners)

        section_name = route_info["section_name"]
        if section_name:
            candidates = [listener for listener in candidates if listener.name == section_name]
            if not candidates:
                return _rejected(
                    BindingReason.NoMatchingParent,
                    f"Listener {section_name} not found on Gateway {gateway_ref}",
                )

        kind = route_info["kind"]
        kind_allowed = [
            listener
            for listener in candidates
            if is_route_kind_allowed(listener.allowedRoutes, listener.protocol, kind)
        ]
        if not kind_allowed:
            only_unsupported = all(
                not filter_supported_kinds(listener.allowedRoutes, listener.protocol)[1]
                and get_allowed_kinds(listener.allowedRoutes, listener.protocol)[1]
                for listener in candidates
            )
            if only_unsupported:
                message = "Listeners only allow route kinds that are not supported by this controller"
            else:
                message = f"Route kind {kind} is not allowed by any listener of Gateway {gateway_ref}"
            return _rejected(BindingReason.NotAllowedByListeners, message)

        namespace = route_info["namespace"]
        namespace_allowed = [
            listener
            for listener in kind_allowed
            if is_namespace_allowed(listener, gateway.metadata.namespace or "", namespace)
        ]
        if not namespace_allowed:
            return _rejected(
                BindingReason.NotAllowedByListeners,
                f"Route namespace {namespace} is not allowed by the listeners of Gateway {gateway_ref}",
            )

        hostnames = route_info["hostnames"]
        matched = [
            listener
            for listener in namespace_allowed
            if listener_hostname_matches(listener.hostname, hostnames)
        ]
        if not matched:
            return _rejected(
                BindingReason.NoMatchingListenerHostname,
                f"No listener hostname of Gateway {gateway_ref} matches {', '.join(hostnames)}",
            )

        return BindingResult(
            accepted=True,
            reason=BindingReason.Accepted,
            message="Route accepted",
            matched_listeners=[listener.name for listener in matched],
        )
