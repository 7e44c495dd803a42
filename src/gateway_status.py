#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Status of Gateways and GatewayClasses handled by the controller."""

import logging
from typing import Dict, List, Optional

from ingress import RouteAdapter
from models import (
    GatewayClassResource,
    GatewayClassStatus,
    GatewayResource,
    GatewayStatus,
    GatewayStatusAddress,
    Listener,
    ListenerStatus,
)
from routebinding import (
    KIND_GATEWAY,
    BindingValidator,
    RouteInfo,
    filter_supported_kinds,
)
from utils import keep_transition_times, new_condition, truncate_message, utc_now

logger = logging.getLogger(__name__)

TUNNEL_ADDRESS_SUFFIX = ".cfargotunnel.com"

GATEWAY_ACCEPTED_MESSAGE = "Gateway accepted by cloudflare-tunnel controller"
GATEWAY_PROGRAMMED_MESSAGE = "Gateway programmed in Cloudflare Tunnel"
GATEWAY_CLASS_ACCEPTED_MESSAGE = "GatewayClass is accepted by cloudflare-tunnel controller"
SUPPORTED_VERSION_MESSAGE = "Gateway API CRD version is supported"
REFERENCES_RESOLVED_MESSAGE = "References resolved"
NO_SUPPORTED_KINDS_MESSAGE = "None of the specified route kinds are supported"
SOME_UNSUPPORTED_KINDS_MESSAGE = "One or more specified route kinds are not supported"


def tunnel_address(tunnel_id: str) -> str:
    """Return the hostname advertised for a tunnel."""
    return tunnel_id + TUNNEL_ADDRESS_SUFFIX


def count_attached_routes(
    gateway: GatewayResource,
    routes: List[RouteAdapter],
    validator: Optional[BindingValidator] = None,
) -> Dict[str, int]:
    """Count, per listener name, the routes bound to the gateway.

    Every accepted parent reference naming the gateway adds one to each listener it matched.
    """
    validator = validator or BindingValidator()
    gateway_name = gateway.metadata.name
    gateway_namespace = gateway.metadata.namespace
    counts = {listener.name: 0 for listener in gateway.spec.listeners}

    for route in routes:
        for ref in route.parent_refs:
            if ref.kind and ref.kind != KIND_GATEWAY:
                continue
            if ref.name != gateway_name or (ref.namespace or route.namespace) != gateway_namespace:
                continue

            result = validator.validate(
                gateway,
                RouteInfo(
                    name=route.name,
                    namespace=route.namespace,
                    hostnames=route.hostnames,
                    kind=route.kind,
                    section_name=ref.sectionName,
                ),
            )
            if not result["accepted"]:
                continue
            for listener_name in result["matched_listeners"]:
                counts[listener_name] = counts.get(listener_name, 0) + 1
    return counts


def _listener_status(
    listener: Listener, attached: int, generation: Optional[int], now: str
) -> ListenerStatus:
    supported, has_supported, has_invalid = filter_supported_kinds(
        listener.allowedRoutes, listener.protocol
    )
    if not has_supported:
        resolved_refs = new_condition(
            "ResolvedRefs", False, "InvalidRouteKinds", NO_SUPPORTED_KINDS_MESSAGE, generation, now
        )
    elif has_invalid:
        resolved_refs = new_condition(
            "ResolvedRefs", False, "InvalidRouteKinds", SOME_UNSUPPORTED_KINDS_MESSAGE, generation, now
        )
    else:
        resolved_refs = new_condition(
            "ResolvedRefs", True, "ResolvedRefs", REFERENCES_RESOLVED_MESSAGE, generation, now
        )

    return ListenerStatus(
        name=listener.name,
        supportedKinds=supported,
        attachedRoutes=attached,
        conditions=[
            new_condition("Accepted", True, "Accepted", "Listener accepted", generation, now),
            new_condition("Programmed", True, "Programmed", "Listener programmed", generation, now),
            resolved_refs,
        ],
    )


def build_gateway_status(
    gateway: GatewayResource, tunnel_id: str, attached_routes: Dict[str, int]
) -> dict:
    """Return the status of a gateway whose configuration resolved."""
    generation = gateway.metadata.generation
    now = utc_now()
    previous = gateway.status or GatewayStatus()
    previous_listeners = {status.name: status for status in previous.listeners or []}

    listeners = []
    for listener in gateway.spec.listeners:
        status = _listener_status(listener, attached_routes.get(listener.name, 0), generation, now)
        old = previous_listeners.get(listener.name)
        keep_transition_times(status.conditions, old.conditions if old is not None else None)
        listeners.append(status)

    conditions = keep_transition_times(
        [
            new_condition("Accepted", True, "Accepted", GATEWAY_ACCEPTED_MESSAGE, generation, now),
            new_condition("Programmed", True, "Programmed", GATEWAY_PROGRAMMED_MESSAGE, generation, now),
        ],
        previous.conditions,
    )
    status = GatewayStatus(
        addresses=[GatewayStatusAddress(type="Hostname", value=tunnel_address(tunnel_id))],
        conditions=conditions,
        listeners=listeners,
    )
    return status.model_dump(exclude_none=True)


def build_config_error_status(gateway: GatewayResource, error: Exception) -> dict:
    """Return the status of a gateway whose GatewayClassConfig could not be resolved.

    Addresses and listener statuses are cleared since no tunnel backs the gateway.
    """
    generation = gateway.metadata.generation
    now = utc_now()
    message = truncate_message(f"Failed to resolve GatewayClassConfig: {error}")
    previous = gateway.status.conditions if gateway.status is not None else None

    conditions = keep_transition_times(
        [
            new_condition("Accepted", False, "InvalidParameters", message, generation, now),
            new_condition("Programmed", False, "Invalid", message, generation, now),
        ],
        previous,
    )
    # Explicit nulls remove the fields under a merge patch.
    return {
        "addresses": None,
        "conditions": [condition.model_dump(exclude_none=True) for condition in conditions],
        "listeners": None,
    }


def build_gateway_class_status(gateway_class: GatewayClassResource) -> dict:
    """Return the status of a GatewayClass owned by the controller.

    Conditions of other types already present are kept.
    """
    generation = gateway_class.metadata.generation
    now = utc_now()
    previous = gateway_class.status.conditions if gateway_class.status is not None else []

    ours = keep_transition_times(
        [
            new_condition("Accepted", True, "Accepted", GATEWAY_CLASS_ACCEPTED_MESSAGE, generation, now),
            new_condition(
                "SupportedVersion", True, "SupportedVersion", SUPPORTED_VERSION_MESSAGE, generation, now
            ),
        ],
        previous,
    )
    types = {condition.type for condition in ours}
    others = [condition for condition in previous if condition.type not in types]
    return GatewayClassStatus(conditions=others + ours).model_dump(exclude_none=True)
