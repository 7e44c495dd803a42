#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Mapping of watch events on related objects to the route and gateway keys to reconcile."""

import logging
from typing import Callable, List, Tuple

from config_resolver import ConfigResolver, secret_matches_config
from ingress import RouteAdapter
from models import GatewayClassConfigResource, GatewayResource, Metadata
from route_syncer import ROUTE_RESOURCE_TYPES
from routebinding import KIND_GATEWAY
from utils import ConfigResolutionError

logger = logging.getLogger(__name__)

# (resource type, object key) pairs to enqueue.
Requests = List[Tuple[str, str]]
KeysFunc = Callable[[], Requests]


def routes_for_gateway(
    gateway: GatewayResource, gateway_class_name: str, routes: List[RouteAdapter]
) -> Requests:
    """Return the keys of the routes referencing a gateway of our class."""
    if gateway.spec.gatewayClassName != gateway_class_name:
        return []

    keys = []
    for route in routes:
        for ref in route.parent_refs:
            if ref.kind and ref.kind != KIND_GATEWAY:
                continue
            if ref.name == gateway.metadata.name and (
                ref.namespace or route.namespace
            ) == gateway.metadata.namespace:
                keys.append((ROUTE_RESOURCE_TYPES[route.kind], route.key))
                break
    return keys


def routes_for_reference_grant(grant_namespace: str, routes: List[RouteAdapter]) -> Requests:
    """Return the keys of the routes with backends in the namespace of a ReferenceGrant."""
    return [
        (ROUTE_RESOURCE_TYPES[route.kind], route.key)
        for route in routes
        if grant_namespace in route.backend_namespaces()
    ]


class ConfigMapper:
    """Decides whether GatewayClassConfig and Secret events concern our gateway class."""

    def __init__(
        self,
        crd_manager,
        config_resolver: ConfigResolver,
        gateway_class_name: str,
        default_namespace: str,
    ):
        self.crd_manager = crd_manager
        self.config_resolver = config_resolver
        self.gateway_class_name = gateway_class_name
        self.default_namespace = default_namespace

    def is_config_for_our_class(self, config: GatewayClassConfigResource) -> bool:
        gateway_class = self.crd_manager.get_resource("gateway_class", self.gateway_class_name)
        if gateway_class is None or gateway_class.spec.parametersRef is None:
            return False
        return gateway_class.spec.parametersRef.name == config.metadata.name

    def is_secret_referenced(self, secret: Metadata) -> bool:
        try:
            config = self.config_resolver.get_config_for_gateway_class_name(self.gateway_class_name)
        except ConfigResolutionError as e:
            logger.debug(f"Ignoring secret {secret.namespace}/{secret.name}: {e}")
            return False
        return secret_matches_config(
            secret.name, secret.namespace or "", config, self.default_namespace
        )

    def map_config(self, config: GatewayClassConfigResource, get_keys: KeysFunc) -> Requests:
        """Return ``get_keys()`` when the config belongs to our class, else nothing."""
        if not self.is_config_for_our_class(config):
            return []
        return get_keys()

    def map_secret(self, secret: Metadata, get_keys: KeysFunc) -> Requests:
        """Return ``get_keys()`` when our config reads the secret, else nothing."""
        if not self.is_secret_referenced(secret):
            return []
        return get_keys()
