#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Full synchronization of HTTPRoutes and GRPCRoutes into the tunnel configuration."""

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple, TypedDict

from lightkube.core.exceptions import ApiError

from config_resolver import ConfigResolver, ResolvedConfig
from ingress import (
    MAX_INGRESS_RULES,
    REASON_BACKEND_NOT_FOUND,
    REASON_REF_NOT_PERMITTED,
    BackendRefError,
    GRPCRouteAdapter,
    HTTPRouteAdapter,
    RouteAdapter,
    RuleBuilder,
    ServiceResolver,
    adapt_route,
    exceeds_rule_limit,
    reconcile_rules,
)
from models import (
    GATEWAY_API_GROUP,
    GatewayResource,
    IngressRule,
    ParentReference,
    RouteParentStatus,
    RouteStatus,
)
from referencegrant import ReferenceGrantAuthorizer
from routebinding import KIND_GATEWAY, KIND_GRPC_ROUTE, BindingResult, BindingValidator, RouteInfo
from settings import ControllerSettings
from tunnel_client import TunnelAPIError, TunnelClient, classify_error
from utils import (
    ConfigResolutionError,
    RuleLimitExceededError,
    keep_transition_times,
    new_condition,
    utc_now,
)

logger = logging.getLogger(__name__)

API_ERROR_REQUEUE_DELAY = 15.0

ROUTE_ACCEPTED_MESSAGE = "Route accepted and programmed in Cloudflare Tunnel"
RESOLVED_REFS_MESSAGE = "All references resolved"

REASON_ACCEPTED = "Accepted"
REASON_PENDING = "Pending"
REASON_RESOLVED_REFS = "ResolvedRefs"
REASON_RULE_LIMIT_EXCEEDED = "RuleLimitExceeded"

ROUTE_RESOURCE_TYPES = {
    HTTPRouteAdapter.kind: "http_route",
    GRPCRouteAdapter.kind: "grpc_route",
}

GatewayCache = Dict[Tuple[str, str], Optional[GatewayResource]]


class RouteBindings(TypedDict):
    """A route referencing at least one Gateway of our class, with its binding results by parentRef index."""

    adapter: RouteAdapter
    bindings: Dict[int, BindingResult]


class SyncResult(TypedDict):
    """Outcome of one sync pass."""

    routes: List[RouteBindings]
    failed_refs: List[BackendRefError]
    rules: List[IngressRule]
    error: Optional[Exception]
    requeue_after: Optional[float]


def _empty_result(error: Optional[Exception] = None, requeue_after: Optional[float] = None) -> SyncResult:
    return SyncResult(routes=[], failed_refs=[], rules=[], error=error, requeue_after=requeue_after)


def is_route_accepted(route: RouteBindings) -> bool:
    """Return True if any parent reference of the route was accepted."""
    return any(result["accepted"] for result in route["bindings"].values())


class RouteSyncer:
    """Synchronizes every route bound to our Gateways into the tunnel in one pass.

    Passes run one at a time. Every pass re-resolves the configuration, re-reads the remote rules
    and rebuilds the whole rule list; nothing is carried over between passes.
    """

    def __init__(
        self,
        crd_manager,
        config_resolver: ConfigResolver,
        settings: ControllerSettings,
        tunnel_client_factory: Optional[Callable[[str], TunnelClient]] = None,
    ):
        self.crd_manager = crd_manager
        self.config_resolver = config_resolver
        self.settings = settings
        self.tunnel_client_factory = tunnel_client_factory or self._default_tunnel_client
        self.validator = BindingValidator()
        self.authorizer = ReferenceGrantAuthorizer(crd_manager)
        self.builder = RuleBuilder(
            self.authorizer,
            ServiceResolver(settings.cluster_domain, crd_manager.get_service),
        )
        self._lock = threading.Lock()

    def _default_tunnel_client(self, api_token: str) -> TunnelClient:
        return TunnelClient(
            api_token,
            base_url=self.settings.cloudflare_api_url,
            timeout=self.settings.api_timeout,
        )

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------
    def parent_gateway(
        self, ref: ParentReference, route_namespace: str, gateways: Optional[GatewayCache] = None
    ) -> Optional[GatewayResource]:
        """Return the Gateway of our class a parent reference points to, if any."""
        if ref.kind and ref.kind != KIND_GATEWAY:
            return None
        if ref.group and ref.group != GATEWAY_API_GROUP:
            return None

        key = (ref.namespace or route_namespace, ref.name)
        if gateways is not None and key in gateways:
            gateway = gateways[key]
        else:
            gateway = self.crd_manager.get_resource("gateway", key[1], key[0])
            if gateways is not None:
                gateways[key] = gateway

        if gateway is None or gateway.spec.gatewayClassName != self.settings.gateway_class_name:
            return None
        return gateway

    def bind_route(
        self, adapter: RouteAdapter, gateways: Optional[GatewayCache] = None
    ) -> Dict[int, BindingResult]:
        """Validate every parent reference of a route that targets one of our Gateways."""
        results: Dict[int, BindingResult] = {}
        for index, ref in enumerate(adapter.parent_refs):
            gateway = self.parent_gateway(ref, adapter.namespace, gateways)
            if gateway is None:
                continue
            results[index] = self.validator.validate(
                gateway,
                RouteInfo(
                    name=adapter.name,
                    namespace=adapter.namespace,
                    hostnames=adapter.hostnames,
                    kind=adapter.kind,
                    section_name=ref.sectionName,
                ),
            )
            if not results[index]["accepted"]:
                logger.debug(
                    f"{adapter.kind} {adapter.key} not accepted by Gateway "
                    f"{gateway.metadata.namespace}/{gateway.metadata.name}: {results[index]['message']}"
                )
        return results

    def collect_routes(self, gateways: Optional[GatewayCache] = None) -> List[RouteBindings]:
        """List HTTPRoutes then GRPCRoutes and bind those referencing our Gateways.

        Raises:
            ApiError: if the routes cannot be listed.
        """
        gateways = {} if gateways is None else gateways
        collected = []
        for resource_type in ("http_route", "grpc_route"):
            for route in self.crd_manager.list_resources(resource_type):
                adapter = adapt_route(route)
                bindings = self.bind_route(adapter, gateways)
                if bindings:
                    collected.append(RouteBindings(adapter=adapter, bindings=bindings))
        return collected

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------
    def sync_all_routes(self) -> SyncResult:
        """Run one full sync pass.

        Returns:
            SyncResult: the routes considered, the rules computed, and the error of the pass with
            the delay after which it should be retried.
        """
        with self._lock:
            return self._sync_all_routes()

    def _sync_all_routes(self) -> SyncResult:
        self.authorizer.reset()

        try:
            config = self.config_resolver.resolve_from_gateway_class_name(
                self.settings.gateway_class_name
            )
        except ConfigResolutionError as e:
            logger.error(f"Failed to resolve config from GatewayClassConfig: {e}")
            return _empty_result(e, API_ERROR_REQUEUE_DELAY)

        try:
            routes = self.collect_routes()
        except ApiError as e:
            logger.error(f"Failed to list routes: {e}")
            return _empty_result(e, API_ERROR_REQUEUE_DELAY)

        accepted = [route["adapter"] for route in routes if is_route_accepted(route)]
        http_adapters = [adapter for adapter in accepted if adapter.kind != KIND_GRPC_ROUTE]
        grpc_adapters = [adapter for adapter in accepted if adapter.kind == KIND_GRPC_ROUTE]
        logger.info(
            f"Syncing routes to the tunnel: {len(http_adapters)} HTTPRoutes, {len(grpc_adapters)} GRPCRoutes"
        )

        # HTTP rules first, then gRPC; the builder sorts the merged list.
        build = self.builder.build(http_adapters + grpc_adapters)
        result = SyncResult(
            routes=routes,
            failed_refs=build["failed_refs"],
            rules=build["rules"],
            error=None,
            requeue_after=None,
        )

        with self.tunnel_client_factory(config["api_token"]) as tunnel:
            return self._apply(tunnel, config, result)

    def _apply(self, tunnel: TunnelClient, config: ResolvedConfig, result: SyncResult) -> SyncResult:
        try:
            account_id = self.config_resolver.resolve_account_id(tunnel, config)
            current = tunnel.get_configuration(account_id, config["tunnel_id"])
        except (ConfigResolutionError, TunnelAPIError) as e:
            logger.error(
                f"Failed to get current tunnel configuration ({classify_error(e)}): {e}"
            )
            result["error"] = e
            result["requeue_after"] = API_ERROR_REQUEUE_DELAY
            return result

        reconciled = reconcile_rules(current, result["rules"])
        final_rules = reconciled["final_rules"]
        result["rules"] = final_rules

        if exceeds_rule_limit(final_rules):
            # Retrying cannot help until routes are removed, so no requeue.
            error = RuleLimitExceededError(len(final_rules), MAX_INGRESS_RULES)
            logger.error(f"Not updating tunnel {config['tunnel_id']}: {error}")
            result["error"] = error
            return result

        try:
            tunnel.update_configuration(account_id, config["tunnel_id"], final_rules)
        except TunnelAPIError as e:
            logger.error(f"Failed to update tunnel configuration ({e.error_type}): {e}")
            result["error"] = e
            result["requeue_after"] = API_ERROR_REQUEUE_DELAY
            return result

        logger.info(f"Updated tunnel {config['tunnel_id']} configuration with {len(final_rules)} rules")
        return result

    def sync_and_update_status(self) -> SyncResult:
        """Run a sync pass and write the resulting status of every route it considered."""
        result = self.sync_all_routes()
        self.update_route_statuses(result)
        return result

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def update_route_statuses(self, result: SyncResult) -> None:
        """Write the status of every route of a sync pass; failed writes are logged."""
        gateways: GatewayCache = {}
        for route in result["routes"]:
            adapter = route["adapter"]
            failed = [
                ref
                for ref in result["failed_refs"]
                if ref["route_kind"] == adapter.kind
                and ref["route_namespace"] == adapter.namespace
                and ref["route_name"] == adapter.name
            ]
            try:
                self.crd_manager.patch_status(
                    ROUTE_RESOURCE_TYPES[adapter.kind],
                    adapter.name,
                    adapter.namespace,
                    lambda fresh, bindings=route["bindings"], failed=failed: self.build_route_status(
                        fresh, bindings, failed, result["error"], gateways
                    ),
                )
            except ApiError as e:
                logger.error(f"Failed to update {adapter.kind} {adapter.key} status: {e}")

    def build_route_status(
        self,
        fresh_route,
        bindings: Dict[int, BindingResult],
        failed_refs: List[BackendRefError],
        sync_error: Optional[Exception],
        gateways: Optional[GatewayCache] = None,
    ) -> Optional[dict]:
        """Compute the status of a freshly read route.

        Returns:
            Optional[dict]: the status to write, or None when no parent references one of our Gateways.
        """
        adapter = adapt_route(fresh_route)
        generation = fresh_route.metadata.generation
        now = utc_now()
        previous = {}
        foreign: List[RouteParentStatus] = []
        if fresh_route.status is not None:
            for parent in fresh_route.status.parents:
                if parent.controllerName != self.settings.controller_name:
                    foreign.append(parent)
                    continue
                ref = parent.parentRef
                previous[(ref.namespace, ref.name, ref.sectionName)] = parent

        resolved_refs = self._resolved_refs_condition(failed_refs, generation, now)

        parents = []
        for index, ref in enumerate(adapter.parent_refs):
            gateway = self.parent_gateway(ref, adapter.namespace, gateways)
            if gateway is None:
                continue

            binding = bindings.get(index)
            if binding is None:
                # The parent reference was added after the pass listed the route.
                binding = self.validator.validate(
                    gateway,
                    RouteInfo(
                        name=adapter.name,
                        namespace=adapter.namespace,
                        hostnames=adapter.hostnames,
                        kind=adapter.kind,
                        section_name=ref.sectionName,
                    ),
                )

            if not binding["accepted"]:
                accepted = new_condition(
                    "Accepted", False, binding["reason"].value, binding["message"], generation, now
                )
            elif isinstance(sync_error, RuleLimitExceededError):
                accepted = new_condition(
                    "Accepted", False, REASON_RULE_LIMIT_EXCEEDED, str(sync_error), generation, now
                )
            elif sync_error is not None:
                accepted = new_condition(
                    "Accepted", False, REASON_PENDING, str(sync_error), generation, now
                )
            else:
                accepted = new_condition(
                    "Accepted", True, REASON_ACCEPTED, ROUTE_ACCEPTED_MESSAGE, generation, now
                )

            namespace = ref.namespace or adapter.namespace
            parent_ref = ParentReference(
                group=ref.group,
                kind=ref.kind,
                name=ref.name,
                namespace=namespace,
                sectionName=ref.sectionName,
                port=ref.port,
            )
            old = previous.get((namespace, ref.name, ref.sectionName))
            conditions = keep_transition_times(
                [accepted, resolved_refs.model_copy()],
                old.conditions if old is not None else None,
            )
            parents.append(
                RouteParentStatus(
                    parentRef=parent_ref,
                    controllerName=self.settings.controller_name,
                    conditions=conditions,
                )
            )

        if not parents:
            return None
        return RouteStatus(parents=foreign + parents).model_dump(exclude_none=True, by_alias=True)

    @staticmethod
    def _resolved_refs_condition(failed_refs: List[BackendRefError], generation, now):
        if not failed_refs:
            return new_condition(
                "ResolvedRefs", True, REASON_RESOLVED_REFS, RESOLVED_REFS_MESSAGE, generation, now
            )

        denied = [
            f"{ref['backend_namespace']}/{ref['backend_name']}"
            for ref in failed_refs
            if ref["reason"] == REASON_REF_NOT_PERMITTED
        ]
        missing = [
            f"{ref['backend_namespace']}/{ref['backend_name']}"
            for ref in failed_refs
            if ref["reason"] != REASON_REF_NOT_PERMITTED
        ]
        messages = []
        if denied:
            messages.append("Backend references not permitted: " + ", ".join(denied))
        if missing:
            messages.append("Backend references not found: " + ", ".join(missing))
        reason = REASON_REF_NOT_PERMITTED if denied else REASON_BACKEND_NOT_FOUND
        return new_condition("ResolvedRefs", False, reason, "; ".join(messages), generation, now)
