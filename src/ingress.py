#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Conversion of accepted routes into the tunnel's ordered ingress rule list.

HTTPRoutes and GRPCRoutes are wrapped in adapters exposing the same capabilities, so a single
`RuleBuilder` handles both. The produced list always ends with exactly one catch-all rule.
"""

import logging
from typing import Callable, List, Optional, Set, Tuple, TypedDict, Union

from lightkube.core.exceptions import ApiError

from lightkube_helpers import is_not_found
from models import (
    GATEWAY_API_GROUP,
    BackendRef,
    GRPCRouteResource,
    GRPCRouteRule,
    HTTPRouteResource,
    HTTPRouteRule,
    IngressRule,
    ParentReference,
    PathMatchType,
    catch_all_rule,
)
from referencegrant import Reference, ReferenceGrantAuthorizer
from routebinding import KIND_GRPC_ROUTE, KIND_HTTP_ROUTE
from utils import is_valid_hostname

logger = logging.getLogger(__name__)

MAX_INGRESS_RULES = 1000
DEFAULT_HTTP_PORT = 80
DEFAULT_HTTPS_PORT = 443
DEFAULT_BACKEND_WEIGHT = 1
MATCH_ALL_HOSTNAME = "*"

REASON_REF_NOT_PERMITTED = "RefNotPermitted"
REASON_BACKEND_NOT_FOUND = "BackendNotFound"

# Exact paths outrank prefixes for the same hostname.
PRIORITY_PREFIX = 0
PRIORITY_EXACT = 1

_CORE_GROUPS = ("", "core")
_PARTIALLY_APPLIED = "route configuration partially applied"


class BackendRefError(TypedDict):
    """A backend reference that could not be turned into an ingress rule."""

    route_kind: str
    route_namespace: str
    route_name: str
    backend_namespace: str
    backend_name: str
    reason: str
    message: str


class BuildResult(TypedDict):
    """Ordered ingress rules, ending with the catch-all, and the backend refs left out."""

    rules: List[IngressRule]
    failed_refs: List[BackendRefError]


class RouteEntry(TypedDict):
    """An unsorted ingress rule, keeping the data needed to order it."""

    hostname: str
    path: str
    priority: int
    service: str


# ============================================================================
# Route adapters
# ============================================================================
class RouteAdapter:
    """Common view over HTTPRoute and GRPCRoute objects."""

    kind = ""

    def __init__(self, route: Union[HTTPRouteResource, GRPCRouteResource]):
        self.route = route

    @property
    def name(self) -> str:
        return self.route.metadata.name

    @property
    def namespace(self) -> str:
        return self.route.metadata.namespace or ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def hostnames(self) -> List[str]:
        return list(self.route.spec.hostnames)

    @property
    def parent_refs(self) -> List[ParentReference]:
        return list(self.route.spec.parentRefs)

    @property
    def rules(self) -> List[Union[HTTPRouteRule, GRPCRouteRule]]:
        return list(self.route.spec.rules)

    def backend_namespaces(self) -> Set[str]:
        """Return the namespaces, other than the route's own, that its backends point to."""
        namespaces = set()
        for rule in self.rules:
            for ref in rule.backendRefs or []:
                if ref.namespace and ref.namespace != self.namespace:
                    namespaces.add(ref.namespace)
        return namespaces

    def rule_paths(self, rule) -> List[Tuple[str, int]]:
        """Return the ``(path, priority)`` pairs of a rule; an empty path matches everything."""
        raise NotImplementedError

    def log_unsupported(self, rule) -> None:
        """Log the parts of a rule the tunnel cannot express."""
        if rule.filters:
            logger.info(
                f"{_PARTIALLY_APPLIED}: {self.kind} {self.key} filters are not supported and were ignored"
            )


class HTTPRouteAdapter(RouteAdapter):
    """RouteAdapter for HTTPRoute objects."""

    kind = KIND_HTTP_ROUTE

    def rule_paths(self, rule: HTTPRouteRule) -> List[Tuple[str, int]]:
        if not rule.matches:
            return [("", PRIORITY_PREFIX)]

        paths = []
        for match in rule.matches:
            if match.path is None:
                paths.append(("", PRIORITY_PREFIX))
                continue
            if match.path.type == PathMatchType.Exact:
                paths.append((match.path.value, PRIORITY_EXACT))
                continue
            if match.path.type == PathMatchType.RegularExpression:
                logger.info(
                    f"{_PARTIALLY_APPLIED}: {self.kind} {self.key} RegularExpression path "
                    f"{match.path.value} treated as PathPrefix"
                )
            paths.append((match.path.value, PRIORITY_PREFIX))
        return paths

    def log_unsupported(self, rule: HTTPRouteRule) -> None:
        super().log_unsupported(rule)
        for match in rule.matches or []:
            if match.headers:
                logger.info(f"{_PARTIALLY_APPLIED}: {self.kind} {self.key} header matches ignored")
            if match.queryParams:
                logger.info(f"{_PARTIALLY_APPLIED}: {self.kind} {self.key} query param matches ignored")
            if match.method:
                logger.info(f"{_PARTIALLY_APPLIED}: {self.kind} {self.key} method match ignored")


class GRPCRouteAdapter(RouteAdapter):
    """RouteAdapter for GRPCRoute objects.

    A gRPC call is a POST to ``/<service>/<method>``, so method matches become paths:
    service and method give an exact path, a service alone gives a ``/<service>/`` prefix and
    anything else matches every path.
    """

    kind = KIND_GRPC_ROUTE

    def rule_paths(self, rule: GRPCRouteRule) -> List[Tuple[str, int]]:
        if not rule.matches:
            return [("", PRIORITY_PREFIX)]

        paths = []
        for match in rule.matches:
            method = match.method
            if method is None or not method.service:
                paths.append(("", PRIORITY_PREFIX))
            elif not method.method:
                paths.append((f"/{method.service}/", PRIORITY_PREFIX))
            else:
                paths.append((f"/{method.service}/{method.method}", PRIORITY_EXACT))
        return paths

    def log_unsupported(self, rule: GRPCRouteRule) -> None:
        super().log_unsupported(rule)
        for match in rule.matches or []:
            if match.headers:
                logger.info(f"{_PARTIALLY_APPLIED}: {self.kind} {self.key} header matches ignored")


def adapt_route(route: Union[HTTPRouteResource, GRPCRouteResource]) -> RouteAdapter:
    """Wrap a route model in its adapter."""
    if isinstance(route, GRPCRouteResource):
        return GRPCRouteAdapter(route)
    return HTTPRouteAdapter(route)


# ============================================================================
# Backend resolution
# ============================================================================
class BackendNotFoundError(RuntimeError):
    """Raised when a backend Service does not exist."""


ServiceLookup = Callable[[str, str], object]


class ServiceResolver:
    """Turns Service references into the URLs the tunnel daemon connects to.

    Without a ``lookup`` the cluster DNS name is always used. With one, ExternalName services
    resolve to their external name and missing services raise `BackendNotFoundError`; any other
    lookup failure falls back to the cluster DNS name.
    """

    def __init__(self, cluster_domain: str, lookup: Optional[ServiceLookup] = None):
        self.cluster_domain = cluster_domain
        self.lookup = lookup

    def resolve(self, name: str, namespace: str, port: int) -> str:
        scheme = "https" if port == DEFAULT_HTTPS_PORT else "http"

        if self.lookup is not None:
            try:
                service = self.lookup(name, namespace)
            except ApiError as e:
                if is_not_found(e):
                    raise BackendNotFoundError(f"Service {namespace}/{name} not found") from e
                logger.warning(
                    f"Failed to fetch Service {namespace}/{name}, using cluster-local DNS: {e}"
                )
            else:
                spec = getattr(service, "spec", None)
                if spec is not None and spec.type == "ExternalName" and spec.externalName:
                    return f"{scheme}://{spec.externalName}:{port}"

        return f"{scheme}://{name}.{namespace}.svc.{self.cluster_domain}:{port}"


def select_backend(adapter: RouteAdapter, refs: List[BackendRef]) -> Optional[BackendRef]:
    """Pick the single backend a rule is routed to.

    The tunnel routes each rule to one service: the backend with the highest weight is used, the
    first one on ties, and the others are logged as ignored. An unset weight counts as
    DEFAULT_BACKEND_WEIGHT. No backend is returned when every weight is zero.
    """
    if not refs:
        return None
    if len(refs) > 1:
        logger.info(
            f"{_PARTIALLY_APPLIED}: {adapter.kind} {adapter.key} has {len(refs)} backendRefs, "
            f"only the highest weighted one is used"
        )
    weights = [DEFAULT_BACKEND_WEIGHT if ref.weight is None else ref.weight for ref in refs]
    highest = max(weights)
    if highest <= 0:
        return None
    return refs[weights.index(highest)]


# ============================================================================
# Rule builder
# ============================================================================
class RuleBuilder:
    """Builds the ordered ingress rules for a set of accepted routes."""

    def __init__(
        self,
        authorizer: ReferenceGrantAuthorizer,
        service_resolver: ServiceResolver,
    ):
        self.authorizer = authorizer
        self.service_resolver = service_resolver

    def _backend_error(
        self, adapter: RouteAdapter, namespace: str, name: str, reason: str, message: str
    ) -> BackendRefError:
        return BackendRefError(
            route_kind=adapter.kind,
            route_namespace=adapter.namespace,
            route_name=adapter.name,
            backend_namespace=namespace,
            backend_name=name,
            reason=reason,
            message=message,
        )

    def resolve_backend(
        self, adapter: RouteAdapter, ref: BackendRef
    ) -> Tuple[Optional[str], Optional[BackendRefError]]:
        """Resolve one backend reference to a service URL.

        Returns:
            Tuple[Optional[str], Optional[BackendRefError]]: the URL, or None with the error that
            prevented it. Non-Service backends give neither and are skipped.
        """
        if (ref.group or "") not in _CORE_GROUPS or (ref.kind or "Service") != "Service":
            logger.debug(f"Skipping unsupported backend {ref.group}/{ref.kind} of {adapter.key}")
            return None, None

        namespace = ref.namespace or adapter.namespace
        if namespace != adapter.namespace:
            allowed = self.authorizer.is_allowed(
                Reference(
                    group=GATEWAY_API_GROUP,
                    kind=adapter.kind,
                    namespace=adapter.namespace,
                    name=adapter.name,
                ),
                Reference(group="", kind="Service", namespace=namespace, name=ref.name),
            )
            if not allowed:
                logger.info(
                    f"Cross-namespace backend reference from {adapter.kind} {adapter.key} "
                    f"to Service {namespace}/{ref.name} not permitted by any ReferenceGrant"
                )
                return None, self._backend_error(
                    adapter,
                    namespace,
                    ref.name,
                    REASON_REF_NOT_PERMITTED,
                    f"cross-namespace backend reference to {namespace}/{ref.name} not permitted by ReferenceGrant",
                )

        port = ref.port or DEFAULT_HTTP_PORT
        try:
            return self.service_resolver.resolve(ref.name, namespace, port), None
        except BackendNotFoundError as e:
            return None, self._backend_error(
                adapter, namespace, ref.name, REASON_BACKEND_NOT_FOUND, str(e)
            )

    def route_entries(self, adapter: RouteAdapter) -> Tuple[List[RouteEntry], List[BackendRefError]]:
        """Return the unsorted entries of one route and its failed backend refs."""
        entries: List[RouteEntry] = []
        failed: List[BackendRefError] = []
        hostnames = []
        for hostname in adapter.hostnames or [MATCH_ALL_HOSTNAME]:
            if is_valid_hostname(hostname):
                hostnames.append(hostname)
            else:
                logger.warning(f"Skipping invalid hostname {hostname!r} of {adapter.kind} {adapter.key}")

        for rule in adapter.rules:
            adapter.log_unsupported(rule)
            backend = select_backend(adapter, rule.backendRefs or [])
            if backend is None:
                continue

            service, error = self.resolve_backend(adapter, backend)
            if error is not None:
                failed.append(error)
            if service is None:
                continue

            for hostname in hostnames:
                for path, priority in adapter.rule_paths(rule):
                    entries.append(
                        RouteEntry(hostname=hostname, path=path, priority=priority, service=service)
                    )
        return entries, failed

    def build(self, adapters: List[RouteAdapter]) -> BuildResult:
        """Build the ordered rule list, catch-all included, for the given routes."""
        entries: List[RouteEntry] = []
        failed: List[BackendRefError] = []
        for adapter in adapters:
            route_entries, route_failed = self.route_entries(adapter)
            entries.extend(route_entries)
            failed.extend(route_failed)

        rules = [entry_to_rule(entry) for entry in sort_entries(entries)]
        return BuildResult(rules=ensure_catch_all(rules), failed_refs=failed)


def _hostname_rank(hostname: str) -> int:
    if hostname == MATCH_ALL_HOSTNAME:
        return 2
    if hostname.startswith("*."):
        return 1
    return 0


def sort_entries(entries: List[RouteEntry]) -> List[RouteEntry]:
    """Order entries so that first-match evaluation picks the most specific rule.

    Exact hostnames come first, then wildcard hostnames, then match-all entries. Within a hostname
    exact paths precede prefixes, longer paths precede shorter ones and ties sort by path.
    """
    return sorted(
        entries,
        key=lambda e: (
            _hostname_rank(e["hostname"]),
            e["hostname"],
            -e["priority"],
            -len(e["path"]),
            e["path"],
        ),
    )


def entry_to_rule(entry: RouteEntry) -> IngressRule:
    """Convert a sorted entry to the tunnel's rule shape."""
    hostname = entry["hostname"]
    path = entry["path"]
    rule_path = None
    if path and path != "/":
        rule_path = path + "*" if entry["priority"] == PRIORITY_PREFIX else path
    return IngressRule(
        # An omitted hostname matches every host; the API rejects an explicit "*".
        hostname=None if hostname == MATCH_ALL_HOSTNAME else hostname,
        path=rule_path,
        service=entry["service"],
    )


# ============================================================================
# Diff and apply
# ============================================================================
def is_catch_all(rule: IngressRule) -> bool:
    """Return True for the terminal rule rejecting unmatched traffic."""
    return rule.is_catch_all


def ensure_catch_all(rules: List[IngressRule]) -> List[IngressRule]:
    """Return the rules with every catch-all removed and exactly one appended at the end."""
    return [rule for rule in rules if not is_catch_all(rule)] + [catch_all_rule()]


def diff_rules(
    current: List[IngressRule], desired: List[IngressRule]
) -> Tuple[List[IngressRule], List[IngressRule]]:
    """Compute the rules to add and remove to go from ``current`` to ``desired``.

    Catch-all rules are left out of the comparison.

    Returns:
        Tuple[List[IngressRule], List[IngressRule]]: rules only in desired, and rules only in current.
    """
    current_keys = {rule.key() for rule in current if not is_catch_all(rule)}
    desired_keys = {rule.key() for rule in desired if not is_catch_all(rule)}
    to_add = [rule for rule in desired if not is_catch_all(rule) and rule.key() not in current_keys]
    to_remove = [
        rule for rule in current if not is_catch_all(rule) and rule.key() not in desired_keys
    ]
    return to_add, to_remove


def apply_diff(desired: List[IngressRule]) -> List[IngressRule]:
    """Return the rule list to commit.

    The controller owns the whole tunnel configuration, so the result is the desired rules and the
    catch-all; remote rules that were not regenerated are dropped.
    """
    return ensure_catch_all(desired)


class ReconcileResult(TypedDict):
    """Final rule list together with the change counts logged for each pass."""

    final_rules: List[IngressRule]
    to_add: List[IngressRule]
    to_remove: List[IngressRule]


def reconcile_rules(current: List[IngressRule], desired: List[IngressRule]) -> ReconcileResult:
    """Compute the final rule list for the tunnel from its current and desired rules."""
    to_add, to_remove = diff_rules(current, desired)
    logger.info(f"Computed ingress diff: {len(to_add)} to add, {len(to_remove)} to remove")
    return ReconcileResult(final_rules=apply_diff(desired), to_add=to_add, to_remove=to_remove)


def exceeds_rule_limit(rules: List[IngressRule], limit: int = MAX_INGRESS_RULES) -> bool:
    """Return True when the rule list, catch-all included, is longer than the tunnel accepts."""
    return len(rules) > limit
