#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Reconcile loop of the Cloudflare Tunnel Gateway API controller.

The controller watches Gateway API objects, its GatewayClassConfig and the secrets it reads,
maps every event to the keys of the objects to reconcile and processes them on one worker per
managed kind:

* routes (HTTPRoute, GRPCRoute): a full sync of every route into the tunnel;
* gateways: address, conditions and listener statuses;
* gateway classes: acceptance of the classes naming this controller.

Route events received before the startup sync finished are requeued, so the first pass sees
every route at once.
"""

import logging
import signal
import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from lightkube.core.exceptions import ApiError

from config_resolver import ConfigResolver
from gateway_status import (
    build_config_error_status,
    build_gateway_class_status,
    build_gateway_status,
    count_attached_routes,
)
from ingress import RouteAdapter, adapt_route
from lightkube_helpers import KubernetesCRDManager
from mappers import ConfigMapper, Requests, routes_for_gateway, routes_for_reference_grant
from route_syncer import (
    API_ERROR_REQUEUE_DELAY,
    ROUTE_RESOURCE_TYPES,
    RouteSyncer,
    is_route_accepted,
)
from routebinding import KIND_GATEWAY, BindingValidator
from settings import ControllerSettings
from utils import ConfigResolutionError, object_key, split_key

logger = logging.getLogger(__name__)

STARTUP_PENDING_DELAY = 1.0
CONFIG_ERROR_REQUEUE_DELAY = 30.0
WATCH_RETRY_DELAY = 5.0

ROUTE_TYPES = ("http_route", "grpc_route")
QUEUE_TYPES = ("gateway", "gateway_class") + ROUTE_TYPES
WATCHED_TYPES = QUEUE_TYPES + ("reference_grant", "gateway_class_config", "secret")
# Status-only updates of these types do not change their generation and are skipped.
GENERATION_FILTERED_TYPES = ("gateway",) + ROUTE_TYPES

Reconciler = Callable[[str], Optional[float]]


class WorkQueue:
    """A deduplicating queue of object keys.

    A key is never queued twice, and a key added while it is being processed is queued again
    once `done` is called for it.
    """

    def __init__(self, name: str):
        self.name = name
        self._items: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._timers: Dict[str, threading.Timer] = {}
        self._cond = threading.Condition()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutdown or key in self._queued:
                return
            if key in self._processing:
                self._dirty.add(key)
                return
            self._queued.add(key)
            self._items.append(key)
            self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        """Add a key once ``delay`` seconds have passed, replacing any pending delayed add."""
        if delay <= 0:
            self.add(key)
            return

        timer = threading.Timer(delay, self._fire, args=(key,))
        timer.daemon = True
        with self._cond:
            if self._shutdown:
                return
            previous = self._timers.get(key)
            if previous is not None:
                previous.cancel()
            self._timers[key] = timer
        timer.start()

    def _fire(self, key: str) -> None:
        with self._cond:
            # Timers run in their own thread, so the current thread is the timer itself.
            if self._timers.get(key) is threading.current_thread():
                del self._timers[key]
        self.add(key)

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Return the next key, or None on timeout or shutdown."""
        with self._cond:
            self._cond.wait_for(lambda: self._items or self._shutdown, timeout)
            if not self._items or self._shutdown:
                return None
            key = self._items.popleft()
            self._queued.discard(key)
            self._processing.add(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutdown:
                self._dirty.discard(key)
                self._queued.add(key)
                self._items.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers = {}
            self._cond.notify_all()


class Controller:
    """Cloudflare Tunnel Gateway API controller."""

    def __init__(
        self,
        settings: ControllerSettings,
        crd_manager=None,
        tunnel_client_factory=None,
    ):
        self.settings = settings
        self.crd_manager = crd_manager or KubernetesCRDManager()
        self.config_resolver = ConfigResolver(self.crd_manager, settings.controller_namespace)
        self.route_syncer = RouteSyncer(
            self.crd_manager, self.config_resolver, settings, tunnel_client_factory
        )
        self.config_mapper = ConfigMapper(
            self.crd_manager,
            self.config_resolver,
            settings.gateway_class_name,
            settings.controller_namespace,
        )
        self.validator = BindingValidator()

        self.ready = threading.Event()
        self.stop_event = threading.Event()
        self.queues = {resource_type: WorkQueue(resource_type) for resource_type in QUEUE_TYPES}
        self.reconcilers: Dict[str, Reconciler] = {
            "gateway": self.reconcile_gateway,
            "gateway_class": self.reconcile_gateway_class,
            "http_route": self.reconcile_route,
            "grpc_route": self.reconcile_route,
        }
        self._generations: Dict[Tuple[str, str], Optional[int]] = {}
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Reconcilers
    # ------------------------------------------------------------------
    def reconcile_route(self, key: str) -> Optional[float]:
        """Synchronize every route into the tunnel; any route key triggers a full pass."""
        if not self.ready.is_set():
            logger.debug(f"Startup sync in progress, requeueing route {key}")
            return STARTUP_PENDING_DELAY

        logger.debug(f"Reconciling routes after a change of {key}")
        result = self.route_syncer.sync_and_update_status()
        return result["requeue_after"]

    def reconcile_gateway(self, key: str) -> Optional[float]:
        """Write the status of one Gateway of our class."""
        namespace, name = split_key(key)
        gateway = self.crd_manager.get_resource("gateway", name, namespace)
        if gateway is None or gateway.spec.gatewayClassName != self.settings.gateway_class_name:
            return None

        try:
            config = self.config_resolver.resolve_from_gateway_class_name(
                gateway.spec.gatewayClassName
            )
        except ConfigResolutionError as e:
            logger.error(f"Failed to resolve config for Gateway {key}: {e}")
            self._patch_status(
                "gateway", name, namespace, lambda fresh: build_config_error_status(fresh, e)
            )
            return CONFIG_ERROR_REQUEUE_DELAY

        try:
            routes = self.list_route_adapters(raise_errors=True)
        except ApiError as e:
            logger.error(f"Failed to list routes attached to Gateway {key}: {e}")
            return API_ERROR_REQUEUE_DELAY

        def build_status(fresh):
            attached = count_attached_routes(fresh, routes, self.validator)
            return build_gateway_status(fresh, config["tunnel_id"], attached)

        if self._patch_status("gateway", name, namespace, build_status):
            logger.info(f"Updated Gateway {key} status")
        return None

    def reconcile_gateway_class(self, name: str) -> Optional[float]:
        """Accept GatewayClasses naming this controller."""

        def build_status(fresh):
            if fresh.spec.controllerName != self.settings.controller_name:
                return None
            return build_gateway_class_status(fresh)

        if self._patch_status("gateway_class", name, None, build_status):
            logger.info(f"Accepted GatewayClass {name}")
        return None

    def _patch_status(self, resource_type: str, name: str, namespace: Optional[str], build) -> bool:
        try:
            return self.crd_manager.patch_status(resource_type, name, namespace, build)
        except ApiError as e:
            logger.error(f"Failed to update {resource_type} {object_key(namespace, name)} status: {e}")
            return False

    # ------------------------------------------------------------------
    # Event mapping
    # ------------------------------------------------------------------
    def list_route_adapters(self, raise_errors: bool = False) -> List[RouteAdapter]:
        """Return every HTTPRoute and GRPCRoute of the cluster."""
        adapters = []
        for resource_type in ROUTE_TYPES:
            try:
                routes = self.crd_manager.list_resources(resource_type)
            except ApiError as e:
                if raise_errors:
                    raise
                logger.error(f"Failed to list {resource_type} objects: {e}")
                continue
            adapters.extend(adapt_route(route) for route in routes)
        return adapters

    def class_gateway_requests(self) -> Requests:
        """Return the requests for every Gateway of our class."""
        try:
            gateways = self.crd_manager.list_resources("gateway")
        except ApiError as e:
            logger.error(f"Failed to list Gateways: {e}")
            return []
        return [
            ("gateway", object_key(gateway.metadata.namespace, gateway.metadata.name))
            for gateway in gateways
            if gateway.spec.gatewayClassName == self.settings.gateway_class_name
        ]

    def accepted_route_requests(self) -> Requests:
        """Return the requests for every route accepted by a Gateway of our class."""
        try:
            routes = self.route_syncer.collect_routes()
        except ApiError as e:
            logger.error(f"Failed to list routes: {e}")
            return []
        return [
            (ROUTE_RESOURCE_TYPES[route["adapter"].kind], route["adapter"].key)
            for route in routes
            if is_route_accepted(route)
        ]

    def config_requests(self) -> Requests:
        return self.accepted_route_requests() + self.class_gateway_requests()

    def map_event(self, resource_type: str, obj) -> Requests:
        """Return the requests triggered by a change of ``obj``."""
        if resource_type == "gateway_class":
            requests = [("gateway_class", obj.metadata.name)]
            # Gateways advertise the tunnel of their class parametersRef.
            if obj.metadata.name == self.settings.gateway_class_name:
                requests += self.class_gateway_requests()
            return requests

        if resource_type == "gateway":
            key = object_key(obj.metadata.namespace, obj.metadata.name)
            return [("gateway", key)] + routes_for_gateway(
                obj, self.settings.gateway_class_name, self.list_route_adapters()
            )

        if resource_type in ROUTE_TYPES:
            adapter = adapt_route(obj)
            requests = [(resource_type, adapter.key)]
            # Parent gateways recount their attached routes.
            for ref in adapter.parent_refs:
                if not ref.kind or ref.kind == KIND_GATEWAY:
                    requests.append(("gateway", object_key(ref.namespace or adapter.namespace, ref.name)))
            return requests

        if resource_type == "reference_grant":
            return routes_for_reference_grant(
                obj.metadata.namespace, self.list_route_adapters()
            ) + self.class_gateway_requests()

        if resource_type == "gateway_class_config":
            return self.config_mapper.map_config(obj, self.config_requests)

        if resource_type == "secret":
            return self.config_mapper.map_secret(obj, self.config_requests)

        return []

    def _generation_changed(self, resource_type: str, event_type: str, obj) -> bool:
        if resource_type not in GENERATION_FILTERED_TYPES:
            return True

        metadata = obj.metadata
        cache_key = (resource_type, object_key(metadata.namespace, metadata.name))
        if event_type == "DELETED":
            self._generations.pop(cache_key, None)
            return True

        previous = self._generations.get(cache_key)
        self._generations[cache_key] = metadata.generation
        if event_type == "MODIFIED" and previous is not None and previous == metadata.generation:
            return False
        return True

    def handle_event(self, resource_type: str, event_type: str, obj) -> None:
        """Enqueue the requests triggered by one watch event."""
        if not self._generation_changed(resource_type, event_type, obj):
            logger.debug(
                f"Ignoring status update of {resource_type} {obj.metadata.namespace}/{obj.metadata.name}"
            )
            return

        for queue_type, key in self.map_event(resource_type, obj):
            self.queues[queue_type].add(key)

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------
    def _watch(self, resource_type: str) -> None:
        while not self.stop_event.is_set():
            try:
                for event_type, obj in self.crd_manager.watch(resource_type):
                    if self.stop_event.is_set():
                        return
                    self.handle_event(resource_type, event_type, obj)
            except Exception:
                logger.exception(f"Watch of {resource_type} failed, restarting")
            self.stop_event.wait(WATCH_RETRY_DELAY)

    def process_next(self, resource_type: str, timeout: Optional[float] = None) -> bool:
        """Reconcile the next key of a queue.

        Returns:
            bool: False if no key was available.
        """
        queue = self.queues[resource_type]
        key = queue.get(timeout)
        if key is None:
            return False

        try:
            requeue_after = self.reconcilers[resource_type](key)
        except Exception:
            logger.exception(f"Failed to reconcile {resource_type} {key}")
            requeue_after = API_ERROR_REQUEUE_DELAY
        finally:
            queue.done(key)

        if requeue_after is not None:
            queue.add_after(key, requeue_after)
        return True

    def _work(self, resource_type: str) -> None:
        while not self.stop_event.is_set():
            self.process_next(resource_type, timeout=1.0)

    def startup_sync(self) -> None:
        """Run the first full sync, then release the route workers."""
        logger.info("Running startup sync")
        try:
            result = self.route_syncer.sync_and_update_status()
            if result["error"] is not None:
                logger.warning(f"Startup sync failed: {result['error']}")
        except Exception:
            logger.exception("Startup sync failed")
        finally:
            self.ready.set()
            logger.info("Startup sync complete, processing route events")

    def _spawn(self, target, *args, name: str) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def start(self) -> None:
        self._spawn(self.startup_sync, name="startup-sync")
        for resource_type in WATCHED_TYPES:
            self._spawn(self._watch, resource_type, name=f"watch-{resource_type}")
        for resource_type in QUEUE_TYPES:
            self._spawn(self._work, resource_type, name=f"worker-{resource_type}")
        logger.info(
            f"Started controller {self.settings.controller_name} for GatewayClass {self.settings.gateway_class_name}"
        )

    def stop(self) -> None:
        self.stop_event.set()
        for queue in self.queues.values():
            queue.shutdown()

    def run(self) -> None:
        """Start the controller and block until `stop` is called."""
        self.start()
        self.stop_event.wait()
        # Watch threads block on the API server and are left to die with the process.
        for thread in self._threads:
            if thread.name.startswith("worker-"):
                thread.join(timeout=5)
        logger.info("Controller stopped")


def main() -> None:
    settings = ControllerSettings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    controller = Controller(settings)

    def _terminate(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down")
        controller.stop()

    signal.signal(signal.SIGTERM, _terminate)
    signal.signal(signal.SIGINT, _terminate)
    controller.run()


if __name__ == "__main__":
    main()
