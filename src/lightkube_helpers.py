#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""A helper module that extends lightkube functionality in managing Gateway API resources."""


import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from lightkube.core.client import Client
from lightkube.core.exceptions import ApiError
from lightkube.generic_resource import create_global_resource, create_namespaced_resource
from lightkube.resources.core_v1 import Secret, Service
from lightkube.types import PatchType
from pydantic import BaseModel

from models import (
    CONFIG_API_GROUP,
    GATEWAY_API_GROUP,
    GatewayClassConfigResource,
    GatewayClassResource,
    GatewayResource,
    GRPCRouteResource,
    HTTPRouteResource,
    Metadata,
    ReferenceGrantResource,
)

logger = logging.getLogger(__name__)

FIELD_MANAGER = "cloudflare-tunnel-gateway-controller"
STATUS_UPDATE_ATTEMPTS = 5
ALL_NAMESPACES = "*"
GLOBAL_RESOURCE_TYPES = ("gateway_class", "gateway_class_config")

StatusBuilder = Callable[[Any], Optional[Dict[str, Any]]]


def is_not_found(error: ApiError) -> bool:
    """Return True when the Kubernetes API answered 404."""
    return error.status.code == 404


def is_conflict(error: ApiError) -> bool:
    """Return True when the Kubernetes API rejected a write on a stale resourceVersion."""
    return error.status.code == 409


class KubernetesCRDManager:
    """Gateway API resources manager.

    Reads are returned as the pydantic models of `models`, so the rest of the controller never
    handles raw lightkube objects.
    """

    def __init__(self):
        self.client = Client(field_manager=FIELD_MANAGER)

        # Initialize resources
        self.resources = {
            "gateway": create_namespaced_resource(
                GATEWAY_API_GROUP, "v1", "Gateway", "gateways"
            ),
            "gateway_class": create_global_resource(
                GATEWAY_API_GROUP, "v1", "GatewayClass", "gatewayclasses"
            ),
            "grpc_route": create_namespaced_resource(
                GATEWAY_API_GROUP, "v1", "GRPCRoute", "grpcroutes"
            ),
            "reference_grant": create_namespaced_resource(
                GATEWAY_API_GROUP, "v1beta1", "ReferenceGrant", "referencegrants"
            ),
            "http_route": create_namespaced_resource(
                GATEWAY_API_GROUP, "v1", "HTTPRoute", "httproutes"
            ),
            "gateway_class_config": create_global_resource(
                CONFIG_API_GROUP, "v1alpha1", "GatewayClassConfig", "gatewayclassconfigs"
            ),
            "secret": Secret,
        }
        self.models = {
            "gateway": GatewayResource,
            "gateway_class": GatewayClassResource,
            "grpc_route": GRPCRouteResource,
            "reference_grant": ReferenceGrantResource,
            "http_route": HTTPRouteResource,
            "gateway_class_config": GatewayClassConfigResource,
        }

    @staticmethod
    def _scope(resource_type: str, namespace: Optional[str]) -> Optional[str]:
        if resource_type in GLOBAL_RESOURCE_TYPES:
            return None
        return namespace

    def _to_model(self, resource_type: str, obj: Any) -> Any:
        data = obj.to_dict()
        model = self.models.get(resource_type)
        if model is None:
            return Metadata.model_validate(data["metadata"])
        return model.model_validate(data)

    def get_resource(
        self, resource_type: str, name: str, namespace: Optional[str] = None
    ) -> Optional[BaseModel]:
        """Return the specified resource by type and name in the given namespace.

        Args:
            resource_type (str): The type of the resource to retrieve.
            name (str): The name of the resource to retrieve.
            namespace (Optional[str]): The namespace of the resource, None for cluster scoped resources.

        Returns:
            Optional[BaseModel]: The parsed resource if found, None if not found or an error occurred.
        """
        if resource_type not in self.models:
            logger.error(f"Unsupported resource type: {resource_type}")
            return None

        try:
            resource = self.client.get(
                self.resources[resource_type], name=name, namespace=namespace
            )
        except ApiError as e:
            if is_not_found(e):
                logger.debug(f"Resource {resource_type} {name} not found")
            else:
                logger.error(f"HTTP error getting resource {name}: {e}")
            return None
        return self._to_model(resource_type, resource)

    def list_resources(self, resource_type: str, namespace: str = ALL_NAMESPACES) -> List[Any]:
        """Return every resource of the given type, across all namespaces by default.

        Raises:
            ApiError: if the listing fails.
        """
        if resource_type not in self.models:
            raise ValueError(f"Unsupported resource type: {resource_type}")
        return [
            self._to_model(resource_type, resource)
            for resource in self.client.list(
                self.resources[resource_type], namespace=self._scope(resource_type, namespace)
            )
        ]

    def get_secret_data(self, name: str, namespace: str) -> Optional[Dict[str, str]]:
        """Return the base64 encoded data of a secret, or None if it does not exist.

        Raises:
            ApiError: if the lookup fails for any reason other than absence.
        """
        try:
            secret = self.client.get(Secret, name=name, namespace=namespace)
        except ApiError as e:
            if is_not_found(e):
                return None
            raise
        return dict(secret.data or {})

    def get_service(self, name: str, namespace: str) -> Service:
        """Return a core Service; lookup errors propagate to the caller."""
        return self.client.get(Service, name=name, namespace=namespace)

    def patch_status(
        self,
        resource_type: str,
        name: str,
        namespace: Optional[str],
        build_status: StatusBuilder,
        attempts: int = STATUS_UPDATE_ATTEMPTS,
    ) -> bool:
        """Recompute and write the status of a resource, retrying on write conflicts.

        Every attempt reads a fresh copy of the resource, hands it to ``build_status`` and merge
        patches the status subresource guarded by the copy's resourceVersion.

        Args:
            resource_type (str): The type of the resource to update.
            name (str): The name of the resource.
            namespace (Optional[str]): The namespace of the resource, None for cluster scoped resources.
            build_status (StatusBuilder): Returns the status dict for a fresh resource, or None to skip the write.
            attempts (int): Maximum number of read-modify-write rounds.

        Returns:
            bool: True if a status was written, False if the resource is gone or nothing was to be written.

        Raises:
            ApiError: if the write keeps conflicting or fails for another reason.
        """
        resource_definition = self.resources[resource_type]
        for attempt in range(1, attempts + 1):
            fresh = self.get_resource(resource_type, name, namespace)
            if fresh is None:
                return False

            status = build_status(fresh)
            if status is None:
                return False

            patch = {
                "metadata": {"resourceVersion": fresh.metadata.resourceVersion},
                "status": status,
            }
            try:
                self.client.patch(
                    resource_definition.Status,
                    name=name,
                    obj=patch,
                    namespace=namespace,
                    patch_type=PatchType.MERGE,
                )
                return True
            except ApiError as e:
                if is_conflict(e) and attempt < attempts:
                    logger.debug(
                        f"Conflict updating {resource_type} {name} status, retrying ({attempt}/{attempts})"
                    )
                    continue
                raise
        return False

    def watch(self, resource_type: str) -> Iterator[Tuple[str, Any]]:
        """Yield ``(event_type, model)`` pairs for every change of the given resource type.

        Secrets are yielded as their `Metadata` only.
        """
        for event_type, obj in self.client.watch(
            self.resources[resource_type], namespace=self._scope(resource_type, ALL_NAMESPACES)
        ):
            yield event_type, self._to_model(resource_type, obj)
