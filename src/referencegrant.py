#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Cross-namespace reference authorization through ReferenceGrant objects."""

import logging
import threading
from typing import Dict, List, Optional, TypedDict

from lightkube.core.exceptions import ApiError

from models import ReferenceGrantResource

logger = logging.getLogger(__name__)


class Reference(TypedDict):
    """One side of an object reference."""

    group: str
    kind: str
    namespace: str
    name: str


class ReferenceGrantAuthorizer:
    """Decides whether references crossing namespaces are permitted.

    Grants are listed once per target namespace and kept until `reset` is called, which the route
    syncer does at the start of every pass.
    """

    def __init__(self, crd_manager):
        self.crd_manager = crd_manager
        self._grants: Dict[str, Optional[List[ReferenceGrantResource]]] = {}
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Forget the grants listed so far."""
        with self._lock:
            self._grants = {}

    def _grants_in(self, namespace: str) -> Optional[List[ReferenceGrantResource]]:
        with self._lock:
            if namespace in self._grants:
                return self._grants[namespace]

        try:
            grants = self.crd_manager.list_resources("reference_grant", namespace=namespace)
        except ApiError as e:
            logger.error(f"Failed to list ReferenceGrants in namespace {namespace}: {e}")
            grants = None

        with self._lock:
            self._grants[namespace] = grants
        return grants

    def is_allowed(self, from_ref: Reference, to_ref: Reference) -> bool:
        """Check whether ``from_ref`` may reference ``to_ref``.

        Same namespace references are always allowed. Otherwise a ReferenceGrant in the target
        namespace must list the origin group, kind and namespace in ``from`` and the target group
        and kind in ``to``, either without a name or with the target's name. Whether the target
        exists is irrelevant.
        """
        if from_ref["namespace"] == to_ref["namespace"]:
            return True

        grants = self._grants_in(to_ref["namespace"])
        if grants is None:
            # Listing failed, deny until the next pass.
            return False

        for grant in grants:
            if self._grant_allows(grant, from_ref, to_ref):
                logger.debug(
                    f"ReferenceGrant {grant.metadata.namespace}/{grant.metadata.name} allows "
                    f"{from_ref['kind']} {from_ref['namespace']}/{from_ref['name']} to reference "
                    f"{to_ref['kind']} {to_ref['namespace']}/{to_ref['name']}"
                )
                return True
        return False

    @staticmethod
    def _grant_allows(
        grant: ReferenceGrantResource, from_ref: Reference, to_ref: Reference
    ) -> bool:
        from_matches = any(
            entry.group == from_ref["group"]
            and entry.kind == from_ref["kind"]
            and entry.namespace == from_ref["namespace"]
            for entry in grant.spec.from_
        )
        if not from_matches:
            return False

        return any(
            entry.group == to_ref["group"]
            and entry.kind == to_ref["kind"]
            and (not entry.name or entry.name == to_ref["name"])
            for entry in grant.spec.to
        )
