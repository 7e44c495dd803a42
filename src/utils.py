#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Utility functions for the tunnel gateway controller.

This module contains condition builders, key helpers and message formatting used across the controller.
Functions here are resource-agnostic and work on plain values or pydantic models.
"""
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from models import Condition

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================
MAX_CONDITION_MESSAGE_LENGTH = 256

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")


# ============================================================================
# Exception Classes
# ============================================================================
class ConfigResolutionError(RuntimeError):
    """Raised when the tunnel configuration of a gateway class cannot be resolved."""


class RuleLimitExceededError(RuntimeError):
    """Raised when the desired ingress rules do not fit in the tunnel configuration."""

    def __init__(self, count: int, limit: int):
        super().__init__(f"ingress rules limit exceeded: {count} rules (max {limit})")
        self.count = count
        self.limit = limit


# ============================================================================
# Helpers
# ============================================================================
def truncate_message(message: str) -> str:
    """Truncate a condition message to the length accepted by the API server."""
    if len(message) > MAX_CONDITION_MESSAGE_LENGTH:
        return message[: MAX_CONDITION_MESSAGE_LENGTH - 3] + "..."
    return message


def utc_now() -> str:
    """Return the current time as an RFC 3339 timestamp."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_condition(
    condition_type: str,
    status: bool,
    reason: str,
    message: str,
    generation: Optional[int],
    now: Optional[str] = None,
) -> Condition:
    """Build a status condition.

    Args:
        condition_type (str): The condition type, e.g. ``Accepted``.
        status (bool): Whether the condition holds.
        reason (str): Machine readable reason code.
        message (str): Human readable message, truncated when too long.
        generation (Optional[int]): The generation of the object the condition was computed from.
        now (Optional[str]): Transition timestamp; defaults to the current time.

    Returns:
        Condition: The condition model.
    """
    return Condition(
        type=condition_type,
        status=CONDITION_TRUE if status else CONDITION_FALSE,
        reason=reason,
        message=truncate_message(message),
        observedGeneration=generation,
        lastTransitionTime=now or utc_now(),
    )


def object_key(namespace: Optional[str], name: str) -> str:
    """Return the ``namespace/name`` key of an object, or ``name`` for cluster scoped ones."""
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: str) -> Tuple[Optional[str], str]:
    """Split an object key produced by `object_key` into namespace and name."""
    if "/" in key:
        namespace, name = key.split("/", 1)
        return namespace, name
    return None, key


def keep_transition_times(
    conditions: List[Condition], previous: Optional[List[Condition]]
) -> List[Condition]:
    """Carry over ``lastTransitionTime`` from previous conditions whose status did not change."""
    by_type = {condition.type: condition for condition in previous or []}
    for condition in conditions:
        old = by_type.get(condition.type)
        if old is not None and old.status == condition.status and old.lastTransitionTime:
            condition.lastTransitionTime = old.lastTransitionTime
    return conditions


def is_valid_hostname(hostname: str) -> bool:
    """Check a route or listener hostname.

    Accepts lowercase RFC 1123 names, optionally prefixed by a single ``*.`` wildcard label, and
    the bare ``*`` used for rules matching every host. IP addresses are not hostnames.
    """
    if hostname == "*":
        return True
    if hostname.startswith("*."):
        hostname = hostname[2:]
    if not hostname or len(hostname) > 253:
        return False
    labels = hostname.split(".")
    if all(label.isdigit() for label in labels):
        return False
    return all(_DNS_LABEL.match(label) for label in labels)
