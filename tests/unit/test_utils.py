# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Tests for utils.py."""

import pytest

from models import Condition
from utils import (
    MAX_CONDITION_MESSAGE_LENGTH,
    RuleLimitExceededError,
    is_valid_hostname,
    keep_transition_times,
    new_condition,
    object_key,
    split_key,
    truncate_message,
)


def test_truncate_message():
    assert truncate_message("short") == "short"

    truncated = truncate_message("x" * 1000)
    assert len(truncated) == MAX_CONDITION_MESSAGE_LENGTH
    assert truncated.endswith("...")


def test_new_condition():
    condition = new_condition("Accepted", False, "Pending", "waiting", 3, now="2024-05-01T10:00:00Z")

    assert condition == Condition(
        type="Accepted",
        status="False",
        reason="Pending",
        message="waiting",
        observedGeneration=3,
        lastTransitionTime="2024-05-01T10:00:00Z",
    )


def test_keep_transition_times_only_for_unchanged_status():
    previous = [
        new_condition("Accepted", True, "Accepted", "", 1, now="2024-01-01T00:00:00Z"),
        new_condition("ResolvedRefs", True, "ResolvedRefs", "", 1, now="2024-01-01T00:00:00Z"),
    ]
    current = [
        new_condition("Accepted", True, "Accepted", "", 2, now="2024-06-01T00:00:00Z"),
        new_condition("ResolvedRefs", False, "RefNotPermitted", "", 2, now="2024-06-01T00:00:00Z"),
    ]

    result = keep_transition_times(current, previous)

    assert [condition.lastTransitionTime for condition in result] == [
        "2024-01-01T00:00:00Z",
        "2024-06-01T00:00:00Z",
    ]


def test_object_keys():
    assert object_key("ns", "gw") == "ns/gw"
    assert object_key(None, "tunnel") == "tunnel"
    assert split_key("ns/gw") == ("ns", "gw")
    assert split_key("tunnel") == (None, "tunnel")


@pytest.mark.parametrize(
    "hostname, expected",
    [
        ("app.example.com", True),
        ("*.example.com", True),
        ("*", True),
        ("localhost", True),
        ("App.example.com", False),
        ("under_score.com", False),
        ("-leading.com", False),
        ("*.*.example.com", False),
        ("10.0.0.1", False),
        ("", False),
    ],
)
def test_is_valid_hostname(hostname, expected):
    assert is_valid_hostname(hostname) is expected


def test_rule_limit_error_message():
    error = RuleLimitExceededError(1001, 1000)

    assert str(error) == "ingress rules limit exceeded: 1001 rules (max 1000)"
    assert error.count == 1001
