#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Process level settings of the controller."""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from tunnel_client import DEFAULT_API_URL

DEFAULT_CONTROLLER_NAME = "cf.k8s.lex.la/tunnel-controller"


class ControllerSettings(BaseModel):
    """ControllerSettings holds the values read from the environment at startup."""

    gateway_class_name: str = "cloudflare-tunnel"
    controller_name: str = DEFAULT_CONTROLLER_NAME
    cluster_domain: str = "cluster.local"
    controller_namespace: str = "default"
    cloudflare_api_url: str = DEFAULT_API_URL
    api_timeout: float = Field(default=30.0, gt=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ControllerSettings":
        """Build the settings from environment variables, keeping defaults for unset ones."""
        environ = os.environ if environ is None else environ
        values = {}
        for field in cls.model_fields:
            value = environ.get(field.upper())
            if value:
                values[field] = value
        return cls.model_validate(values)
