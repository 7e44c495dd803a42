#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Resolution of tunnel credentials from a GatewayClass and its GatewayClassConfig.

The chain followed for every sync pass is::

    GatewayClass.spec.parametersRef -> GatewayClassConfig -> credentials Secret
                                                          -> tunnel token Secret

The account ID comes from the config spec, else from the ``account-id`` key of the credentials
secret, else from the accounts visible to the API token.
"""

import base64
import binascii
import logging
import threading
from typing import Dict, Optional, TypedDict

from lightkube.core.exceptions import ApiError

from models import (
    CONFIG_API_GROUP,
    GatewayClassConfigResource,
    GatewayClassResource,
    SecretKeyReference,
)
from utils import ConfigResolutionError

logger = logging.getLogger(__name__)

PARAMETERS_REF_KIND = "GatewayClassConfig"
DEFAULT_API_TOKEN_KEY = "api-token"
DEFAULT_TUNNEL_TOKEN_KEY = "tunnel-token"
ACCOUNT_ID_KEY = "account-id"


class ResolvedConfig(TypedDict):
    """Credentials and tunnel identity used for one sync pass."""

    api_token: str
    account_id: str
    tunnel_id: str
    tunnel_token: str
    cloudflared_enabled: bool
    cloudflared_replicas: int
    cloudflared_namespace: str
    cloudflared_protocol: Optional[str]
    config_name: str


class ConfigResolver:
    """Resolves the `ResolvedConfig` of a gateway class."""

    def __init__(self, crd_manager, default_namespace: str):
        self.crd_manager = crd_manager
        self.default_namespace = default_namespace
        self._account_ids: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_config_for_gateway_class(
        self, gateway_class: GatewayClassResource
    ) -> GatewayClassConfigResource:
        """Return the GatewayClassConfig referenced by a GatewayClass.

        Raises:
            ConfigResolutionError: if the reference is missing, unsupported or dangling.
        """
        ref = gateway_class.spec.parametersRef
        if ref is None:
            raise ConfigResolutionError("GatewayClass has no parametersRef")
        if ref.group != CONFIG_API_GROUP or ref.kind != PARAMETERS_REF_KIND:
            raise ConfigResolutionError(f"unsupported parametersRef: {ref.group}/{ref.kind}")

        config = self.crd_manager.get_resource("gateway_class_config", ref.name)
        if config is None:
            raise ConfigResolutionError(f"failed to get GatewayClassConfig {ref.name}")
        return config

    def get_config_for_gateway_class_name(
        self, gateway_class_name: str
    ) -> GatewayClassConfigResource:
        """Return the GatewayClassConfig of the named GatewayClass."""
        gateway_class = self.crd_manager.get_resource("gateway_class", gateway_class_name)
        if gateway_class is None:
            raise ConfigResolutionError(f"failed to get GatewayClass {gateway_class_name}")
        return self.get_config_for_gateway_class(gateway_class)

    def resolve_from_gateway_class_name(self, gateway_class_name: str) -> ResolvedConfig:
        """Resolve the configuration of the named GatewayClass.

        Raises:
            ConfigResolutionError: if any object of the chain is missing or incomplete.
        """
        return self.resolve_config(self.get_config_for_gateway_class_name(gateway_class_name))

    def resolve_config(self, config: GatewayClassConfigResource) -> ResolvedConfig:
        """Resolve secrets and flags of a GatewayClassConfig."""
        spec = config.spec
        credentials_ref = spec.cloudflareCredentialsSecretRef
        credentials = self._read_secret(credentials_ref)
        api_token = self._secret_value(
            credentials, credentials_ref, credentials_ref.key or DEFAULT_API_TOKEN_KEY
        )

        account_id = spec.accountID or ""
        if not account_id and ACCOUNT_ID_KEY in credentials:
            account_id = self._decode(credentials[ACCOUNT_ID_KEY], credentials_ref, ACCOUNT_ID_KEY)

        tunnel_token = ""
        if spec.cloudflared.enabled:
            token_ref = spec.tunnelTokenSecretRef
            if token_ref is None:
                raise ConfigResolutionError(
                    "tunnelTokenSecretRef is required when cloudflared.enabled is true"
                )
            tunnel_token = self._secret_value(
                self._read_secret(token_ref), token_ref, token_ref.key or DEFAULT_TUNNEL_TOKEN_KEY
            )

        return ResolvedConfig(
            api_token=api_token,
            account_id=account_id,
            tunnel_id=spec.tunnelID,
            tunnel_token=tunnel_token,
            cloudflared_enabled=spec.cloudflared.enabled,
            cloudflared_replicas=spec.cloudflared.replicas,
            cloudflared_namespace=spec.cloudflared.namespace,
            cloudflared_protocol=spec.cloudflared.protocol,
            config_name=config.metadata.name,
        )

    def resolve_account_id(self, tunnel_client, config: ResolvedConfig) -> str:
        """Return the account ID, auto-detecting and caching it when the config has none.

        Raises:
            ConfigResolutionError: if the token sees no account or more than one.
            TunnelAPIError: if the accounts cannot be listed.
        """
        if config["account_id"]:
            return config["account_id"]

        with self._lock:
            cached = self._account_ids.get(config["config_name"])
        if cached:
            return cached

        accounts = tunnel_client.list_accounts()
        if not accounts:
            raise ConfigResolutionError("no accounts found for this API token")
        if len(accounts) > 1:
            raise ConfigResolutionError(
                f"multiple accounts found ({len(accounts)}), please specify account-id in credentials secret"
            )

        account_id = accounts[0]["id"]
        logger.info(f"Auto-detected account {account_id} for config {config['config_name']}")
        with self._lock:
            self._account_ids[config["config_name"]] = account_id
        return account_id

    def _secret_namespace(self, ref: SecretKeyReference) -> str:
        return ref.namespace or self.default_namespace

    def _read_secret(self, ref: SecretKeyReference) -> Dict[str, str]:
        namespace = self._secret_namespace(ref)
        try:
            data = self.crd_manager.get_secret_data(ref.name, namespace)
        except ApiError as e:
            raise ConfigResolutionError(f"failed to get secret {namespace}/{ref.name}: {e}") from e
        if data is None:
            raise ConfigResolutionError(f"secret {namespace}/{ref.name} not found")
        return data

    def _secret_value(self, data: Dict[str, str], ref: SecretKeyReference, key: str) -> str:
        if key not in data:
            raise ConfigResolutionError(
                f"secret {self._secret_namespace(ref)}/{ref.name} does not contain key {key}"
            )
        return self._decode(data[key], ref, key)

    def _decode(self, value: str, ref: SecretKeyReference, key: str) -> str:
        try:
            return base64.b64decode(value).decode().strip()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigResolutionError(
                f"secret {self._secret_namespace(ref)}/{ref.name} key {key} is not valid base64"
            ) from e


def secret_matches_config(
    secret_name: str,
    secret_namespace: str,
    config: GatewayClassConfigResource,
    default_namespace: str,
) -> bool:
    """Return True when a secret is one the GatewayClassConfig reads credentials from."""
    refs = [config.spec.cloudflareCredentialsSecretRef]
    if config.spec.tunnelTokenSecretRef is not None:
        refs.append(config.spec.tunnelTokenSecretRef)

    return any(
        ref.name == secret_name and (ref.namespace or default_namespace) == secret_namespace
        for ref in refs
    )
