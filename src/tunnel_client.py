#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""A small client for the Cloudflare Tunnel configuration API."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from models import IngressRule

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_TIMEOUT = 30.0

ERROR_AUTH = "auth"
ERROR_RATE_LIMIT = "rate_limit"
ERROR_SERVER = "server_error"
ERROR_CLIENT = "client_error"
ERROR_TIMEOUT = "timeout"
ERROR_NETWORK = "network"
ERROR_UNKNOWN = "unknown"


class TunnelAPIError(RuntimeError):
    """Raised when a call to the tunnel API fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_type: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type or classify_status(status_code, message)


def classify_status(status_code: Optional[int], message: str = "") -> str:
    """Classify an API failure for logging.

    The HTTP status decides when there is one, otherwise the message is inspected.
    """
    if status_code is not None:
        if status_code in (401, 403):
            return ERROR_AUTH
        if status_code == 429:
            return ERROR_RATE_LIMIT
        if 500 <= status_code < 600:
            return ERROR_SERVER
        if 400 <= status_code < 500:
            return ERROR_CLIENT

    lowered = message.lower()
    if "timeout" in lowered or "deadline" in lowered:
        return ERROR_TIMEOUT
    if "connection refused" in lowered or "no such host" in lowered:
        return ERROR_NETWORK
    return ERROR_UNKNOWN


def classify_error(error: Exception) -> str:
    """Return the error type of any exception raised while talking to the tunnel API."""
    if isinstance(error, TunnelAPIError):
        return error.error_type
    if isinstance(error, httpx.TimeoutException):
        return ERROR_TIMEOUT
    if isinstance(error, httpx.TransportError):
        return ERROR_NETWORK
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code, str(error))
    return classify_status(None, str(error))


class TunnelClient:
    """Reads and replaces the ingress configuration of a remotely managed tunnel."""

    def __init__(
        self,
        api_token: str,
        base_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_token}"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TunnelAPIError(f"{method} {url} timed out: {e}", error_type=ERROR_TIMEOUT) from e
        except httpx.TransportError as e:
            raise TunnelAPIError(f"{method} {url} failed: {e}", error_type=ERROR_NETWORK) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error or not body.get("success", False):
            errors = body.get("errors") or []
            details = "; ".join(
                f"{error.get('code')}: {error.get('message')}" for error in errors if isinstance(error, dict)
            )
            raise TunnelAPIError(
                f"{method} {url} returned {response.status_code}: {details or response.reason_phrase}",
                status_code=response.status_code if response.is_error else None,
            )
        return body.get("result")

    @staticmethod
    def _configurations_url(account_id: str, tunnel_id: str) -> str:
        return f"/accounts/{account_id}/cfd_tunnel/{tunnel_id}/configurations"

    def get_configuration(self, account_id: str, tunnel_id: str) -> List[IngressRule]:
        """Return the ingress rules currently active on the tunnel."""
        result = self._request("GET", self._configurations_url(account_id, tunnel_id)) or {}
        config = result.get("config") or {}
        return [IngressRule.model_validate(rule) for rule in config.get("ingress") or []]

    def update_configuration(
        self, account_id: str, tunnel_id: str, rules: List[IngressRule]
    ) -> None:
        """Replace the tunnel's ingress rules; the write either fully applies or fails."""
        payload: Dict[str, Any] = {"config": {"ingress": [rule.to_api() for rule in rules]}}
        self._request("PUT", self._configurations_url(account_id, tunnel_id), json=payload)
        logger.debug(f"Updated tunnel {tunnel_id} with {len(rules)} ingress rules")

    def list_accounts(self) -> List[Dict[str, Any]]:
        """Return the accounts the API token has access to."""
        return self._request("GET", "/accounts") or []
