"""JSON-RPC client for a ledger node's validator-discovery methods."""

from __future__ import annotations

import logging
from typing import Any, Optional

from hub_common.exceptions import NetworkFailure
from hub_common.http_client import HttpClient

logger = logging.getLogger(__name__)


def normalize_url(url: str) -> str:
    """Add an ``https://`` scheme to bare host[:port][/path] URLs."""
    if "://" in url:
        return url
    return f"https://{url}"


class NodeRpcClient:
    """Calls ``validators`` and ``manifest`` on a node over HTTP POST."""

    def __init__(self, url: str, http_client: HttpClient) -> None:
        self.url = normalize_url(url)
        self.http_client = http_client

    async def call(self, method: str, params: Optional[list[dict[str, Any]]] = None) -> dict[str, Any]:
        """Issue one JSON-RPC request and return its ``result`` object.

        Raises:
            NetworkFailure: transport error, timeout or a non-success status
        """
        payload: dict[str, Any] = {"method": method}
        if params is not None:
            payload["params"] = params
        response = await self.http_client.post_json(self.url, payload)
        result = response.get("result") if isinstance(response, dict) else None
        if not isinstance(result, dict):
            raise NetworkFailure(f"RPC {method} at {self.url} returned no result")
        if result.get("status") != "success":
            error = result.get("error_message") or result.get("error") or result.get("status")
            raise NetworkFailure(f"RPC {method} at {self.url} failed: {error}")
        return result

    async def fetch_trusted_validator_keys(self) -> list[str]:
        """Return the node's trusted validator (master) keys."""
        result = await self.call("validators")
        keys = result.get("trusted_validator_keys")
        if not isinstance(keys, list):
            raise NetworkFailure(f"RPC validators at {self.url} returned no trusted_validator_keys")
        return [key for key in keys if isinstance(key, str) and key]

    async def fetch_manifest(self, public_key: str) -> Optional[str]:
        """Return the newest known manifest for a key (base64), or None if the node has none."""
        result = await self.call("manifest", [{"public_key": public_key}])
        manifest = result.get("manifest")
        if not manifest:
            logger.debug(f"Node has no manifest for {public_key}")
            return None
        return manifest
