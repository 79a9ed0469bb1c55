"""Cloudflare API client - tunnel, ingress, token and DNS operations."""

import base64
import logging
import secrets
from typing import Any

import httpx

from tunnelgate.core.config import settings
from tunnelgate.core.exceptions import ProviderAPIError
from tunnelgate.schemas.tunnel import TunnelCredentials

logger = logging.getLogger(__name__)

# Catch-all rule appended after the hostname rule in every ingress config
CATCH_ALL_SERVICE = "http_status:404"


def tunnel_cname_target(tunnel_id: str) -> str:
    """DNS target that routes a proxied hostname into a named tunnel."""
    return f"{tunnel_id}.cfargotunnel.com"


class CloudflareClient:
    """Thin authenticated wrapper around the Cloudflare v4 REST API.

    Every call either returns the response ``result`` or raises
    ProviderAPIError. There are no retries; callers decide how to unwind.
    """

    def __init__(
        self,
        credentials: TunnelCredentials,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.credentials = credentials
        self.base_url = (base_url or settings.cloudflare_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout
        self._transport = transport

    @property
    def account_id(self) -> str:
        return self.credentials.account_id

    @property
    def zone_id(self) -> str:
        return self.credentials.zone_id

    def _get_headers(self) -> dict[str, str]:
        """Get headers for Cloudflare API requests."""
        return {
            "Authorization": f"Bearer {self.credentials.api_token.get_secret_value()}",
            "Content-Type": "application/json",
        }

    async def _cf_request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make a request to the Cloudflare API and return its ``result``."""
        url = f"{self.base_url}{path}"
        logger.debug(f"Cloudflare API {method} {path}")

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    url,
                    headers=self._get_headers(),
                    json=json,
                    params=params,
                )
        except httpx.TimeoutException as e:
            raise ProviderAPIError(f"Cloudflare API timeout: {method} {path}") from e
        except httpx.HTTPError as e:
            raise ProviderAPIError(f"Connection error: {e}") from e

        # Some CF API responses (e.g. DELETE 202) have empty bodies
        if not response.content or not response.content.strip():
            if response.is_success:
                return {}
            raise ProviderAPIError(
                f"Cloudflare API error: HTTP {response.status_code} (empty response)",
                status_code=response.status_code,
            )

        try:
            data: dict[str, Any] = response.json()
        except ValueError as e:
            raise ProviderAPIError(
                f"Cloudflare API error: HTTP {response.status_code} (invalid JSON)",
                status_code=response.status_code,
            ) from e

        if not data.get("success", False):
            errors = data.get("errors") or []
            error_messages = [
                e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors
            ]
            message = ", ".join(error_messages) or f"HTTP {response.status_code}"
            raise ProviderAPIError(
                f"Cloudflare API error: {message}",
                errors=errors,
                status_code=response.status_code,
            )

        logger.debug(f"Cloudflare API {method} {path} -> {response.status_code}")
        return data.get("result")

    # =========================================================================
    # Zones
    # =========================================================================

    async def get_zone(self) -> dict[str, Any]:
        """Fetch the configured zone (id, name, status)."""
        return await self._cf_request("GET", f"/zones/{self.zone_id}") or {}

    async def get_zone_name(self) -> str:
        zone = await self.get_zone()
        name = zone.get("name")
        if not name:
            raise ProviderAPIError("Cloudflare API error: zone has no name")
        return name

    # =========================================================================
    # Tunnels
    # =========================================================================

    async def list_tunnels(self, name: str | None = None) -> list[dict[str, Any]]:
        """List tunnels that have not been deleted."""
        params: dict[str, Any] = {"is_deleted": "false"}
        if name:
            params["name"] = name
        result = await self._cf_request(
            "GET", f"/accounts/{self.account_id}/cfd_tunnel", params=params
        )
        return result or []

    async def create_tunnel(self, name: str) -> dict[str, Any]:
        """Create a remotely-managed named tunnel with a fresh random secret."""
        tunnel_secret = base64.b64encode(secrets.token_bytes(32)).decode("utf-8")
        result = await self._cf_request(
            "POST",
            f"/accounts/{self.account_id}/cfd_tunnel",
            json={
                "name": name,
                "tunnel_secret": tunnel_secret,
                "config_src": "cloudflare",
            },
        )
        if not result or not result.get("id"):
            raise ProviderAPIError("Cloudflare API error: tunnel created without an id")
        return result

    async def configure_ingress(self, tunnel_id: str, hostname: str, service_url: str) -> None:
        """Route ``hostname`` to ``service_url``; everything else gets a 404."""
        await self._cf_request(
            "PUT",
            f"/accounts/{self.account_id}/cfd_tunnel/{tunnel_id}/configurations",
            json={
                "config": {
                    "ingress": [
                        {"hostname": hostname, "service": service_url},
                        {"service": CATCH_ALL_SERVICE},
                    ],
                },
            },
        )

    async def get_tunnel_token(self, tunnel_id: str) -> str:
        """Mint the long-lived run token for ``cloudflared tunnel run``."""
        result = await self._cf_request(
            "GET", f"/accounts/{self.account_id}/cfd_tunnel/{tunnel_id}/token"
        )
        if not result or not isinstance(result, str):
            raise ProviderAPIError("Cloudflare API error: empty tunnel token")
        return result

    async def cleanup_tunnel_connections(self, tunnel_id: str) -> None:
        """Drop active connections so the tunnel can be deleted."""
        await self._cf_request(
            "DELETE", f"/accounts/{self.account_id}/cfd_tunnel/{tunnel_id}/connections"
        )

    async def delete_tunnel(self, tunnel_id: str) -> None:
        await self._cf_request("DELETE", f"/accounts/{self.account_id}/cfd_tunnel/{tunnel_id}")

    # =========================================================================
    # DNS
    # =========================================================================

    async def find_dns_record(self, hostname: str) -> dict[str, Any] | None:
        records = await self._cf_request(
            "GET",
            f"/zones/{self.zone_id}/dns_records",
            params={"type": "CNAME", "name": hostname},
        )
        return records[0] if records else None

    async def upsert_dns_record(self, tunnel_id: str, hostname: str) -> str:
        """Point ``hostname`` at the tunnel with a proxied CNAME.

        Returns:
            "created" or "updated"
        """
        payload = {
            "type": "CNAME",
            "name": hostname,
            "content": tunnel_cname_target(tunnel_id),
            "proxied": True,
            "ttl": 1,  # Auto TTL
        }
        existing = await self.find_dns_record(hostname)
        if existing:
            await self._cf_request(
                "PUT", f"/zones/{self.zone_id}/dns_records/{existing['id']}", json=payload
            )
            return "updated"

        await self._cf_request("POST", f"/zones/{self.zone_id}/dns_records", json=payload)
        return "created"

    async def delete_dns_record(self, hostname: str) -> bool:
        """Delete the CNAME for ``hostname``.

        Returns:
            False if there was no record to delete.
        """
        existing = await self.find_dns_record(hostname)
        if not existing:
            return False
        await self._cf_request("DELETE", f"/zones/{self.zone_id}/dns_records/{existing['id']}")
        return True
