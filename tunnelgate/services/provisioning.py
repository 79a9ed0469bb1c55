"""Provisioning service - creates and tears down a named tunnel end to end.

Setup runs a fixed sequence:

    verify zone -> create tunnel -> configure ingress -> mint run token -> DNS record

Ingress and token failures delete the tunnel that was just created. A DNS
failure is only a warning: the tunnel and token still work and the operator
can add the record by hand. Nothing is retried here; a failed setup is rerun
from the start.
"""

import logging
from collections.abc import Callable

import httpx

from tunnelgate.core.exceptions import ProviderAPIError
from tunnelgate.schemas.tunnel import (
    CredentialCheckResult,
    OperationResult,
    SetupResult,
    TunnelCredentials,
)
from tunnelgate.services.cloudflare import CloudflareClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[TunnelCredentials], CloudflareClient]


def build_hostname(subdomain: str, zone_name: str) -> str:
    """``sub.zone`` for a subdomain, the zone apex otherwise."""
    return f"{subdomain}.{zone_name}" if subdomain else zone_name


class ProvisioningService:
    """Runs the provisioning and teardown workflows against Cloudflare."""

    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if client_factory is None:

            def client_factory(credentials: TunnelCredentials) -> CloudflareClient:
                return CloudflareClient(credentials, transport=transport)

        self._client_factory = client_factory

    def _client(self, credentials: TunnelCredentials) -> CloudflareClient:
        return self._client_factory(credentials)

    async def test_credentials(self, credentials: TunnelCredentials) -> CredentialCheckResult:
        """Validate credentials with read-only calls (zone fetch, tunnel list)."""
        client = self._client(credentials)

        try:
            zone_name = await client.get_zone_name()
        except ProviderAPIError as e:
            logger.info(f"Credential check failed on zone lookup: {e}")
            return CredentialCheckResult(
                success=False,
                message=f"Invalid Zone ID or insufficient permissions: {e}",
            )

        try:
            await client.list_tunnels()
        except ProviderAPIError as e:
            logger.info(f"Credential check failed on tunnel list: {e}")
            return CredentialCheckResult(
                success=False,
                message=f"Invalid Account ID or insufficient permissions: {e}",
            )

        return CredentialCheckResult(
            success=True,
            message=f"Connected to domain: {zone_name}",
            zone_name=zone_name,
        )

    async def _rollback_tunnel(self, client: CloudflareClient, tunnel_id: str) -> None:
        """Delete a half-provisioned tunnel. Failure is logged, not raised."""
        logger.info(f"Rolling back: deleting tunnel {tunnel_id}")
        try:
            await client.delete_tunnel(tunnel_id)
        except ProviderAPIError as e:
            logger.error(
                f"Rollback failed, tunnel {tunnel_id} must be deleted manually: {e}"
            )

    async def setup_tunnel(
        self,
        credentials: TunnelCredentials,
        tunnel_name: str,
        subdomain: str,
        local_port: int,
    ) -> SetupResult:
        """Provision a tunnel that forwards ``subdomain.zone`` to the local proxy.

        Returns:
            SetupResult; on success it carries tunnel_id, tunnel_token and
            hostname for the caller to persist.
        """
        client = self._client(credentials)

        try:
            zone_name = await client.get_zone_name()
        except ProviderAPIError as e:
            logger.warning(f"Setup aborted, zone lookup failed: {e}")
            return SetupResult(success=False, message=f"Failed to get zone name: {e}")

        hostname = build_hostname(subdomain, zone_name)

        logger.info(f"Creating tunnel '{tunnel_name}'")
        try:
            tunnel = await client.create_tunnel(tunnel_name)
        except ProviderAPIError as e:
            logger.warning(f"Setup aborted, tunnel creation failed: {e}")
            return SetupResult(success=False, message=f"Failed to create tunnel: {e}")
        tunnel_id = tunnel["id"]
        logger.info(f"Tunnel created: {tunnel_id}")

        service_url = f"http://localhost:{local_port}"
        try:
            await client.configure_ingress(tunnel_id, hostname, service_url)
        except ProviderAPIError as e:
            logger.warning(f"Ingress configuration failed: {e}")
            await self._rollback_tunnel(client, tunnel_id)
            return SetupResult(success=False, message=f"Failed to configure tunnel: {e}")
        logger.info(f"Ingress configured: {hostname} -> {service_url}")

        try:
            tunnel_token = await client.get_tunnel_token(tunnel_id)
        except ProviderAPIError as e:
            logger.warning(f"Token retrieval failed: {e}")
            await self._rollback_tunnel(client, tunnel_id)
            return SetupResult(success=False, message=f"Failed to get tunnel token: {e}")
        logger.info("Tunnel token retrieved")

        warnings: list[str] = []
        try:
            action = await client.upsert_dns_record(tunnel_id, hostname)
            logger.info(f"DNS record {action} for {hostname}")
        except ProviderAPIError as e:
            # Non-fatal - the tunnel works and the record can be added manually
            warning = f"DNS record for {hostname} could not be created: {e}"
            logger.warning(warning)
            warnings.append(warning)

        return SetupResult(
            success=True,
            message=f"Tunnel setup complete! Your URL: https://{hostname}",
            tunnel_id=tunnel_id,
            tunnel_token=tunnel_token,
            hostname=hostname,
            warnings=warnings,
        )

    async def teardown_tunnel(
        self,
        credentials: TunnelCredentials,
        tunnel_id: str,
        hostname: str,
    ) -> OperationResult:
        """Delete the DNS record, then the tunnel.

        The DNS step is best effort. The result is only successful once the
        tunnel itself is gone; the caller keeps its record otherwise.
        """
        client = self._client(credentials)

        try:
            if await client.delete_dns_record(hostname):
                logger.info(f"Deleted DNS record for {hostname}")
            else:
                logger.info(f"No DNS record for {hostname} (already deleted)")
        except ProviderAPIError as e:
            logger.warning(f"Could not delete DNS record for {hostname}: {e}")

        try:
            await client.cleanup_tunnel_connections(tunnel_id)
        except ProviderAPIError:
            pass  # Connection cleanup is best-effort

        try:
            await client.delete_tunnel(tunnel_id)
        except ProviderAPIError as e:
            if e.status_code == 404:
                logger.info(f"Tunnel {tunnel_id} no longer exists")
                return OperationResult(success=True, message="Tunnel already deleted")
            logger.error(f"Failed to delete tunnel {tunnel_id}: {e}")
            return OperationResult(success=False, message=f"Failed to delete tunnel: {e}")

        logger.info(f"Deleted tunnel {tunnel_id}")
        return OperationResult(success=True, message="Tunnel deleted")


def get_provisioning_service() -> ProvisioningService:
    """Provisioning service talking to the real Cloudflare API."""
    return ProvisioningService()
