"""Tunnel API endpoints - credentials, provisioning and agent lifecycle.

Used by the local configuration UI. Workflow outcomes (a failed Cloudflare call,
an agent that would not start) are returned as ``success: false`` results with
a message the UI shows verbatim; HTTP errors are reserved for requests that
cannot be attempted at all.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from tunnelgate.core.config import settings
from tunnelgate.core.exceptions import ConfigurationError
from tunnelgate.schemas.tunnel import (
    CredentialCheckResult,
    CredentialsRequest,
    OperationResult,
    RouteSummary,
    SetupRequest,
    SetupResult,
    StartResult,
    TunnelRecord,
    TunnelStatus,
)
from tunnelgate.services.provisioning import ProvisioningService, get_provisioning_service
from tunnelgate.services.route_registry import RouteRegistry
from tunnelgate.services.supervisor import TunnelSupervisor, get_tunnel_supervisor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tunnel", tags=["tunnel"])

NO_CREDENTIALS = "No Cloudflare credentials configured. Save your credentials first."


@router.get("/status", response_model=TunnelStatus)
async def get_tunnel_status(
    supervisor: TunnelSupervisor = Depends(get_tunnel_supervisor),
) -> TunnelStatus:
    """Get current tunnel status. Liveness is re-checked on every call."""
    return supervisor.status()


@router.put("/credentials", response_model=OperationResult)
async def save_credentials(
    request: CredentialsRequest,
    supervisor: TunnelSupervisor = Depends(get_tunnel_supervisor),
) -> OperationResult:
    """Store Cloudflare credentials (account id, zone id, API token)."""
    supervisor.store.save_credentials(request.to_credentials())
    return OperationResult(success=True, message="Credentials saved")


@router.post("/credentials/test", response_model=CredentialCheckResult)
async def test_credentials(
    request: CredentialsRequest | None = None,
    supervisor: TunnelSupervisor = Depends(get_tunnel_supervisor),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> CredentialCheckResult:
    """Validate credentials with read-only API calls.

    Tests the submitted credentials, or the stored ones when the body is empty.
    """
    credentials = request.to_credentials() if request else supervisor.store.load_credentials()
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=NO_CREDENTIALS)
    return await provisioning.test_credentials(credentials)


@router.post(
    "/setup",
    response_model=SetupResult,
    response_model_exclude={"tunnel_token"},
)
async def setup_tunnel(
    request: SetupRequest,
    supervisor: TunnelSupervisor = Depends(get_tunnel_supervisor),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> SetupResult:
    """Provision a named tunnel pointing ``subdomain.zone`` at the local proxy.

    The tunnel record is only saved when every required step succeeded.
    """
    store = supervisor.store
    credentials = store.load_credentials()
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=NO_CREDENTIALS)

    existing = store.load_record()
    if existing is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Tunnel '{existing.tunnel_name}' is already set up. Delete it first.",
        )

    result = await provisioning.setup_tunnel(
        credentials,
        tunnel_name=request.tunnel_name,
        subdomain=request.subdomain,
        local_port=settings.proxy_port,
    )
    if result.success:
        store.save_record(
            TunnelRecord(
                credentials=credentials,
                tunnel_id=result.tunnel_id,
                tunnel_name=request.tunnel_name,
                subdomain=request.subdomain,
                hostname=result.hostname,
                tunnel_token=result.tunnel_token,
            )
        )
    return result


@router.post("/teardown", response_model=OperationResult)
async def teardown_tunnel(
    supervisor: TunnelSupervisor = Depends(get_tunnel_supervisor),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> OperationResult:
    """Stop the agent, then delete the DNS record and the tunnel.

    The local record is kept when the tunnel could not be deleted, so the
    teardown can be retried.
    """
    record = supervisor.store.load_record()
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No tunnel configured.",
        )

    if supervisor.is_running():
        await supervisor.stop()

    result = await provisioning.teardown_tunnel(
        record.credentials, record.tunnel_id, record.hostname
    )
    if result.success:
        supervisor.store.clear_tunnel()
    return result


@router.post("/start", response_model=StartResult)
async def start_tunnel(
    supervisor: TunnelSupervisor = Depends(get_tunnel_supervisor),
) -> StartResult:
    """Start the named tunnel (or reattach to a running agent)."""
    try:
        return await supervisor.start_with_token()
    except Exception as e:
        logger.exception(f"Failed to start tunnel: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An internal error occurred while starting the tunnel.",
        ) from e


@router.post("/quick", response_model=StartResult)
async def start_quick_tunnel(
    supervisor: TunnelSupervisor = Depends(get_tunnel_supervisor),
) -> StartResult:
    """Start an ephemeral trycloudflare.com tunnel to the local proxy."""
    try:
        return await supervisor.start_quick()
    except Exception as e:
        logger.exception(f"Failed to start quick tunnel: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An internal error occurred while starting the tunnel.",
        ) from e


@router.post("/stop", response_model=OperationResult)
async def stop_tunnel(
    supervisor: TunnelSupervisor = Depends(get_tunnel_supervisor),
) -> OperationResult:
    """Stop the agent and the proxy. Stopping a stopped tunnel succeeds."""
    return await supervisor.stop()


@router.get("/routes", response_model=list[RouteSummary])
async def list_routes() -> list[RouteSummary]:
    """Routes the proxy would expose, as declared by plugin manifests."""
    registry = RouteRegistry(settings.plugins_path, settings.auth_path)
    try:
        mappings = registry.discover_routes()
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from None

    return [
        RouteSummary(
            plugin_id=m.plugin_id,
            prefix=m.path_prefix,
            port=m.target_port,
            routes=list(m.routes),
        )
        for m in mappings
    ]
