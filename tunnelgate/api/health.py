"""Health check endpoint for the control API.

Reports the control API as healthy whenever it answers; the tunnel and
proxy fields are informational and never turn the check unhealthy.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tunnelgate.core import settings
from tunnelgate.services.supervisor import TunnelSupervisor, get_tunnel_supervisor

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    tunnel: str = "stopped"
    proxy: str = "stopped"


@router.get("/health", response_model=HealthResponse)
async def health_check(
    supervisor: TunnelSupervisor = Depends(get_tunnel_supervisor),
) -> HealthResponse:
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        tunnel=supervisor.state.value,
        proxy="running" if supervisor.proxy_running else "stopped",
    )
