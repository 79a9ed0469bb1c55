# tunnelgate Services
from tunnelgate.services.cloudflare import CloudflareClient
from tunnelgate.services.provisioning import ProvisioningService, get_provisioning_service
from tunnelgate.services.route_registry import RouteRegistry
from tunnelgate.services.supervisor import (
    TunnelSupervisor,
    get_tunnel_store,
    get_tunnel_supervisor,
)
from tunnelgate.services.tunnel_store import TunnelStore

__all__ = [
    "CloudflareClient",
    "ProvisioningService",
    "RouteRegistry",
    "TunnelStore",
    "TunnelSupervisor",
    "get_provisioning_service",
    "get_tunnel_store",
    "get_tunnel_supervisor",
]
