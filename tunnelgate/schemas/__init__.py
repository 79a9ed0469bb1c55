# tunnelgate Schemas
from .tunnel import (
    CredentialCheckResult,
    CredentialsRequest,
    OperationResult,
    PluginManifest,
    RouteMapping,
    RouteSummary,
    SetupRequest,
    SetupResult,
    StartResult,
    SupervisorState,
    TunnelCredentials,
    TunnelManifest,
    TunnelRecord,
    TunnelRoute,
    TunnelStatus,
)

__all__ = [
    "CredentialCheckResult",
    "CredentialsRequest",
    "OperationResult",
    "PluginManifest",
    "RouteMapping",
    "RouteSummary",
    "SetupRequest",
    "SetupResult",
    "StartResult",
    "SupervisorState",
    "TunnelCredentials",
    "TunnelManifest",
    "TunnelRecord",
    "TunnelRoute",
    "TunnelStatus",
]
