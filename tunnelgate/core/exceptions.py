"""Exception hierarchy shared by the registry, proxy, provisioning and supervisor."""

from typing import Any


class TunnelGateError(Exception):
    """Base exception for all tunnelgate errors."""


class ConfigurationError(TunnelGateError):
    """Raised for missing credentials, agent binary, secrets or conflicting routes.

    Reported to the caller and never retried automatically.
    """


class ProviderAPIError(TunnelGateError):
    """Raised when a Cloudflare API call fails or returns ``success: false``."""

    def __init__(
        self,
        message: str,
        errors: list | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.errors = errors or []
        self.status_code = status_code


class ProcessError(TunnelGateError):
    """Raised when the tunnel agent cannot be spawned or exits unexpectedly."""


class RoutingError(TunnelGateError):
    """Client-facing proxy rejection (unknown prefix, not whitelisted, bad key).

    Rendered as a minimal JSON body; never logged as a system fault.
    """

    def __init__(self, status_code: int, error: str, **extra: Any):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.extra = extra

    def to_body(self) -> dict[str, Any]:
        return {"error": self.error, **self.extra}
