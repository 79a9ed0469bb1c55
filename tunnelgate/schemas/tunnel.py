"""Pydantic schemas for plugin manifests, tunnel records and API results.

On-disk JSON (manifests, the tunnel record file) uses camelCase keys, so every
model accepts both the camelCase alias and the snake_case field name and
serialises by alias.
"""

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    SerializationInfo,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

_RESOURCE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$")
_PLUGIN_ID_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$")
_SUBDOMAIN_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)

AuthMode = Literal["none", "api-key"]


class CamelModel(BaseModel):
    """Base model accepting camelCase aliases and snake_case names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _reveal(value: SecretStr | None, info: SerializationInfo) -> str | None:
    """Serialize a secret in clear text only when the caller asks for it.

    The tunnel store passes ``context={"reveal_secrets": True}`` when writing
    the record file; everything else (API responses, logs) gets the mask.
    """
    if value is None:
        return None
    if info.context and info.context.get("reveal_secrets"):
        return value.get_secret_value()
    return str(value)


# =============================================================================
# Plugin manifests
# =============================================================================


class TunnelRoute(CamelModel):
    """A whitelisted route, relative to the plugin's path prefix."""

    model_config = ConfigDict(frozen=True)

    path: str
    auth: AuthMode = "none"

    @field_validator("auth", mode="before")
    @classmethod
    def normalize_auth(cls, v: Any) -> Any:
        # Older manifests use `auth: false` for unauthenticated routes
        if v is False or v is None:
            return "none"
        return v

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("Route path must start with '/'")
        if len(v) > 1:
            v = v.rstrip("/")
        return v


class TunnelManifest(CamelModel):
    """The ``tunnel`` block of a plugin manifest."""

    enabled: bool = False
    port: int | None = Field(default=None, ge=1, le=65535)
    path_prefix: str | None = None
    routes: list[TunnelRoute] = Field(default_factory=list)

    @field_validator("path_prefix")
    @classmethod
    def validate_path_prefix(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith("/"):
            raise ValueError("pathPrefix must start with '/'")
        v = v.rstrip("/")
        if not v:
            raise ValueError("pathPrefix must not be the root path")
        return v

    @model_validator(mode="after")
    def require_target_when_enabled(self) -> "TunnelManifest":
        if self.enabled and (self.port is None or self.path_prefix is None):
            raise ValueError("An enabled tunnel block needs both port and pathPrefix")
        return self


class PluginManifest(CamelModel):
    """Subset of a plugin's manifest.json relevant to tunnel routing."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., max_length=128)
    name: str | None = None
    tunnel: TunnelManifest | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        # The id names the plugin's key file under the auth directory
        if not _PLUGIN_ID_RE.match(v):
            raise ValueError(
                "Plugin id must start with a letter or digit and contain only "
                "alphanumeric characters, dots, hyphens, and underscores"
            )
        return v


class RouteMapping(CamelModel):
    """One plugin's routing entry in the proxy table. Read-only after startup."""

    model_config = ConfigDict(frozen=True)

    plugin_id: str
    path_prefix: str
    target_port: int
    routes: tuple[TunnelRoute, ...] = ()

    def match_route(self, local_path: str) -> TunnelRoute | None:
        """Return the whitelisted route covering ``local_path``, if any."""
        for route in self.routes:
            if local_path == route.path or local_path.startswith(route.path + "/"):
                return route
        return None


# =============================================================================
# Credentials and tunnel record
# =============================================================================


class TunnelCredentials(CamelModel):
    """Cloudflare API credentials. The token is never logged."""

    account_id: str = Field(..., min_length=1)
    zone_id: str = Field(..., min_length=1)
    api_token: SecretStr

    @field_serializer("api_token")
    def serialize_api_token(self, value: SecretStr, info: SerializationInfo) -> str | None:
        return _reveal(value, info)


class TunnelRecord(CamelModel):
    """A provisioned tunnel, persisted only after every setup step succeeded."""

    credentials: TunnelCredentials
    tunnel_id: str
    tunnel_name: str
    subdomain: str = ""
    hostname: str
    tunnel_token: SecretStr | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_serializer("tunnel_token")
    def serialize_tunnel_token(
        self, value: SecretStr | None, info: SerializationInfo
    ) -> str | None:
        return _reveal(value, info)

    @property
    def is_configured(self) -> bool:
        return self.tunnel_token is not None and bool(self.tunnel_token.get_secret_value())

    @property
    def public_url(self) -> str:
        return f"https://{self.hostname}"


# =============================================================================
# Operation results
# =============================================================================


class OperationResult(CamelModel):
    """Outcome of a workflow step. ``message`` is shown verbatim by the UI."""

    success: bool
    message: str


class CredentialCheckResult(OperationResult):
    zone_name: str | None = None


class SetupResult(OperationResult):
    tunnel_id: str | None = None
    tunnel_token: str | None = None
    hostname: str | None = None
    warnings: list[str] = Field(default_factory=list)


class StartResult(OperationResult):
    url: str | None = None
    pid: int | None = None
    reattached: bool = False


class SupervisorState(str, Enum):
    """Lifecycle states of the tunnel agent."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    REATTACHING = "reattaching"


class TunnelStatus(CamelModel):
    """Snapshot returned by the status endpoint. Contains no secrets."""

    agent_installed: bool
    credentials_configured: bool
    tunnel_configured: bool
    tunnel_running: bool
    proxy_running: bool
    state: SupervisorState
    tunnel_url: str | None = None
    pid: int | None = None
    tunnel_name: str | None = None
    hostname: str | None = None
    proxy_port: int


class RouteSummary(CamelModel):
    """Mapping description safe to expose on health/diagnostic endpoints."""

    plugin_id: str
    prefix: str
    port: int
    routes: list[TunnelRoute]


# =============================================================================
# Control API requests
# =============================================================================


class CredentialsRequest(CamelModel):
    """Credentials submitted by the configuration UI."""

    account_id: str = Field(..., min_length=1, max_length=64)
    zone_id: str = Field(..., min_length=1, max_length=64)
    api_token: SecretStr

    @field_validator("api_token")
    @classmethod
    def validate_api_token(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise ValueError("API token must not be empty")
        return v

    def to_credentials(self) -> TunnelCredentials:
        return TunnelCredentials(
            account_id=self.account_id,
            zone_id=self.zone_id,
            api_token=self.api_token,
        )


class SetupRequest(CamelModel):
    """Request to provision a named tunnel."""

    tunnel_name: str = Field(..., min_length=1, max_length=63)
    subdomain: str = Field(default="", max_length=200)

    @field_validator("tunnel_name")
    @classmethod
    def validate_tunnel_name(cls, v: str) -> str:
        if not _RESOURCE_NAME_RE.match(v):
            raise ValueError(
                "Name must start with a letter or digit and contain only "
                "alphanumeric characters, hyphens, and underscores"
            )
        return v

    @field_validator("subdomain")
    @classmethod
    def validate_subdomain(cls, v: str) -> str:
        v = v.strip().strip(".").lower()
        if v and not _SUBDOMAIN_RE.match(v):
            raise ValueError("Subdomain must be a valid DNS label (letters, digits, hyphens)")
        return v
