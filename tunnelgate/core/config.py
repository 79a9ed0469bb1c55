"""tunnelgate Configuration."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Every setting can be overridden with a ``TUNNELGATE_`` prefixed variable,
    e.g. ``TUNNELGATE_PROXY_PORT=4000``.
    """

    model_config = SettingsConfigDict(
        env_prefix="TUNNELGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "tunnelgate"
    app_version: str = "0.1.0"
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: str = "dev"  # "dev" or "structured"

    # Filesystem layout (relative paths resolve against base_dir)
    base_dir: Path = Field(default_factory=Path.cwd)
    plugins_dir: Path = Path("src/plugins")
    auth_dir: Path = Path("auth")
    logs_dir: Path = Path("logs")

    # Reverse proxy
    proxy_host: str = "127.0.0.1"
    proxy_port: int = Field(default=3458, ge=1, le=65535)
    upstream_host: str = "localhost"
    proxy_timeout: float = 60.0

    # Control API (used by the configuration UI)
    control_host: str = "127.0.0.1"
    control_port: int = Field(default=3459, ge=1, le=65535)

    # Tunnel agent
    agent_binary: str = "cloudflared"
    connect_timeout: float = 30.0
    stop_timeout: float = 5.0
    restart_backoff: float = 5.0

    # Provider API
    cloudflare_api_base: str = "https://api.cloudflare.com/client/v4"
    http_timeout: float = 30.0

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the log level is one the logging module understands."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("dev", "structured"):
            raise ValueError("log_format must be 'dev' or 'structured'")
        return v

    def _resolve(self, path: Path) -> Path:
        return path if path.is_absolute() else self.base_dir / path

    @property
    def plugins_path(self) -> Path:
        return self._resolve(self.plugins_dir)

    @property
    def auth_path(self) -> Path:
        return self._resolve(self.auth_dir)

    @property
    def logs_path(self) -> Path:
        return self._resolve(self.logs_dir)

    @property
    def tunnel_record_path(self) -> Path:
        """JSON file holding credentials and the provisioned tunnel."""
        return self.auth_path / "cloudflare-tunnel.json"

    @property
    def tunnel_pid_path(self) -> Path:
        """PID file of the detached tunnel agent."""
        return self.logs_path / "tunnel.pid"

    @property
    def agent_log_path(self) -> Path:
        """Agent stdout/stderr, kept in a file so the agent outlives us."""
        return self.logs_path / "cloudflared.log"

    @property
    def proxy_url(self) -> str:
        return f"http://localhost:{self.proxy_port}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
