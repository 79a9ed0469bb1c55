"""Pytest configuration and fixtures for tunnelgate tests."""

import json
import os
import re
import tempfile
import uuid
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio

# Set test environment variables before importing app modules
os.environ["TUNNELGATE_BASE_DIR"] = tempfile.mkdtemp(prefix="tunnelgate-test-")
os.environ["TUNNELGATE_AGENT_BINARY"] = "tunnelgate-test-agent-not-installed"
os.environ["TUNNELGATE_LOG_LEVEL"] = "DEBUG"

from httpx import ASGITransport, AsyncClient  # noqa: E402

from tunnelgate.schemas.tunnel import TunnelCredentials, TunnelRecord  # noqa: E402
from tunnelgate.services.tunnel_store import TunnelStore  # noqa: E402

TEST_ACCOUNT_ID = "acc-123"
TEST_ZONE_ID = "zone-456"
TEST_ZONE_NAME = "example.com"
TEST_API_TOKEN = "cf-test-api-token-0123456789"
TEST_TUNNEL_TOKEN = "eyJhIjoiYWNjLTEyMyJ9"


# --- Plugin manifests ---


def write_manifest(plugins_dir: Path, plugin_id: str, tunnel: dict | None, **extra: Any) -> Path:
    """Write ``<plugins_dir>/<plugin_id>/manifest.json`` and return its path."""
    plugin_dir = plugins_dir / plugin_id
    plugin_dir.mkdir(parents=True, exist_ok=True)
    manifest: dict[str, Any] = {"id": plugin_id, "name": plugin_id.title(), **extra}
    if tunnel is not None:
        manifest["tunnel"] = tunnel
    path = plugin_dir / "manifest.json"
    path.write_text(json.dumps(manifest))
    return path


CHROME_HISTORY_TUNNEL = {
    "enabled": True,
    "port": 3457,
    "pathPrefix": "/chrome-history",
    "routes": [{"path": "/api/chrome-history", "auth": "api-key"}],
}


@pytest.fixture
def plugins_dir(tmp_path: Path) -> Path:
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def auth_dir(tmp_path: Path) -> Path:
    path = tmp_path / "auth"
    path.mkdir()
    return path


# --- Credentials and records ---


@pytest.fixture
def credentials() -> TunnelCredentials:
    return TunnelCredentials(
        account_id=TEST_ACCOUNT_ID,
        zone_id=TEST_ZONE_ID,
        api_token=TEST_API_TOKEN,
    )


@pytest.fixture
def tunnel_record(credentials: TunnelCredentials) -> TunnelRecord:
    return TunnelRecord(
        credentials=credentials,
        tunnel_id="tun-789",
        tunnel_name="claude-plugins",
        subdomain="plugins",
        hostname=f"plugins.{TEST_ZONE_NAME}",
        tunnel_token=TEST_TUNNEL_TOKEN,
    )


@pytest.fixture
def store(auth_dir: Path) -> TunnelStore:
    return TunnelStore(auth_dir / "cloudflare-tunnel.json")


# --- Fake Cloudflare API ---


class FakeCloudflare:
    """Stateful in-memory stand-in for the Cloudflare v4 API.

    Mounted through ``httpx.MockTransport``. ``fail[op] = (status, message)``
    makes the named operation return a Cloudflare error envelope.

    Operations: get_zone, list_tunnels, create_tunnel, configure_ingress,
    get_token, cleanup_connections, delete_tunnel, list_dns, create_dns,
    update_dns, delete_dns.
    """

    def __init__(self, account_id: str = TEST_ACCOUNT_ID, zone_id: str = TEST_ZONE_ID):
        self.account_id = account_id
        self.zone_id = zone_id
        self.zone_name = TEST_ZONE_NAME
        self.tunnels: dict[str, dict[str, Any]] = {}
        self.configurations: dict[str, dict[str, Any]] = {}
        self.dns_records: dict[str, dict[str, Any]] = {}
        self.fail: dict[str, tuple[int, str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.transport = httpx.MockTransport(self.handle)

    @staticmethod
    def _ok(result: Any, status_code: int = 200) -> httpx.Response:
        return httpx.Response(status_code, json={"success": True, "errors": [], "result": result})

    @staticmethod
    def _error(status_code: int, message: str, code: int = 1000) -> httpx.Response:
        return httpx.Response(
            status_code,
            json={"success": False, "errors": [{"code": code, "message": message}], "result": None},
        )

    def _route(self, method: str, path: str) -> tuple[str, dict[str, str]]:
        account = re.escape(f"/accounts/{self.account_id}")
        zone = re.escape(f"/zones/{self.zone_id}")
        table = [
            ("GET", rf"^{zone}$", "get_zone"),
            ("GET", rf"^{account}/cfd_tunnel$", "list_tunnels"),
            ("POST", rf"^{account}/cfd_tunnel$", "create_tunnel"),
            ("PUT", rf"^{account}/cfd_tunnel/(?P<id>[^/]+)/configurations$", "configure_ingress"),
            ("GET", rf"^{account}/cfd_tunnel/(?P<id>[^/]+)/token$", "get_token"),
            ("DELETE", rf"^{account}/cfd_tunnel/(?P<id>[^/]+)/connections$", "cleanup_connections"),
            ("DELETE", rf"^{account}/cfd_tunnel/(?P<id>[^/]+)$", "delete_tunnel"),
            ("GET", rf"^{zone}/dns_records$", "list_dns"),
            ("POST", rf"^{zone}/dns_records$", "create_dns"),
            ("PUT", rf"^{zone}/dns_records/(?P<id>[^/]+)$", "update_dns"),
            ("DELETE", rf"^{zone}/dns_records/(?P<id>[^/]+)$", "delete_dns"),
        ]
        for verb, pattern, op in table:
            if verb == method:
                match = re.match(pattern, path)
                if match:
                    return op, match.groupdict()
        return "unknown", {}

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/client/v4")
        op, params = self._route(request.method, path)
        self.calls.append((op, request.method))

        if request.headers.get("authorization") != f"Bearer {TEST_API_TOKEN}":
            return self._error(403, "Authentication error", code=10000)
        if op == "unknown":
            return self._error(404, "Could not route to path", code=7003)
        if op in self.fail:
            status_code, message = self.fail[op]
            return self._error(status_code, message)

        body = json.loads(request.content) if request.content else {}
        tunnel_id = params.get("id")

        if op == "get_zone":
            return self._ok({"id": self.zone_id, "name": self.zone_name, "status": "active"})
        if op == "list_tunnels":
            name = request.url.params.get("name")
            tunnels = [t for t in self.tunnels.values() if name is None or t["name"] == name]
            return self._ok(tunnels)
        if op == "create_tunnel":
            new_id = str(uuid.uuid4())
            self.tunnels[new_id] = {"id": new_id, "name": body["name"], "secret": body["tunnel_secret"]}
            return self._ok({"id": new_id, "name": body["name"]})
        if op in ("configure_ingress", "get_token", "cleanup_connections", "delete_tunnel"):
            if tunnel_id not in self.tunnels:
                return self._error(404, "Tunnel not found", code=1003)
            if op == "configure_ingress":
                self.configurations[tunnel_id] = body["config"]
                return self._ok({"tunnel_id": tunnel_id, "config": body["config"]})
            if op == "get_token":
                return self._ok(f"token-for-{tunnel_id}")
            if op == "cleanup_connections":
                return httpx.Response(200, content=b"")
            del self.tunnels[tunnel_id]
            self.configurations.pop(tunnel_id, None)
            return self._ok({"id": tunnel_id})
        if op == "list_dns":
            name = request.url.params.get("name")
            return self._ok([r for r in self.dns_records.values() if r["name"] == name])
        if op == "create_dns":
            record_id = uuid.uuid4().hex
            self.dns_records[record_id] = {"id": record_id, **body}
            return self._ok(self.dns_records[record_id])
        if op == "update_dns":
            self.dns_records[tunnel_id] = {"id": tunnel_id, **body}
            return self._ok(self.dns_records[tunnel_id])
        if op == "delete_dns":
            if self.dns_records.pop(tunnel_id, None) is None:
                return self._error(404, "Record not found", code=81044)
            return self._ok({"id": tunnel_id})
        raise AssertionError(f"Unhandled fake op {op}")


@pytest.fixture
def fake_cloudflare() -> FakeCloudflare:
    return FakeCloudflare()


# --- Control API client ---


@pytest_asyncio.fixture
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the control API app (no lifespan)."""
    from tunnelgate.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
