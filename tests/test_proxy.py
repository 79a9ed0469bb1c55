"""Tests for the tunnel proxy - prefix routing, whitelist and API key checks.

The backend plugin server is an in-process FastAPI app reached through
httpx.ASGITransport, so the proxy is exercised end to end without sockets.
"""

import json

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from httpx import ASGITransport, AsyncClient

from tests.conftest import CHROME_HISTORY_TUNNEL, write_manifest
from tunnelgate.core.exceptions import RoutingError
from tunnelgate.proxy.app import API_KEY_HEADER, RouteTable, create_proxy_app
from tunnelgate.schemas.tunnel import RouteMapping, TunnelRoute
from tunnelgate.services.route_registry import RouteRegistry

API_KEY = "chrome-history-secret"

CHROME_HISTORY = RouteMapping(
    plugin_id="chrome-history",
    path_prefix="/chrome-history",
    target_port=3457,
    routes=(TunnelRoute(path="/api/chrome-history", auth="api-key"),),
)

PUBLIC_STATUS = RouteMapping(
    plugin_id="status-board",
    path_prefix="/status",
    target_port=3500,
    routes=(TunnelRoute(path="/public"),),
)


def make_backend() -> FastAPI:
    """Echo server standing in for plugin backends."""
    backend = FastAPI()

    @backend.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE"])
    async def echo(request: Request, path: str) -> JSONResponse:
        body = await request.body()
        return JSONResponse(
            status_code=201 if request.method == "POST" else 200,
            content={
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query,
                "host": request.headers.get("host"),
                "body": body.decode(),
            },
            headers={"X-Backend": "echo"},
        )

    return backend


@pytest.fixture
def backend_client():
    return httpx.AsyncClient(transport=ASGITransport(app=make_backend()))


@pytest.fixture
def proxy_app(backend_client):
    return create_proxy_app(
        [CHROME_HISTORY, PUBLIC_STATUS],
        {"chrome-history": API_KEY, "status-board": None},
        http_client=backend_client,
    )


@pytest_asyncio.fixture
async def client(proxy_app, backend_client):
    async with AsyncClient(transport=ASGITransport(app=proxy_app), base_url="http://tunnel") as c:
        yield c
    await backend_client.aclose()


async def send_raw_path(app, path: str, headers: list | None = None) -> tuple[int, bytes]:
    """Drive the ASGI app with an unnormalised path and collect status and body."""
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "root_path": "",
        "headers": [(b"host", b"tunnel"), *(headers or [])],
        "client": ("127.0.0.1", 50000),
        "server": ("tunnel", 80),
    }
    messages = []

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message):
        messages.append(message)

    await app(scope, receive, send)
    status = next(m["status"] for m in messages if m["type"] == "http.response.start")
    body = b"".join(m.get("body", b"") for m in messages if m["type"] == "http.response.body")
    return status, body


class TestRouteTable:
    """Test prefix matching and the whitelist, independent of HTTP."""

    def test_prefix_matches_on_segment_boundary(self):
        table = RouteTable([CHROME_HISTORY], {})
        assert table.match_prefix("/chrome-history") is CHROME_HISTORY
        assert table.match_prefix("/chrome-history/api") is CHROME_HISTORY
        assert table.match_prefix("/chrome-historyX/api") is None

    def test_longest_prefix_wins(self):
        outer = RouteMapping(plugin_id="outer", path_prefix="/a", target_port=1, routes=())
        inner = RouteMapping(plugin_id="inner", path_prefix="/a/b", target_port=2, routes=())
        table = RouteTable([outer, inner], {})

        assert table.match_prefix("/a/b/c").plugin_id == "inner"
        assert table.match_prefix("/a/c").plugin_id == "outer"

    def test_resolve_strips_prefix(self):
        table = RouteTable([CHROME_HISTORY], {})
        mapping, route, local_path = table.resolve("/chrome-history/api/chrome-history/recent")

        assert mapping is CHROME_HISTORY
        assert route.path == "/api/chrome-history"
        assert local_path == "/api/chrome-history/recent"

    def test_route_prefix_needs_segment_boundary(self):
        table = RouteTable([CHROME_HISTORY], {})
        with pytest.raises(RoutingError) as exc_info:
            table.resolve("/chrome-history/api/chrome-history-admin")
        assert exc_info.value.status_code == 403

    @pytest.mark.parametrize(
        "path",
        ["/status/public/../../admin", "/status/public/.", "/status/public/%2e%2E/admin"],
    )
    def test_dot_segments_are_rejected_before_matching(self, path):
        table = RouteTable([PUBLIC_STATUS], {})
        with pytest.raises(RoutingError) as exc_info:
            table.resolve(path)
        assert exc_info.value.status_code == 400

    def test_dots_inside_a_segment_are_allowed(self):
        files = RouteMapping(
            plugin_id="files",
            path_prefix="/files",
            target_port=1,
            routes=(TunnelRoute(path="/archive..tar"),),
        )
        _, _, local_path = RouteTable([files], {}).resolve("/files/archive..tar/.hidden")
        assert local_path == "/archive..tar/.hidden"

    def test_check_auth_skips_open_routes(self):
        table = RouteTable([PUBLIC_STATUS], {})
        table.check_auth(PUBLIC_STATUS, PUBLIC_STATUS.routes[0], None)


@pytest.mark.asyncio
class TestProxyForwarding:
    """Requests that pass every check reach the backend unchanged."""

    async def test_authorized_request_is_forwarded(self, client):
        response = await client.get(
            "/chrome-history/api/chrome-history?limit=5",
            headers={API_KEY_HEADER: API_KEY},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["method"] == "GET"
        assert data["path"] == "/api/chrome-history"
        assert data["query"] == "limit=5"
        assert data["host"] == "localhost:3457"
        assert response.headers["x-backend"] == "echo"

    async def test_sub_path_of_whitelisted_route_is_forwarded(self, client):
        response = await client.get(
            "/chrome-history/api/chrome-history/2024/01",
            headers={API_KEY_HEADER: API_KEY},
        )

        assert response.status_code == 200
        assert response.json()["path"] == "/api/chrome-history/2024/01"

    async def test_body_and_status_are_passed_through(self, client):
        response = await client.post(
            "/chrome-history/api/chrome-history",
            headers={API_KEY_HEADER: API_KEY},
            content=b'{"query": "python"}',
        )

        assert response.status_code == 201
        assert response.json()["body"] == '{"query": "python"}'

    async def test_open_route_needs_no_key(self, client):
        response = await client.get("/status/public")

        assert response.status_code == 200
        assert response.json()["host"] == "localhost:3500"


@pytest.mark.asyncio
class TestProxyRejections:
    """Blocked requests never reach the backend."""

    async def test_unknown_prefix_returns_404_with_prefixes(self, client):
        response = await client.get("/unknown/path")

        assert response.status_code == 404
        assert response.json() == {
            "error": "Unknown route",
            "availablePrefixes": ["/chrome-history", "/status"],
        }

    async def test_prefix_without_boundary_is_unknown(self, client):
        response = await client.get("/chrome-historyX/api/chrome-history")
        assert response.status_code == 404

    async def test_route_outside_whitelist_returns_403(self, client):
        response = await client.get(
            "/chrome-history/api/admin",
            headers={API_KEY_HEADER: API_KEY},
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Route not allowed"}

    async def test_missing_key_returns_401(self, client):
        response = await client.get("/chrome-history/api/chrome-history")

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or missing API key"}

    async def test_wrong_key_returns_401(self, client):
        response = await client.get(
            "/chrome-history/api/chrome-history",
            headers={API_KEY_HEADER: "not-the-key"},
        )
        assert response.status_code == 401

    async def test_empty_key_returns_401(self, client):
        response = await client.get(
            "/chrome-history/api/chrome-history",
            headers={API_KEY_HEADER: ""},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or missing API key"}

    @pytest.mark.parametrize(
        "path",
        [
            "/status/public/../../admin",
            "/status/public/../secret",
            "/status/./public/%2e%2e/admin",
            "/chrome-history/api/chrome-history/%2E%2E/%2e%2e/admin",
        ],
    )
    async def test_dot_segments_never_reach_backend(self, path):
        """Sent as a raw ASGI path, since HTTP clients normalise dot segments themselves."""
        forwarded = []

        def handler(request: httpx.Request) -> httpx.Response:
            forwarded.append(request.url.path)
            return httpx.Response(200, json={"path": request.url.path})

        backend = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        app = create_proxy_app(
            [CHROME_HISTORY, PUBLIC_STATUS],
            {"chrome-history": API_KEY, "status-board": None},
            http_client=backend,
        )

        status, body = await send_raw_path(app, path, headers=[(b"x-api-key", API_KEY.encode())])
        await backend.aclose()

        assert status == 400
        assert json.loads(body) == {"error": "Invalid path"}
        assert forwarded == []

    async def test_unconfigured_key_returns_500(self, backend_client):
        app = create_proxy_app([CHROME_HISTORY], {"chrome-history": None}, http_client=backend_client)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://tunnel") as c:
            response = await c.get(
                "/chrome-history/api/chrome-history",
                headers={API_KEY_HEADER: "anything"},
            )

        assert response.status_code == 500
        assert response.json() == {"error": "API key not configured for this plugin"}


@pytest.mark.asyncio
class TestBackendFailures:
    """Backend connection problems map to gateway errors."""

    async def _get_through(self, handler) -> httpx.Response:
        backend = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        app = create_proxy_app([PUBLIC_STATUS], {}, http_client=backend)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://tunnel") as c:
            response = await c.get("/status/public")
        await backend.aclose()
        return response

    async def test_backend_down_returns_502(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        response = await self._get_through(refuse)

        assert response.status_code == 502
        assert response.json() == {"error": "Backend unavailable"}

    async def test_backend_timeout_returns_504(self):
        def hang(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        response = await self._get_through(hang)

        assert response.status_code == 504
        assert response.json() == {"error": "Backend timed out"}


@pytest.mark.asyncio
async def test_health_lists_routes_without_secrets(client):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert {r["prefix"] for r in data["routes"]} == {"/chrome-history", "/status"}
    assert API_KEY not in response.text


@pytest.mark.asyncio
class TestChromeHistoryPlugin:
    """A manifest-driven table, as the registry builds it, served end to end."""

    @pytest_asyncio.fixture
    async def plugin_client(self, plugins_dir, auth_dir, backend_client):
        write_manifest(plugins_dir, "chrome-history", CHROME_HISTORY_TUNNEL)
        (auth_dir / "chrome-history-api-key.txt").write_text(API_KEY + "\n")
        mappings, api_keys = RouteRegistry(plugins_dir, auth_dir).load()

        app = create_proxy_app(mappings, api_keys, http_client=backend_client)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://tunnel") as c:
            yield c
        await backend_client.aclose()

    async def test_post_with_key_reaches_plugin_port(self, plugin_client):
        response = await plugin_client.post(
            "/chrome-history/api/chrome-history",
            headers={API_KEY_HEADER: API_KEY},
            json={"search": "docs"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["host"] == "localhost:3457"
        assert data["path"] == "/api/chrome-history"

    async def test_post_without_key_is_unauthorized(self, plugin_client):
        response = await plugin_client.post("/chrome-history/api/chrome-history", json={})
        assert response.status_code == 401

    async def test_admin_path_is_forbidden(self, plugin_client):
        response = await plugin_client.post(
            "/chrome-history/admin",
            headers={API_KEY_HEADER: API_KEY},
        )
        assert response.status_code == 403
