"""Tunnel proxy - routes tunnel traffic to plugin servers.

Only routes declared in plugin manifests are reachable. Anything under a known
prefix that is not whitelisted gets a 403, even if the backend would answer it.
"""

import hmac
import logging
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from urllib.parse import unquote

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from tunnelgate.core.config import settings
from tunnelgate.core.exceptions import RoutingError
from tunnelgate.schemas.tunnel import RouteMapping, TunnelRoute

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
HEALTH_PATH = "/health"
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]

# Hop-by-hop headers are connection-specific and never forwarded (RFC 9110 7.6.1)
HOP_BY_HOP_HEADERS = frozenset(
    {
        b"connection",
        b"keep-alive",
        b"proxy-authenticate",
        b"proxy-authorization",
        b"te",
        b"trailer",
        b"transfer-encoding",
        b"upgrade",
    }
)

_DOT_SEGMENTS = frozenset({".", ".."})


def has_dot_segment(path: str) -> bool:
    """True if any segment is `.` or `..`, also after percent-decoding it."""
    return any(unquote(segment) in _DOT_SEGMENTS for segment in path.split("/"))


class RouteTable:
    """Read-only lookup over the route mappings, longest prefix first."""

    def __init__(self, mappings: Iterable[RouteMapping], api_keys: dict[str, str | None]):
        self.mappings = sorted(mappings, key=lambda m: len(m.path_prefix), reverse=True)
        self._api_keys = dict(api_keys)

    @property
    def prefixes(self) -> list[str]:
        return sorted(m.path_prefix for m in self.mappings)

    def match_prefix(self, path: str) -> RouteMapping | None:
        for mapping in self.mappings:
            prefix = mapping.path_prefix
            if path == prefix or path.startswith(prefix + "/"):
                return mapping
        return None

    def resolve(self, path: str) -> tuple[RouteMapping, TunnelRoute, str]:
        """Find the mapping and whitelisted route for a request path.

        Returns:
            (mapping, route, local_path)

        Raises:
            RoutingError: 400 for a path with dot segments, 404 for an
                unknown prefix, 403 for a path outside the whitelist.
        """
        if has_dot_segment(path):
            raise RoutingError(400, "Invalid path")

        mapping = self.match_prefix(path)
        if mapping is None:
            raise RoutingError(404, "Unknown route", availablePrefixes=self.prefixes)

        local_path = path[len(mapping.path_prefix) :] or "/"
        route = mapping.match_route(local_path)
        if route is None:
            raise RoutingError(403, "Route not allowed")
        return mapping, route, local_path

    def check_auth(self, mapping: RouteMapping, route: TunnelRoute, provided: str | None) -> None:
        """Enforce the route's auth requirement.

        Raises:
            RoutingError: 500 when the plugin has no key configured, 401 when
                the supplied key is missing or wrong.
        """
        if route.auth != "api-key":
            return

        expected = self._api_keys.get(mapping.plugin_id)
        if not expected:
            raise RoutingError(500, "API key not configured for this plugin")

        if not provided or not hmac.compare_digest(
            provided.encode("utf-8"), expected.encode("utf-8")
        ):
            raise RoutingError(401, "Invalid or missing API key")


def _forward_headers(request: Request, host: str) -> list[tuple[bytes, bytes]]:
    headers = [
        (name, value)
        for name, value in request.headers.raw
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() != b"host"
    ]
    headers.append((b"host", host.encode("latin-1")))
    return headers


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


def create_proxy_app(
    mappings: Iterable[RouteMapping],
    api_keys: dict[str, str | None],
    http_client: httpx.AsyncClient | None = None,
    upstream_host: str | None = None,
    timeout: float | None = None,
) -> FastAPI:
    """Create the reverse proxy application.

    Args:
        mappings: Routing table built by the route registry
        api_keys: Plugin id -> API key (None when the plugin has no key file)
        http_client: Client used to reach backends; one is created on demand
            and closed on shutdown when omitted
        upstream_host: Host the backends listen on
        timeout: Backend request timeout in seconds
    """
    table = RouteTable(mappings, api_keys)
    upstream = upstream_host or settings.upstream_host
    owns_client = http_client is None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if not table.mappings:
            logger.warning("No plugins with tunnel routes configured")
        yield
        client = app.state.http_client
        if owns_client and client is not None:
            await client.aclose()
            app.state.http_client = None

    app = FastAPI(
        title="tunnelgate proxy",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.route_table = table
    app.state.http_client = http_client

    def get_client() -> httpx.AsyncClient:
        if app.state.http_client is None:
            app.state.http_client = httpx.AsyncClient(
                timeout=timeout if timeout is not None else settings.proxy_timeout,
                follow_redirects=False,
                trust_env=False,  # Backends are local; never route via HTTP(S)_PROXY
            )
        return app.state.http_client

    @app.exception_handler(RoutingError)
    async def routing_error_handler(request: Request, exc: RoutingError) -> JSONResponse:
        logger.info(f"Blocked: {request.method} {request.url.path} ({exc.status_code} {exc.error})")
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.get(HEALTH_PATH)
    async def health() -> dict:
        """Proxy health with the loaded routing table (no secrets)."""
        return {
            "status": "ok",
            "proxy": True,
            "timestamp": datetime.now(UTC).isoformat(),
            "routes": [
                {
                    "prefix": m.path_prefix,
                    "port": m.target_port,
                    "routeCount": len(m.routes),
                }
                for m in table.mappings
            ],
        }

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, full_path: str) -> Response:
        path = request.url.path
        mapping, route, local_path = table.resolve(path)
        table.check_auth(mapping, route, request.headers.get(API_KEY_HEADER))

        host = f"{upstream}:{mapping.target_port}"
        url = f"http://{host}{local_path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"

        client = get_client()
        upstream_request = client.build_request(
            request.method,
            url,
            headers=_forward_headers(request, host),
            content=request.stream() if _has_body(request) else None,
        )
        log_context = {"plugin": mapping.plugin_id}
        logger.info(f"Proxying: {request.method} {path} -> {host}{local_path}", extra=log_context)

        try:
            upstream_response = await client.send(upstream_request, stream=True)
        except httpx.TimeoutException:
            logger.warning(f"Backend timed out: {mapping.plugin_id} at {host}", extra=log_context)
            return JSONResponse(status_code=504, content={"error": "Backend timed out"})
        except httpx.HTTPError as e:
            logger.warning(f"Backend unavailable: {mapping.plugin_id} at {host}: {e}", extra=log_context)
            return JSONResponse(status_code=502, content={"error": "Backend unavailable"})

        response = StreamingResponse(
            upstream_response.aiter_raw(),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        response.raw_headers.extend(
            (name, value)
            for name, value in upstream_response.headers.raw
            if name.lower() not in HOP_BY_HOP_HEADERS
        )
        return response

    return app
