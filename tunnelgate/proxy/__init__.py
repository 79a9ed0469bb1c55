# tunnelgate Reverse Proxy
from .app import API_KEY_HEADER, RouteTable, create_proxy_app
from .server import ProxyServer, build_proxy_server

__all__ = [
    "API_KEY_HEADER",
    "RouteTable",
    "create_proxy_app",
    "ProxyServer",
    "build_proxy_server",
]
