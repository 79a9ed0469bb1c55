"""tunnelgate command line.

Usage:
    tunnelgate serve            # control API for the configuration UI
    tunnelgate proxy            # reverse proxy only
    tunnelgate run              # proxy + tunnel agent, restarted if it crashes
    tunnelgate status           # print tunnel status as JSON
    tunnelgate stop             # stop a running tunnel agent
"""

import argparse
import asyncio
import json
import signal
import sys

import uvicorn

from tunnelgate.core import settings, setup_logging
from tunnelgate.core.exceptions import ConfigurationError
from tunnelgate.core.logging import get_logger
from tunnelgate.proxy.server import build_proxy_server
from tunnelgate.services.supervisor import TunnelSupervisor, get_tunnel_store

logger = get_logger("cli")


def _install_shutdown_handlers(callback) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, callback)


async def _run_proxy(host: str, port: int) -> None:
    server = build_proxy_server(host=host, port=port)
    stop_event = asyncio.Event()
    _install_shutdown_handlers(stop_event.set)

    await server.start()
    try:
        await stop_event.wait()
    finally:
        await server.stop()


async def _run_standalone() -> int:
    store = get_tunnel_store()
    record = store.load_record()
    if record is None or not record.is_configured:
        print("ERROR: No tunnel configured. Run setup from the configuration UI first.")
        return 1

    supervisor = TunnelSupervisor(store, proxy_factory=build_proxy_server)
    if supervisor.is_running():
        print(f"ERROR: A tunnel agent is already running (pid {supervisor.current_pid()}).")
        print("Stop it with `tunnelgate stop` first.")
        return 1

    _install_shutdown_handlers(supervisor.request_shutdown)
    print(f"Tunnel URL: {record.public_url}")
    await supervisor.supervise(record)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    uvicorn.run(
        "tunnelgate.main:app",
        host=args.host or settings.control_host,
        port=args.port or settings.control_port,
        log_config=None,
    )
    return 0


def cmd_proxy(args: argparse.Namespace) -> int:
    try:
        asyncio.run(_run_proxy(args.host or settings.proxy_host, args.port or settings.proxy_port))
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return 1
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_run_standalone())
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return 1


def cmd_status(args: argparse.Namespace) -> int:
    supervisor = TunnelSupervisor(get_tunnel_store())
    status = supervisor.status()
    print(json.dumps(status.model_dump(mode="json", by_alias=True), indent=2))
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    supervisor = TunnelSupervisor(get_tunnel_store())
    result = asyncio.run(supervisor.stop())
    print(result.message)
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tunnelgate",
        description="Expose local plugin servers through a Cloudflare tunnel",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help=f"Log level (default: {settings.log_level})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the control API")
    serve.add_argument("--host", help=f"Bind address (default: {settings.control_host})")
    serve.add_argument("--port", type=int, help=f"Port (default: {settings.control_port})")
    serve.set_defaults(func=cmd_serve)

    proxy = subparsers.add_parser("proxy", help="Run the reverse proxy only")
    proxy.add_argument("--host", help=f"Bind address (default: {settings.proxy_host})")
    proxy.add_argument("--port", type=int, help=f"Port (default: {settings.proxy_port})")
    proxy.set_defaults(func=cmd_proxy)

    run = subparsers.add_parser("run", help="Run proxy and tunnel agent in the foreground")
    run.set_defaults(func=cmd_run)

    status = subparsers.add_parser("status", help="Print tunnel status as JSON")
    status.set_defaults(func=cmd_status)

    stop = subparsers.add_parser("stop", help="Stop the tunnel agent")
    stop.set_defaults(func=cmd_stop)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(level=args.log_level or settings.log_level, format_type=settings.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
