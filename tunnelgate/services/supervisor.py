"""Tunnel supervisor - manages the cloudflared agent process.

The agent is started in its own session with its output appended to a log file,
so it keeps running when this process exits. Its PID is written to a PID file;
a later supervisor instance adopts the running agent instead of spawning a
second one.

Liveness is never cached: every status query probes the in-memory handle or
the PID from the file.
"""

import asyncio
import logging
import os
import re
import shutil
import signal
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from tunnelgate.core.config import settings
from tunnelgate.core.exceptions import ConfigurationError, ProcessError
from tunnelgate.schemas.tunnel import (
    OperationResult,
    StartResult,
    SupervisorState,
    TunnelRecord,
    TunnelStatus,
)
from tunnelgate.services.tunnel_store import TunnelStore

if TYPE_CHECKING:
    from tunnelgate.proxy.server import ProxyServer

logger = logging.getLogger(__name__)
agent_logger = logging.getLogger("tunnelgate.agent")

# Lines indicating the agent registered a connection with the edge
CONNECTED_PATTERNS = [
    re.compile(r"connection.*registered", re.IGNORECASE),
    re.compile(r"registered.*connection", re.IGNORECASE),
    re.compile(r"tunnel.*connected", re.IGNORECASE),
]

# Lines after which the agent will never connect (bad or revoked token)
FATAL_PATTERNS = [
    re.compile(r"invalid.*token", re.IGNORECASE),
    re.compile(r"token.*not valid", re.IGNORECASE),
    re.compile(r"authentication.*failed", re.IGNORECASE),
    re.compile(r"unauthorized", re.IGNORECASE),
]

QUICK_TUNNEL_URL_RE = re.compile(r"https://[a-z0-9-]+\.trycloudflare\.com")

INSTALL_HINT = (
    "Install it from https://developers.cloudflare.com/cloudflare-one/"
    "connections/connect-apps/install-and-setup/installation/"
)

ProxyFactory = Callable[[], "ProxyServer"]


# =============================================================================
# PID file helpers
# =============================================================================


def read_pid_file(path: Path) -> int | None:
    """Return the PID in ``path``, or None if the file is missing or garbage."""
    try:
        content = Path(path).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Unreadable PID file {path}: {e}")
        return None
    try:
        pid = int(content)
    except ValueError:
        logger.warning(f"PID file {path} does not contain a PID: {content[:20]!r}")
        return None
    return pid if pid > 0 else None


def write_pid_file(path: Path, pid: int) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(pid), encoding="utf-8")


def remove_pid_file(path: Path) -> None:
    Path(path).unlink(missing_ok=True)


def is_process_alive(pid: int) -> bool:
    """Non-blocking existence probe (signal 0). Zombies count as dead."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Exists, owned by someone else

    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    # State is the first field after the parenthesised command name
    state = stat.rsplit(")", 1)[-1].split()
    return not state or state[0] != "Z"


def process_matches(pid: int, binary: str) -> bool:
    """Best-effort check that ``pid`` is still the agent and not a reused PID.

    Reads /proc/<pid>/cmdline where available; on platforms without /proc the
    check is skipped.
    """
    if not Path("/proc/self").exists():
        return True
    try:
        raw = Path(f"/proc/{pid}/cmdline").read_bytes()
    except OSError:
        return False
    name = Path(binary).name
    argv = [arg for arg in raw.decode("utf-8", errors="replace").split("\0") if arg]
    return any(Path(arg).name == name for arg in argv)


# =============================================================================
# Agent output
# =============================================================================


class AgentLog:
    """Tails the agent's log file from a given offset, one line at a time."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.offset = self.path.stat().st_size
        except FileNotFoundError:
            self.offset = 0
        self._partial = b""

    def open_for_agent(self):
        """File object handed to the child as stdout/stderr (caller closes)."""
        return open(self.path, "ab")

    def read_lines(self) -> list[str]:
        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                chunk = f.read()
        except FileNotFoundError:
            return []
        self.offset += len(chunk)
        data = self._partial + chunk
        *lines, self._partial = data.split(b"\n")
        result = []
        for line in lines:
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                agent_logger.debug(text)
                result.append(text)
        return result


# =============================================================================
# Supervisor
# =============================================================================


class TunnelSupervisor:
    """Owns the agent process, its PID file and the proxy listener.

    Construct one per process. start/stop calls are serialised by an
    asyncio lock so concurrent requests cannot double-spawn the agent or
    double-delete the PID file.
    """

    def __init__(
        self,
        store: TunnelStore,
        proxy_factory: ProxyFactory | None = None,
        agent_binary: str | None = None,
        pid_file: Path | None = None,
        log_file: Path | None = None,
        proxy_port: int | None = None,
        connect_timeout: float | None = None,
        stop_timeout: float | None = None,
        restart_backoff: float | None = None,
    ):
        self.store = store
        self.proxy_factory = proxy_factory
        self.agent_binary = agent_binary or settings.agent_binary
        self.pid_file = Path(pid_file or settings.tunnel_pid_path)
        self.log_file = Path(log_file or settings.agent_log_path)
        self.proxy_port = proxy_port if proxy_port is not None else settings.proxy_port
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else settings.connect_timeout
        )
        self.stop_timeout = stop_timeout if stop_timeout is not None else settings.stop_timeout
        self.restart_backoff = (
            restart_backoff if restart_backoff is not None else settings.restart_backoff
        )

        self._process: asyncio.subprocess.Process | None = None
        self._adopted_pid: int | None = None
        self._proxy: "ProxyServer | None" = None
        self._url: str | None = None
        self._state = SupervisorState.STOPPED
        self._lock: asyncio.Lock | None = None
        self._shutdown: asyncio.Event | None = None

    def _get_lock(self) -> asyncio.Lock:
        """Get or create the asyncio lock (lazy initialization)."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    # -------------------------------------------------------------------------
    # Liveness
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def url(self) -> str | None:
        return self._url

    @property
    def proxy_running(self) -> bool:
        return self._proxy is not None and self._proxy.is_running

    def agent_installed(self) -> bool:
        return shutil.which(self.agent_binary) is not None

    def _handle_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _pid_alive(self, pid: int | None) -> bool:
        return pid is not None and is_process_alive(pid) and process_matches(pid, self.agent_binary)

    def current_pid(self) -> int | None:
        """PID of the live agent, re-probed on every call."""
        if self._handle_alive():
            return self._process.pid
        if self._pid_alive(self._adopted_pid):
            return self._adopted_pid
        file_pid = read_pid_file(self.pid_file)
        if self._pid_alive(file_pid):
            return file_pid
        return None

    def is_running(self) -> bool:
        return self.current_pid() is not None

    def _forget_dead_agent(self) -> None:
        """Clear in-memory state once the agent is observed to be gone."""
        if self._process is not None and self._process.returncode is not None:
            logger.warning(f"Tunnel agent exited with code {self._process.returncode}")
        self._process = None
        self._adopted_pid = None
        self._url = None
        if self._state in (SupervisorState.RUNNING, SupervisorState.REATTACHING):
            self._state = SupervisorState.STOPPED

    def _adopt_existing(self, record: TunnelRecord | None) -> bool:
        """Adopt an agent left running by a previous supervisor instance.

        A PID file whose process is gone (or is no longer the agent) is stale
        and removed.
        """
        pid = read_pid_file(self.pid_file)
        if pid is None:
            if self.pid_file.exists():
                remove_pid_file(self.pid_file)
            return False

        self._state = SupervisorState.REATTACHING
        if not self._pid_alive(pid):
            logger.info(f"Removing stale PID file (pid {pid} is not a running agent)")
            remove_pid_file(self.pid_file)
            self._state = SupervisorState.STOPPED
            return False

        self._adopted_pid = pid
        self._url = record.public_url if record else None
        self._state = SupervisorState.RUNNING
        logger.info(f"Reattached to running tunnel agent (pid {pid})", extra={"pid": pid})
        return True

    # -------------------------------------------------------------------------
    # Proxy
    # -------------------------------------------------------------------------

    async def _ensure_proxy(self) -> None:
        if self.proxy_factory is None or self.proxy_running:
            return
        self._proxy = self.proxy_factory()
        await self._proxy.start()

    async def _stop_proxy(self) -> None:
        if self._proxy is not None:
            await self._proxy.stop()
            self._proxy = None

    # -------------------------------------------------------------------------
    # Spawning
    # -------------------------------------------------------------------------

    def _run_args(self, token: str) -> list[str]:
        return [self.agent_binary, "tunnel", "--no-autoupdate", "run", "--token", token]

    def _quick_args(self) -> list[str]:
        proxy_url = f"http://localhost:{self.proxy_port}"
        return [self.agent_binary, "tunnel", "--no-autoupdate", "--url", proxy_url]

    async def _spawn(
        self, args: list[str], agent_log: AgentLog, detached: bool = True
    ) -> asyncio.subprocess.Process:
        """Start the agent with its output going to the log file.

        Raises:
            ConfigurationError: If the agent binary is not installed.
            ProcessError: If the process cannot be started.
        """
        log_fh = agent_log.open_for_agent()
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_fh,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=detached,
            )
        except FileNotFoundError:
            raise ConfigurationError(
                f"{self.agent_binary} is not installed. {INSTALL_HINT}"
            ) from None
        except OSError as e:
            raise ProcessError(f"Failed to start {self.agent_binary}: {e}") from e
        finally:
            log_fh.close()

        logger.info(f"Started tunnel agent (pid {process.pid})", extra={"pid": process.pid})
        return process

    async def _wait_for_connection(
        self,
        process: asyncio.subprocess.Process,
        agent_log: AgentLog,
        url_pattern: re.Pattern | None = None,
    ) -> tuple[str, str | None]:
        """Watch agent output until it connects, fails, exits or times out.

        Returns:
            (outcome, detail) where outcome is "connected", "fatal", "exited"
            or "timeout". For "connected" in quick mode, detail is the URL;
            for failures it is the offending output line or exit code.
        """
        deadline = time.monotonic() + self.connect_timeout
        last_line: str | None = None

        while True:
            for line in agent_log.read_lines():
                last_line = line
                for pattern in FATAL_PATTERNS:
                    if pattern.search(line):
                        return "fatal", line
                if url_pattern is not None:
                    match = url_pattern.search(line)
                    if match:
                        return "connected", match.group(0)
                elif any(p.search(line) for p in CONNECTED_PATTERNS):
                    logger.info(f"Tunnel connected: {line}")
                    return "connected", None

            if process.returncode is not None:
                # Output written just before exit is still worth reporting
                for line in agent_log.read_lines():
                    last_line = line
                detail = f"code {process.returncode}"
                if last_line:
                    detail = f"{detail}: {last_line}"
                return "exited", detail

            if time.monotonic() >= deadline:
                return "timeout", None

            await asyncio.sleep(0.1)

    async def _terminate_handle(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL after the grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except TimeoutError:
                logger.warning(f"Agent (pid {process.pid}) ignored SIGTERM, killing")
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass

    async def _terminate_pid(self, pid: int) -> bool:
        """Signal an agent we have no handle for. Returns False if not permitted."""
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return True
        except PermissionError:
            logger.error(f"Not permitted to stop tunnel agent (pid {pid})")
            return False

        deadline = time.monotonic() + self.stop_timeout
        while time.monotonic() < deadline:
            if not is_process_alive(pid):
                return True
            await asyncio.sleep(0.1)

        logger.warning(f"Agent (pid {pid}) ignored SIGTERM, killing")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        return True

    async def _abort_start(self, process: asyncio.subprocess.Process | None, message: str) -> StartResult:
        if process is not None:
            await self._terminate_handle(process)
        remove_pid_file(self.pid_file)
        await self._stop_proxy()
        self._process = None
        self._url = None
        self._state = SupervisorState.STOPPED
        logger.error(message)
        return StartResult(success=False, message=message)

    async def _launch(
        self, args: list[str], url_pattern: re.Pattern | None = None
    ) -> tuple[asyncio.subprocess.Process | None, str, str | None, StartResult | None]:
        """Shared start path: proxy, spawn, PID file, wait for connection."""
        self._state = SupervisorState.STARTING
        try:
            await self._ensure_proxy()
        except ConfigurationError as e:
            return None, "error", None, await self._abort_start(None, str(e))

        agent_log = AgentLog(self.log_file)
        try:
            process = await self._spawn(args, agent_log)
        except (ConfigurationError, ProcessError) as e:
            return None, "error", None, await self._abort_start(None, str(e))

        self._process = process
        write_pid_file(self.pid_file, process.pid)

        outcome, detail = await self._wait_for_connection(process, agent_log, url_pattern)
        if outcome == "exited":
            return process, outcome, detail, await self._abort_start(
                None, f"Tunnel agent exited with {detail}"
            )
        if outcome == "fatal":
            return process, outcome, detail, await self._abort_start(
                process, f"Tunnel agent rejected its configuration: {detail}"
            )
        return process, outcome, detail, None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def recover(self) -> bool:
        """Reattach to an agent left running by a previous control process.

        Called at startup; never spawns a new agent. Returns True if an
        agent was adopted.
        """
        async with self._get_lock():
            if self._handle_alive() or not self._adopt_existing(self.store.load_record()):
                return False
            try:
                await self._ensure_proxy()
            except ConfigurationError as e:
                logger.warning(f"Reattached agent but proxy could not start: {e}")
            return True

    async def start_with_token(self, record: TunnelRecord | None = None) -> StartResult:
        """Start (or reattach to) the named tunnel described by the stored record."""
        async with self._get_lock():
            if record is None:
                record = self.store.load_record()

            if self._handle_alive():
                return StartResult(
                    success=True,
                    message="Tunnel already running",
                    url=self._url,
                    pid=self._process.pid,
                )
            self._forget_dead_agent()

            if self._adopt_existing(record):
                try:
                    await self._ensure_proxy()
                except ConfigurationError as e:
                    logger.warning(f"Reattached agent but proxy could not start: {e}")
                return StartResult(
                    success=True,
                    message="Reconnected to existing tunnel process",
                    url=self._url,
                    pid=self._adopted_pid,
                    reattached=True,
                )

            if record is None or not record.is_configured:
                return StartResult(
                    success=False,
                    message="No tunnel configured. Please set up your tunnel first.",
                )

            if not self.agent_installed():
                return StartResult(
                    success=False,
                    message=f"{self.agent_binary} is not installed. {INSTALL_HINT}",
                )

            logger.info(f"Starting tunnel '{record.tunnel_name}'")
            token = record.tunnel_token.get_secret_value()
            process, outcome, _, failure = await self._launch(self._run_args(token))
            if failure is not None:
                return failure

            self._url = record.public_url
            self._state = SupervisorState.RUNNING
            if outcome == "timeout":
                logger.warning(
                    f"No connection confirmation within {self.connect_timeout:.0f}s; "
                    "agent keeps retrying in the background"
                )
                message = "Tunnel started (connection pending)"
            else:
                message = "Tunnel started successfully"
            logger.info(f"Tunnel URL: {self._url}")
            return StartResult(success=True, message=message, url=self._url, pid=process.pid)

    async def start_quick(self) -> StartResult:
        """Start an ephemeral quick tunnel to the local proxy (random URL)."""
        async with self._get_lock():
            if self._handle_alive():
                return StartResult(
                    success=True,
                    message="Tunnel already running",
                    url=self._url,
                    pid=self._process.pid,
                )
            self._forget_dead_agent()

            if self._adopt_existing(None):
                return StartResult(
                    success=True,
                    message="Reconnected to existing tunnel process",
                    pid=self._adopted_pid,
                    reattached=True,
                )

            if not self.agent_installed():
                return StartResult(
                    success=False,
                    message=f"{self.agent_binary} is not installed. {INSTALL_HINT}",
                )

            logger.info("Starting quick tunnel")
            process, outcome, url, failure = await self._launch(
                self._quick_args(), url_pattern=QUICK_TUNNEL_URL_RE
            )
            if failure is not None:
                return failure
            if outcome == "timeout":
                return await self._abort_start(
                    process, "Timeout waiting for tunnel URL. Check the agent log."
                )

            self._url = url
            self._state = SupervisorState.RUNNING
            logger.info(f"Tunnel URL: {url}")
            return StartResult(
                success=True, message="Tunnel started successfully", url=url, pid=process.pid
            )

    async def stop(self) -> OperationResult:
        """Stop the agent (by handle or by PID) and the owned proxy.

        The PID file is removed whether or not signalling succeeded. Stopping
        an already stopped tunnel succeeds.
        """
        async with self._get_lock():
            self._state = SupervisorState.STOPPING
            stopped = True

            try:
                if self._process is not None:
                    await self._terminate_handle(self._process)
                    logger.info(f"Stopped tunnel agent (pid {self._process.pid})")
                else:
                    pid = self._adopted_pid or read_pid_file(self.pid_file)
                    if self._pid_alive(pid):
                        stopped = await self._terminate_pid(pid)
                        if stopped:
                            logger.info(f"Stopped tunnel agent (pid {pid})")
            finally:
                remove_pid_file(self.pid_file)
                await self._stop_proxy()
                self._process = None
                self._adopted_pid = None
                self._url = None
                self._state = SupervisorState.STOPPED

            if not stopped:
                return OperationResult(
                    success=False,
                    message="Could not signal the tunnel agent (permission denied)",
                )
            return OperationResult(success=True, message="Tunnel stopped")

    def status(self) -> TunnelStatus:
        """Current status; liveness is probed on every call."""
        pid = self.current_pid()
        if pid is None and self._state in (SupervisorState.RUNNING, SupervisorState.REATTACHING):
            self._forget_dead_agent()

        record = self.store.load_record()
        url = self._url
        if pid is not None and url is None and record is not None:
            url = record.public_url

        return TunnelStatus(
            agent_installed=self.agent_installed(),
            credentials_configured=self.store.has_credentials(),
            tunnel_configured=record is not None and record.is_configured,
            tunnel_running=pid is not None,
            proxy_running=self.proxy_running,
            state=self._state,
            tunnel_url=url if pid is not None else None,
            pid=pid,
            tunnel_name=record.tunnel_name if record else None,
            hostname=record.hostname if record else None,
            proxy_port=self.proxy_port,
        )

    # -------------------------------------------------------------------------
    # Standalone mode
    # -------------------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Ask a running ``supervise`` loop to stop (signal-handler safe)."""
        if self._shutdown is not None:
            self._shutdown.set()

    async def _pump_until_exit(self, process: asyncio.subprocess.Process, agent_log: AgentLog) -> None:
        """Log agent output until the process exits or shutdown is requested."""
        announced = False
        while process.returncode is None and not self._shutdown.is_set():
            for line in agent_log.read_lines():
                if not announced and any(p.search(line) for p in CONNECTED_PATTERNS):
                    announced = True
                    logger.info(f"Tunnel connected: {self._url or line}")
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=0.5)
            except TimeoutError:
                pass
        agent_log.read_lines()

    async def supervise(self, record: TunnelRecord) -> None:
        """Run the agent in the foreground, restarting it after crashes.

        Returns once ``request_shutdown`` is called.

        Raises:
            ConfigurationError: If the record has no token or the agent
                binary is missing (never retried).
        """
        if not record.is_configured:
            raise ConfigurationError("No tunnel configured. Please set up your tunnel first.")

        self._shutdown = asyncio.Event()
        self._url = record.public_url
        await self._ensure_proxy()
        token = record.tunnel_token.get_secret_value()
        restarts = 0

        try:
            while not self._shutdown.is_set():
                agent_log = AgentLog(self.log_file)
                self._state = SupervisorState.STARTING
                try:
                    process = await self._spawn(self._run_args(token), agent_log, detached=False)
                except ProcessError as e:
                    logger.error(f"{e}; retrying in {self.restart_backoff:.0f}s")
                else:
                    self._process = process
                    self._state = SupervisorState.RUNNING
                    write_pid_file(self.pid_file, process.pid)

                    await self._pump_until_exit(process, agent_log)
                    if self._shutdown.is_set():
                        break

                    remove_pid_file(self.pid_file)
                    self._process = None
                    restarts += 1
                    logger.warning(
                        f"Tunnel agent exited with code {process.returncode}; "
                        f"restart #{restarts} in {self.restart_backoff:.0f}s"
                    )

                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=self.restart_backoff)
                except TimeoutError:
                    pass
        finally:
            logger.info("Stopping tunnel...")
            if self._process is not None:
                await self._terminate_handle(self._process)
            remove_pid_file(self.pid_file)
            await self._stop_proxy()
            self._process = None
            self._url = None
            self._state = SupervisorState.STOPPED

    async def shutdown(self) -> None:
        """Release in-process resources, leaving a detached agent running.

        The next supervisor instance reattaches to the agent via the PID file.
        """
        async with self._get_lock():
            await self._stop_proxy()
            if self._handle_alive():
                logger.info(f"Leaving tunnel agent running (pid {self._process.pid})")
            self._process = None


_supervisor: TunnelSupervisor | None = None


def get_tunnel_store() -> TunnelStore:
    """Store for the configured record file."""
    return TunnelStore(settings.tunnel_record_path)


def get_tunnel_supervisor() -> TunnelSupervisor:
    """Get the process-wide tunnel supervisor."""
    global _supervisor
    if _supervisor is None:
        from tunnelgate.proxy.server import build_proxy_server

        _supervisor = TunnelSupervisor(get_tunnel_store(), proxy_factory=build_proxy_server)
    return _supervisor
