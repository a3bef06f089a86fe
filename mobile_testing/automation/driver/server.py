"""
Lifecycle management for a locally owned Appium server.

``ServerLifecycleManager`` starts Appium only when explicitly enabled and the
configured endpoint is a loopback address. It prefers the Appium-Python-Client
``AppiumService`` when node and the Appium main script are configured, and
falls back to launching ``npx appium`` as an external process. Both paths end
with a ``/status`` major-version check.
"""

from __future__ import annotations

import enum
import logging
import os
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence
from urllib.parse import urlsplit

from mobile_testing.app.configuration import Configuration

from .exceptions import ServerStartError, VersionMismatchError
from .status import StatusClient, major_matches

try:
    from appium.webdriver.appium_service import AppiumService
except Exception:  # pragma: no cover - optional dependency
    AppiumService = None  # type: ignore

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1"}
PORT_PROBE_WINDOW = 50
STOP_TIMEOUT_SECONDS = 5.0


class ServerState(enum.Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOP_REQUESTED = "stop_requested"
    STOPPED = "stopped"


@dataclass
class ServerHandle:
    """Snapshot of the server this manager is responsible for."""

    state: ServerState = ServerState.NOT_STARTED
    host: Optional[str] = None
    port: Optional[int] = None
    version: Optional[int] = None
    mode: Optional[str] = None  # service | process | reused | external

    @property
    def url(self) -> Optional[str]:
        if self.host is None or self.port is None:
            return None
        return f"http://{self.host}:{self.port}"

    @property
    def owned(self) -> bool:
        return self.mode in {"service", "process"}


def is_loopback_url(url: str) -> bool:
    hostname = urlsplit(url).hostname
    if hostname is None:
        lowered = url.lower()
        return "127.0.0.1" in lowered or "localhost" in lowered
    return hostname in LOOPBACK_HOSTS or hostname.startswith("127.")


def is_port_free(host: str, port: int) -> bool:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def build_npx_command(host: str, port: int, required_major: int) -> List[str]:
    """Command line for the fallback launch, pinning ``appium@<major>`` when required."""
    command = ["npx.cmd" if os.name == "nt" else "npx"]
    if required_major > 0:
        command += ["--yes", "--package", f"appium@{required_major}", "appium"]
    else:
        command.append("appium")
    command += ["--address", host, "--port", str(port)]
    return command


def launch_process(command: Sequence[str], log_path: Path) -> subprocess.Popen:
    """Spawn ``command`` with stdout and stderr appended to ``log_path``."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "ab") as log_handle:
        return subprocess.Popen(list(command), stdout=log_handle, stderr=subprocess.STDOUT)


class ServerLifecycleManager:
    """Owns at most one Appium service or process per instance."""

    def __init__(
        self,
        config: Configuration,
        *,
        status_client: Optional[StatusClient] = None,
        service_factory: Optional[Callable[[], Any]] = None,
        process_launcher: Callable[[Sequence[str], Path], Any] = launch_process,
        port_checker: Callable[[str, int], bool] = is_port_free,
        sleep: Callable[[float], None] = time.sleep,
        log_path: Optional[Path] = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.config = config
        self._status = status_client or StatusClient()
        self._service_factory = service_factory or AppiumService
        self._launcher = process_launcher
        self._port_free = port_checker
        self._sleep = sleep
        self.log_path = log_path or (config.reports_dir() / "logs" / "appium.log")
        self._poll_interval = poll_interval
        self._lock = threading.Lock()
        self._service: Any = None
        self._process: Any = None
        self._handle = ServerHandle()

    @property
    def handle(self) -> ServerHandle:
        return replace(self._handle)

    def ensure_started(self) -> ServerHandle:
        """Make sure a reachable server exists; idempotent and thread-safe."""
        with self._lock:
            self._ensure_started()
            return replace(self._handle)

    def shutdown(self) -> None:
        """Stop whatever this manager started. Safe to call any number of times."""
        with self._lock:
            touched = False
            if self._service is not None:
                touched = True
                self._handle.state = ServerState.STOP_REQUESTED
                service, self._service = self._service, None
                self._stop_service(service)
            if self._process is not None:
                touched = True
                self._handle.state = ServerState.STOP_REQUESTED
                process, self._process = self._process, None
                self._terminate(process)
            if touched or self._handle.mode == "reused":
                logger.info("Appium server lifecycle finished (%s).", self._handle.mode)
                self._handle = ServerHandle(state=ServerState.STOPPED)

    # -- start paths ----------------------------------------------------

    def _ensure_started(self) -> None:
        config = self.config
        if not config.start_local():
            logger.info("appium.local=false; will not start a local Appium server.")
            self._handle.mode = "external"
            return
        url = config.server_url()
        if not is_loopback_url(url):
            logger.info("Appium endpoint '%s' is not a loopback address; skipping local start.", url)
            self._handle.mode = "external"
            return
        if self._owns_live_server():
            return

        self._handle = ServerHandle(state=ServerState.STARTING)
        host, port = config.host(), config.port()
        required = config.required_major_version()
        timeout = config.start_timeout_seconds()

        if config.node_path() and config.appium_js_path():
            if self._start_service(host, port, required, timeout):
                return
        else:
            logger.info("appium.local=true but appium.node/appium.js are not configured.")

        if not config.fallback_enabled():
            self._handle = ServerHandle(state=ServerState.STOPPED)
            raise ServerStartError(
                "Local Appium start is enabled (appium.local=true) but AppiumService could not be "
                "started (missing or invalid appium.node/appium.js) and fallback is disabled "
                "(appium.fallback_enabled=false). Either provide appium.node/appium.js, or disable "
                "appium.local and point to an external server with appium.server_url/APPIUM_SERVER_URL."
            )
        self._start_process(host, port, required, timeout)

    def _owns_live_server(self) -> bool:
        if self._service is not None:
            if self._service.is_running:
                return True
            logger.warning("Managed AppiumService is no longer running.")
            self._service = None
        if self._process is not None:
            if self._process.poll() is None:
                return True
            logger.warning("Managed Appium process exited with code %s.", self._process.returncode)
            self._process = None
        return self._handle.mode == "reused" and self._handle.state is ServerState.RUNNING

    def _start_service(self, host: str, port: int, required: int, timeout: int) -> bool:
        if self._service_factory is None:
            logger.warning("Appium-Python-Client is not installed; AppiumService unavailable.")
            return False
        service = self._service_factory()
        try:
            service.start(
                node=self.config.node_path(),
                main_script=self.config.appium_js_path(),
                args=["--address", host, "--port", str(port)],
                timeout_ms=int(timeout * 1000),
            )
        except Exception as exc:
            logger.warning("Failed to start AppiumService: %s", exc)
            self._stop_service(service)
            return False
        if not service.is_running:
            logger.warning("AppiumService reported not running after start.")
            self._stop_service(service)
            return False
        logger.info("Started Appium service via AppiumService on %s:%s", host, port)
        matched, major = self._status.wait_for_major_version(
            f"http://{host}:{port}", required, timeout=timeout, interval=self._poll_interval
        )
        if not matched:
            logger.warning(
                "Appium service does not meet required major version %s (detected %s); stopping it.",
                required,
                major,
            )
            self._stop_service(service)
            return False
        self._service = service
        self._handle = ServerHandle(ServerState.RUNNING, host, port, major, "service")
        return True

    def _start_process(self, host: str, port: int, required: int, timeout: int) -> None:
        chosen = self._resolve_port(host, port, required)
        if chosen is None:
            return
        command = build_npx_command(host, chosen, required)
        try:
            process = self._launcher(command, self.log_path)
        except FileNotFoundError as exc:
            self._handle = ServerHandle(state=ServerState.STOPPED)
            raise ServerStartError(
                f"Failed to start external Appium process: '{command[0]}' was not found. Install "
                "Node.js/npm in the environment that runs the tests, or disable appium.local and "
                "use an external Appium server."
            ) from exc
        except OSError as exc:
            self._handle = ServerHandle(state=ServerState.STOPPED)
            raise ServerStartError(f"Failed to start external Appium process: {exc}") from exc

        self._sleep(self.config.start_grace_seconds())
        if process.poll() is not None:
            self._handle = ServerHandle(state=ServerState.STOPPED)
            raise ServerStartError(
                f"External Appium process terminated immediately (exit code {process.returncode}). "
                f"See logs: {self.log_path}"
            )
        logger.info("Started external Appium process via npx on %s:%s", host, chosen)
        logger.info("Appium external process logs: %s", self.log_path)

        matched, major = self._status.wait_for_major_version(
            f"http://{host}:{chosen}", required, timeout=timeout, interval=self._poll_interval
        )
        if not matched:
            logger.warning("Appium major version mismatch for external process; shutting it down.")
            self._kill(process)
            self._handle = ServerHandle(state=ServerState.STOPPED)
            raise VersionMismatchError(
                f"Appium server on {host}:{chosen} does not meet required major version {required} "
                f"(detected {major if major is not None else 'none before timeout'})."
            )
        self._process = process
        self._handle = ServerHandle(ServerState.RUNNING, host, chosen, major, "process")

    def _resolve_port(self, host: str, port: int, required: int) -> Optional[int]:
        """Return the port to launch on, or None when a compatible server was reused."""
        if self._port_free(host, port):
            return port
        running = self._status.major_version(f"http://{host}:{port}")
        if major_matches(required, running):
            logger.info(
                "Found existing compatible Appium server on %s:%s (major=%s). Reusing it.", host, port, running
            )
            self._handle = ServerHandle(ServerState.RUNNING, host, port, running, "reused")
            return None
        for candidate in range(port + 1, port + PORT_PROBE_WINDOW + 1):
            if self._port_free(host, candidate):
                logger.info(
                    "Port %s is in use (running major=%s); selected free port %s for Appium %s",
                    port,
                    running,
                    candidate,
                    required,
                )
                return candidate
        self._handle = ServerHandle(state=ServerState.STOPPED)
        raise ServerStartError(
            f"Configured port {port} is in use and no free port was found in "
            f"{port + 1}-{port + PORT_PROBE_WINDOW} to start Appium {required}."
        )

    # -- stop helpers ---------------------------------------------------

    @staticmethod
    def _stop_service(service: Any) -> None:
        try:
            if service.is_running:
                service.stop()
        except Exception as exc:
            logger.warning("Ignoring error while stopping AppiumService: %s", exc)

    @staticmethod
    def _terminate(process: Any) -> None:
        try:
            process.terminate()
            process.wait(timeout=STOP_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("Appium process did not exit within %ss; killing it.", STOP_TIMEOUT_SECONDS)
            ServerLifecycleManager._kill(process)
        except OSError as exc:
            logger.warning("Ignoring error while stopping Appium process: %s", exc)

    @staticmethod
    def _kill(process: Any) -> None:
        try:
            process.kill()
            process.wait(timeout=STOP_TIMEOUT_SECONDS)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Ignoring error while killing Appium process: %s", exc)
