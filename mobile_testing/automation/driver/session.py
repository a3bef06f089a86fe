"""
Per-thread driver session management.

Each execution thread owns at most one live Appium session. Sessions live in
a ``threading.local`` owned by the ``SessionManager`` instance, so they are
never visible to other threads and need no locking while in use; only the
bookkeeping of which threads hold a session is guarded.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set

from mobile_testing.app.configuration import Configuration

from .appium import attach_appium_session
from .capabilities import Platform, build_capabilities
from .controls import ControlSpec, UIControl, resolve_control
from .exceptions import SessionError
from .status import StatusClient

logger = logging.getLogger(__name__)

Connector = Callable[[str, Platform, Dict[str, Any]], Any]


@dataclass
class DriverSession:
    """One exclusive connection between a thread and the automation server."""

    platform: Platform
    capabilities: Dict[str, Any]
    endpoint: str
    driver: Any
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    thread_id: int = field(default_factory=threading.get_ident)

    @property
    def is_android(self) -> bool:
        return self.platform is Platform.ANDROID

    @property
    def is_ios(self) -> bool:
        return self.platform is Platform.IOS


def troubleshooting_hint(platform: Platform, endpoint: str) -> str:
    hints = []
    if "host.docker.internal" in endpoint:
        hints.append(
            "If Appium runs on the host machine, start it with --address 0.0.0.0 (not 127.0.0.1) "
            "and make sure the host firewall allows the Appium port."
        )
    if platform is Platform.IOS:
        hints.append(
            "Check that Appium runs on a macOS host with the xcuitest driver installed "
            "(appium driver install xcuitest)."
        )
    else:
        hints.append(
            "Check that Appium runs with the uiautomator2 driver installed "
            "(appium driver install uiautomator2) and that `adb devices` lists the device."
        )
    return " ".join(hints)


class SessionManager:
    """Creates, hands out and tears down the calling thread's session."""

    def __init__(
        self,
        config: Configuration,
        *,
        endpoint: Optional[str] = None,
        status_client: Optional[StatusClient] = None,
        connector: Connector = attach_appium_session,
        reachability_timeout: float = 30.0,
        poll_interval: float = 1.0,
        cwd: Optional[Path] = None,
    ) -> None:
        self.config = config
        self._endpoint = endpoint
        self._status = status_client or StatusClient()
        self._connector = connector
        self._reachability_timeout = reachability_timeout
        self._poll_interval = poll_interval
        self._cwd = cwd
        self._local = threading.local()
        self._lock = threading.Lock()
        self._owners: Set[int] = set()

    @property
    def endpoint(self) -> str:
        url = (self._endpoint or self.config.server_url()).strip()
        return url[:-1] if url.endswith("/") else url

    @endpoint.setter
    def endpoint(self, url: Optional[str]) -> None:
        self._endpoint = url

    def init(self, platform: Any = None) -> DriverSession:
        """Return the calling thread's session, creating it on first use."""
        existing = self.current()
        if existing is not None:
            return existing

        target = Platform.from_name(platform or self.config.platform())
        endpoint = self.endpoint
        self._status.wait_until_reachable(
            endpoint,
            timeout=self._reachability_timeout,
            interval=self._poll_interval,
            hint=troubleshooting_hint(target, endpoint),
        )
        capabilities = build_capabilities(target, self.config, cwd=self._cwd)
        logger.info("Creating %s session against %s", target.value, endpoint)
        driver = self._connector(endpoint, target, capabilities)

        session = DriverSession(platform=target, capabilities=capabilities, endpoint=endpoint, driver=driver)
        self._local.session = session
        with self._lock:
            self._owners.add(session.thread_id)

        implicit_wait = self.config.implicit_wait_seconds()
        if implicit_wait > 0:
            driver.implicitly_wait(implicit_wait)
        return session

    def quit(self) -> None:
        """Best-effort teardown of the calling thread's session."""
        session = self.current()
        if session is None:
            return
        try:
            session.driver.quit()
        except Exception as exc:
            logger.warning("Ignoring error while quitting %s session: %s", session.platform.value, exc)
        finally:
            self._local.session = None
            with self._lock:
                self._owners.discard(threading.get_ident())

    def current(self) -> Optional[DriverSession]:
        return getattr(self._local, "session", None)

    def is_android(self) -> bool:
        session = self.current()
        return session is not None and session.is_android

    def is_ios(self) -> bool:
        session = self.current()
        return session is not None and session.is_ios

    def live_sessions(self) -> int:
        """Number of threads currently holding a session."""
        with self._lock:
            return len(self._owners)


class DriverContext:
    """Explicit per-test handle onto the execution lane's session."""

    def __init__(self, manager: SessionManager, platform: Any = None) -> None:
        self.manager = manager
        self.platform = platform
        self._session: Optional[DriverSession] = None

    def open(self) -> DriverSession:
        self._session = self.manager.init(self.platform)
        return self._session

    def close(self) -> None:
        self._session = None
        self.manager.quit()

    @property
    def session(self) -> DriverSession:
        if self._session is None:
            raise SessionError("Driver context is not open.")
        return self._session

    @property
    def driver(self) -> Any:
        return self.session.driver

    def control(self, spec: ControlSpec, timeout: Optional[float] = None) -> UIControl:
        """Wait for ``spec`` on this session's driver; the timeout defaults to the configured explicit wait."""
        if timeout is None:
            timeout = float(self.manager.config.explicit_wait_seconds())
        return resolve_control(self.session, spec, timeout)

    @property
    def is_android(self) -> bool:
        return self._session is not None and self._session.is_android

    @property
    def is_ios(self) -> bool:
        return self._session is not None and self._session.is_ios

    def __enter__(self) -> "DriverContext":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
