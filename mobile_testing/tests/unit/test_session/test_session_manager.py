from __future__ import annotations

import threading
from pathlib import Path
from types import SimpleNamespace
from typing import List

import pytest

from mobile_testing.app.configuration import Configuration
from mobile_testing.automation.driver.capabilities import Platform
from mobile_testing.automation.driver.exceptions import (
    ServerUnreachableError,
    SessionError,
    UnsupportedPlatformError,
)
from mobile_testing.automation.driver.server import ServerLifecycleManager
from mobile_testing.automation.driver.session import DriverContext, SessionManager


class FakeDriver:
    def __init__(self, name: str) -> None:
        self.name = name
        self.quit_calls = 0
        self.implicit_wait = None
        self.fail_on_quit = False

    def quit(self) -> None:
        self.quit_calls += 1
        if self.fail_on_quit:
            raise RuntimeError("session already gone")

    def implicitly_wait(self, seconds: float) -> None:
        self.implicit_wait = seconds


class RecordingConnector:
    def __init__(self) -> None:
        self.calls: List[SimpleNamespace] = []
        self._lock = threading.Lock()

    def __call__(self, endpoint: str, platform: Platform, capabilities):
        with self._lock:
            driver = FakeDriver(f"driver-{len(self.calls)}")
            self.calls.append(SimpleNamespace(endpoint=endpoint, platform=platform, capabilities=capabilities))
            return driver


class FakeStatus:
    def __init__(self, reachable: bool = True) -> None:
        self.reachable = reachable
        self.polls: List[str] = []

    def wait_until_reachable(self, base_url: str, *, timeout: float, interval: float, hint: str = "") -> int:
        self.polls.append(base_url)
        if not self.reachable:
            raise ServerUnreachableError(f"Cannot reach Appium server at '{base_url}/status'. {hint}")
        return 200


@pytest.fixture
def app_binary(tmp_path: Path) -> Path:
    app = tmp_path / "bundle-to-test" / "android" / "app.apk"
    app.parent.mkdir(parents=True)
    app.write_bytes(b"apk")
    return app


def _manager(tmp_path: Path, status: FakeStatus, connector: RecordingConnector, **overrides: str) -> SessionManager:
    config = Configuration(overrides=overrides, env={})
    return SessionManager(config, status_client=status, connector=connector, cwd=tmp_path)


def test_init_is_reentrant_per_thread(tmp_path: Path, app_binary: Path) -> None:
    status, connector = FakeStatus(), RecordingConnector()
    manager = _manager(tmp_path, status, connector)

    first = manager.init("Android")
    second = manager.init("Android")

    assert first is second
    assert len(connector.calls) == 1
    assert connector.calls[0].capabilities["app"] == str(app_binary)
    assert manager.is_android() and not manager.is_ios()


def test_threads_get_distinct_sessions(tmp_path: Path, app_binary: Path) -> None:
    manager = _manager(tmp_path, FakeStatus(), RecordingConnector())
    seen = {}
    live: List[int] = []
    barrier = threading.Barrier(2)

    def worker(name: str) -> None:
        seen[name] = manager.init("Android")
        barrier.wait()
        live.append(manager.live_sessions())
        barrier.wait()
        manager.quit()

    threads = [threading.Thread(target=worker, args=(name,)) for name in ("a", "b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert live == [2, 2]
    assert seen["a"] is not seen["b"]
    assert seen["a"].thread_id != seen["b"].thread_id
    assert manager.live_sessions() == 0
    assert manager.current() is None


def test_quit_is_best_effort(tmp_path: Path, app_binary: Path) -> None:
    manager = _manager(tmp_path, FakeStatus(), RecordingConnector())
    session = manager.init("Android")
    session.driver.fail_on_quit = True

    manager.quit()

    assert session.driver.quit_calls == 1
    assert manager.current() is None
    manager.quit()


def test_ios_session_needs_no_binary(tmp_path: Path) -> None:
    connector = RecordingConnector()
    manager = _manager(tmp_path, FakeStatus(), connector, bundle_id="com.example.shop")
    session = manager.init("ios")
    assert session.is_ios
    assert connector.calls[0].capabilities["bundleId"] == "com.example.shop"
    assert connector.calls[0].capabilities["automationName"] == "XCUITest"


def test_unreachable_server_fails_before_connecting(tmp_path: Path, app_binary: Path) -> None:
    connector = RecordingConnector()
    manager = _manager(tmp_path, FakeStatus(reachable=False), connector)
    with pytest.raises(ServerUnreachableError, match="uiautomator2"):
        manager.init("Android")
    assert connector.calls == []
    assert manager.current() is None


def test_unsupported_platform(tmp_path: Path) -> None:
    manager = _manager(tmp_path, FakeStatus(), RecordingConnector())
    with pytest.raises(UnsupportedPlatformError):
        manager.init("Windows")


def test_implicit_wait_applied_when_configured(tmp_path: Path, app_binary: Path) -> None:
    manager = _manager(tmp_path, FakeStatus(), RecordingConnector(), **{"wait.implicit_seconds": "5"})
    assert manager.init().driver.implicit_wait == 5


def test_endpoint_override_trims_trailing_slash(tmp_path: Path, app_binary: Path) -> None:
    status, connector = FakeStatus(), RecordingConnector()
    manager = _manager(tmp_path, status, connector)
    manager.endpoint = "http://127.0.0.1:4725/"
    manager.init("Android")
    assert connector.calls[0].endpoint == "http://127.0.0.1:4725"
    assert status.polls == ["http://127.0.0.1:4725"]


def test_driver_context_lifecycle(tmp_path: Path, app_binary: Path) -> None:
    manager = _manager(tmp_path, FakeStatus(), RecordingConnector())
    context = DriverContext(manager, "Android")
    with pytest.raises(SessionError):
        context.driver

    with context as ctx:
        assert ctx.is_android
        driver = ctx.driver
    assert driver.quit_calls == 1
    assert manager.current() is None
    assert not context.is_android


def test_end_to_end_with_external_server(tmp_path: Path, app_binary: Path) -> None:
    config = Configuration(overrides={"appium.server_url": "http://127.0.0.1:4723"}, env={})
    server = ServerLifecycleManager(config, status_client=FakeStatus(), log_path=tmp_path / "appium.log")
    status, connector = FakeStatus(), RecordingConnector()
    manager = SessionManager(config, status_client=status, connector=connector, cwd=tmp_path)

    assert server.ensure_started().mode == "external"
    first = manager.init("Android")
    assert status.polls == ["http://127.0.0.1:4723"]
    assert connector.calls[0].capabilities["platformName"] == "Android"

    manager.quit()
    assert first.driver.quit_calls == 1
    second = manager.init("Android")
    assert second is not first
    assert second.driver is not first.driver

    manager.quit()
    server.shutdown()
