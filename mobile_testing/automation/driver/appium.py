"""Appium remote-driver connector."""

from __future__ import annotations

from typing import Any, Dict

try:
    from appium import webdriver
    from appium.options.android import UiAutomator2Options
    from appium.options.ios import XCUITestOptions
except Exception:  # pragma: no cover - optional dependency
    webdriver = None  # type: ignore
    UiAutomator2Options = XCUITestOptions = None  # type: ignore

from .capabilities import Platform


def build_options(platform: Platform, capabilities: Dict[str, Any]):
    """Load a plain capability mapping into the platform's Appium options class."""
    options = XCUITestOptions() if platform is Platform.IOS else UiAutomator2Options()
    return options.load_capabilities(capabilities)


def attach_appium_session(server_url: str, platform: Platform, capabilities: Dict[str, Any]) -> "webdriver.Remote":
    if webdriver is None:
        raise RuntimeError("Appium Python client not available. Install Appium-Python-Client.")
    return webdriver.Remote(command_executor=server_url, options=build_options(platform, capabilities))
