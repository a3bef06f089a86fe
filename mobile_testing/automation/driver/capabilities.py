"""Platform capability sets and application-binary resolution."""

from __future__ import annotations

import enum
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from mobile_testing.app.configuration import Configuration

from .exceptions import AppBinaryNotFoundError, UnsupportedPlatformError

logger = logging.getLogger(__name__)

BUNDLE_MARKER = "bundle-to-test"
ADB_EXEC_TIMEOUT_MS = 600_000
APP_WAIT_DURATION_MS = 30_000

_PLACEHOLDER = re.compile(r"\$\{[^}]+\}")
_USERPROFILE = re.compile(r"%userprofile%", re.IGNORECASE)
_WINDOWS_ROOT = re.compile(r"^[A-Za-z]:[\\/]")


class Platform(str, enum.Enum):
    ANDROID = "Android"
    IOS = "iOS"

    @classmethod
    def from_name(cls, name: Any) -> "Platform":
        if isinstance(name, Platform):
            return name
        lowered = str(name or "").strip().lower()
        for platform in cls:
            if platform.value.lower() == lowered:
                return platform
        raise UnsupportedPlatformError(f"Unsupported platform '{name}'. Expected 'Android' or 'iOS'.")


def resolve_app_path(
    raw: str,
    *,
    cwd: Optional[Path] = None,
    host_workspace: Optional[str] = None,
    home: Optional[str] = None,
) -> str:
    """
    Turn the configured ``app_path`` into the path sent to Appium.

    With ``host_workspace`` (CI running tests in a container while Appium runs
    on the host) the repository-relative part is re-rooted on the host path and
    not checked, since the container cannot see the host filesystem. Otherwise
    placeholders are expanded, relative paths are resolved against ``cwd``,
    and a second attempt strips unknown ``${...}`` placeholders before giving up.
    """
    base = Path.cwd() if cwd is None else Path(cwd)
    logger.info("Original app_path from config: '%s'", raw)

    if host_workspace:
        return _rebase_on_host(raw, host_workspace)

    value = raw.replace("${user.dir}", str(base)).replace("$user.dir", str(base))
    profile = home if home is not None else str(Path.home())
    value = _USERPROFILE.sub(lambda _match: profile, value)
    value = value.replace("\\", "/")

    candidate = _absolute(value, base)
    logger.info("Resolved app path: %s", candidate)
    if candidate.exists():
        return str(candidate)

    cleaned = _PLACEHOLDER.sub("", value)
    alternative = _absolute(cleaned, base)
    logger.info("App binary not found. Trying alternative resolved path: %s", alternative)
    if alternative.exists():
        return str(alternative)
    raise AppBinaryNotFoundError(
        f"App binary not found at '{candidate}'. Set app_path (for example --mt-set app_path=...) if required."
    )


def _absolute(value: str, base: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base / path
    return Path(os.path.normpath(path))


def _rebase_on_host(raw: str, host_workspace: str) -> str:
    logger.info("Detected HOST_WORKSPACE: %s", host_workspace)
    relative = raw
    index = relative.find(BUNDLE_MARKER)
    if index != -1:
        relative = relative[index:]
    elif relative.startswith("/workspace/"):
        relative = relative[len("/workspace/"):]
    elif relative.startswith("/"):
        relative = relative[1:]
    windows_host = bool(_WINDOWS_ROOT.match(host_workspace)) or "\\" in host_workspace
    sep = "\\" if windows_host else "/"
    relative = relative.replace("/", sep).replace("\\", sep)
    resolved = host_workspace.rstrip("\\/") + sep + relative
    if not Path(resolved).exists():
        logger.warning(
            "App binary not visible at '%s' from this machine; expected when HOST_WORKSPACE points "
            "at the Appium host. Appium must resolve the file.",
            resolved,
        )
    return resolved


def android_capabilities(config: Configuration, app_path: str) -> Dict[str, Any]:
    capabilities: Dict[str, Any] = {
        "platformName": Platform.ANDROID.value,
        "automationName": "UiAutomator2",
        "deviceName": config.device_name(),
        "app": app_path,
        "newCommandTimeout": config.new_command_timeout_seconds(),
        "autoGrantPermissions": True,
        "adbExecTimeout": ADB_EXEC_TIMEOUT_MS,
        "appWaitDuration": APP_WAIT_DURATION_MS,
    }
    udid = config.udid().strip()
    if udid:
        capabilities["udid"] = udid
    package = config.app_package().strip()
    if package:
        capabilities["appPackage"] = package
        capabilities["appWaitPackage"] = package
    activity = config.app_activity().strip()
    if activity:
        capabilities["appActivity"] = activity
        capabilities["appWaitActivity"] = activity
    return capabilities


def ios_capabilities(config: Configuration) -> Dict[str, Any]:
    return {
        "platformName": Platform.IOS.value,
        "automationName": "XCUITest",
        "deviceName": config.device_name(),
        "bundleId": config.bundle_id(),
        "newCommandTimeout": config.new_command_timeout_seconds(),
    }


def build_capabilities(platform: Platform, config: Configuration, *, cwd: Optional[Path] = None) -> Dict[str, Any]:
    """Capability set for ``platform``; Android resolves the app binary first."""
    if platform is Platform.IOS:
        return ios_capabilities(config)
    app_path = resolve_app_path(config.app_path(), cwd=cwd, host_workspace=config.host_workspace())
    return android_capabilities(config, app_path)
