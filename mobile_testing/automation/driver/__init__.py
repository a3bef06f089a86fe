"""Public exports for the mobile automation driver layer."""

from .appium import attach_appium_session, build_options
from .capabilities import Platform, build_capabilities, resolve_app_path
from .controls import ControlSpec, UIControl, resolve_control, retry_on_stale, wait_for_element
from .exceptions import (
    ActionTimeoutError,
    AppBinaryNotFoundError,
    AutomationError,
    ControlNotFoundError,
    ServerLifecycleError,
    ServerStartError,
    ServerUnreachableError,
    SessionError,
    UnsupportedPlatformError,
    VersionMismatchError,
)
from .server import ServerHandle, ServerLifecycleManager, ServerState
from .session import DriverContext, DriverSession, SessionManager
from .status import StatusClient, extract_major_version

__all__ = [
    "attach_appium_session",
    "build_options",
    "Platform",
    "build_capabilities",
    "resolve_app_path",
    "ControlSpec",
    "UIControl",
    "resolve_control",
    "retry_on_stale",
    "wait_for_element",
    "ActionTimeoutError",
    "AppBinaryNotFoundError",
    "AutomationError",
    "ControlNotFoundError",
    "ServerLifecycleError",
    "ServerStartError",
    "ServerUnreachableError",
    "SessionError",
    "UnsupportedPlatformError",
    "VersionMismatchError",
    "ServerHandle",
    "ServerLifecycleManager",
    "ServerState",
    "DriverContext",
    "DriverSession",
    "SessionManager",
    "StatusClient",
    "extract_major_version",
]
