"""Custom exception types for the automation driver layer."""

from __future__ import annotations


class AutomationError(RuntimeError):
    """Base class for automation-related failures."""


class ControlNotFoundError(AutomationError):
    """Raised when an element cannot be located with its locator."""


class ActionTimeoutError(AutomationError):
    """Raised when an operation exceeds the allotted wait interval."""


class ServerLifecycleError(AutomationError):
    """Raised when the automation server cannot be provided; aborts the suite."""


class ServerStartError(ServerLifecycleError):
    """Raised when a managed Appium server could not be started."""


class VersionMismatchError(ServerLifecycleError):
    """Raised when the Appium server does not report the required major version."""


class SessionError(AutomationError):
    """Raised when a driver session cannot be created; aborts the current test."""


class ServerUnreachableError(SessionError):
    """Raised when the Appium endpoint does not answer within the retry window."""


class AppBinaryNotFoundError(SessionError):
    """Raised when the application binary cannot be located on disk."""


class UnsupportedPlatformError(SessionError):
    """Raised for platform names other than Android and iOS."""
