"""Layered configuration lookup for the mobile testing toolkit.

Values resolve in a fixed order: environment variable, explicit runtime
override, INI file property, built-in default. Every resolved value passes
through ``${name}`` placeholder expansion before it is returned.
"""

from __future__ import annotations

import configparser
import logging
import os
import re
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

_ENV_PREFIX = "MOBILE_TESTING_"
_FILE_SECTION = "mobile"
_BOOL_TRUE = {"1", "true", "yes", "on"}
_BOOL_FALSE = {"0", "false", "no", "off"}

ENV_LOCAL = "local"
ENV_DOCKER = "docker"

SERVER_URL_KEY = "appium.server_url"
SERVER_URL_ENV = "APPIUM_SERVER_URL"
SERVER_URL_LOCAL = "http://127.0.0.1:4723"
SERVER_URL_DOCKER = "http://host.docker.internal:4723"

DEFAULTS: Mapping[str, str] = MappingProxyType(
    {
        "platform": "Android",
        "env": ENV_LOCAL,
        "appium.local": "false",
        "appium.host": "127.0.0.1",
        "appium.port": "4723",
        "appium.node": "",
        "appium.js": "",
        "appium.major_version": "2",
        "appium.start_timeout_seconds": "30",
        "appium.fallback_enabled": "true",
        "appium.start_grace_seconds": "2.5",
        "app_path": "bundle-to-test/android/app.apk",
        "udid": "",
        "device_name": "Android Emulator",
        "app_package": "",
        "app_activity": "",
        "bundle_id": "com.example.ios.app",
        "new_command_timeout_seconds": "300",
        "retry.count": "1",
        "retry.delay_ms": "1000",
        "wait.seconds": "10",
        "wait.implicit_seconds": "0",
        "thread.count": "1",
        "reports.dir": "reports",
    }
)


def expand_placeholders(
    value: Optional[str],
    overrides: Mapping[str, str] | None = None,
    env: Mapping[str, str] | None = None,
) -> Optional[str]:
    """Replace ``${name}`` with the override for ``name``, else the env var, else ``""``.

    The expansion is a single pass: substituted text is never re-scanned. An
    unterminated ``${`` is copied to the output together with the remainder.
    """
    if value is None:
        return None
    overrides = overrides or {}
    source_env = os.environ if env is None else env
    parts = []
    index = 0
    while True:
        start = value.find("${", index)
        if start == -1:
            parts.append(value[index:])
            break
        parts.append(value[index:start])
        end = value.find("}", start + 2)
        if end == -1:
            parts.append(value[start:])
            break
        name = value[start + 2 : end]
        resolved = overrides.get(name)
        if resolved is None:
            resolved = source_env.get(name)
        parts.append(resolved if resolved is not None else "")
        index = end + 1
    return "".join(parts)


def env_var_name(key: str) -> str:
    """Return the prefixed environment variable name for a dotted key."""
    return _ENV_PREFIX + re.sub(r"[^0-9A-Za-z]+", "_", key).upper()


class Configuration:
    """Immutable key/value view over the four configuration layers."""

    def __init__(
        self,
        overrides: Mapping[str, str] | None = None,
        file_values: Mapping[str, str] | None = None,
        env: Mapping[str, str] | None = None,
        defaults: Mapping[str, str] = DEFAULTS,
        source: Optional[Path] = None,
    ) -> None:
        self._overrides = MappingProxyType(dict(overrides or {}))
        self._file = MappingProxyType(dict(file_values or {}))
        self._env = MappingProxyType(dict(os.environ if env is None else env))
        self._defaults = defaults
        self.source = source
        # user.dir/user.home behave like always-present runtime overrides
        builtins = {"user.dir": str(Path.cwd()), "user.home": str(Path.home())}
        self._placeholders = MappingProxyType({**builtins, **self._overrides})

    def __repr__(self) -> str:
        return f"Configuration(source={self.source!r}, overrides={dict(self._overrides)!r})"

    # -- raw lookup -----------------------------------------------------

    def get(self, key: str, default: Optional[str] = None) -> str:
        if key == SERVER_URL_KEY:
            return self._server_url_raw()
        raw = self._lookup(key)
        if raw is None:
            raw = default if default is not None else self._defaults.get(key, "")
        return self.expand(raw) or ""

    def expand(self, value: Optional[str]) -> Optional[str]:
        return expand_placeholders(value, self._placeholders, self._env)

    def _lookup(self, key: str) -> Optional[str]:
        for candidate in (
            self._env.get(key),
            self._env.get(env_var_name(key)),
            self._overrides.get(key),
            self._file.get(key),
        ):
            if candidate is not None and candidate.strip():
                return candidate
        return None

    def _server_url_raw(self) -> str:
        for candidate in (
            self._env.get(SERVER_URL_ENV),
            self._overrides.get(SERVER_URL_KEY),
            self._file.get(SERVER_URL_KEY),
        ):
            if candidate is not None and candidate.strip():
                return self.expand(candidate) or ""
        return SERVER_URL_DOCKER if self.is_docker() else SERVER_URL_LOCAL

    # -- typed accessors ------------------------------------------------

    def environment_mode(self) -> str:
        explicit = self._env.get("ENV")
        if explicit and explicit.strip():
            return explicit.strip().lower()
        return (self.get("env") or ENV_LOCAL).strip().lower()

    def is_docker(self) -> bool:
        return self.environment_mode() == ENV_DOCKER

    def platform(self) -> str:
        return self.get("platform")

    def server_url(self) -> str:
        url = self.get(SERVER_URL_KEY).strip()
        if url.endswith("/"):
            url = url[:-1]
        return url

    def start_local(self) -> bool:
        return self._get_bool("appium.local")

    def host(self) -> str:
        return self.get("appium.host")

    def port(self) -> int:
        return self._get_int("appium.port")

    def node_path(self) -> str:
        return self.get("appium.node")

    def appium_js_path(self) -> str:
        return self.get("appium.js")

    def required_major_version(self) -> int:
        return self._get_int("appium.major_version")

    def start_timeout_seconds(self) -> int:
        return self._get_int("appium.start_timeout_seconds")

    def fallback_enabled(self) -> bool:
        return self._get_bool("appium.fallback_enabled")

    def start_grace_seconds(self) -> float:
        return self._get_float("appium.start_grace_seconds")

    def app_path(self) -> str:
        return self.get("app_path")

    def host_workspace(self) -> Optional[str]:
        value = self._env.get("HOST_WORKSPACE") or self.get("host_workspace")
        return value.strip() if value and value.strip() else None

    def udid(self) -> str:
        return self.get("udid")

    def device_name(self) -> str:
        return self.get("device_name")

    def app_package(self) -> str:
        return self.get("app_package")

    def app_activity(self) -> str:
        return self.get("app_activity")

    def bundle_id(self) -> str:
        return self.get("bundle_id")

    def new_command_timeout_seconds(self) -> int:
        return self._get_int("new_command_timeout_seconds")

    def retry_count(self) -> int:
        return self._get_int("retry.count")

    def retry_delay_ms(self) -> int:
        return self._get_int("retry.delay_ms")

    def explicit_wait_seconds(self) -> int:
        return self._get_int("wait.seconds")

    def implicit_wait_seconds(self) -> int:
        return self._get_int("wait.implicit_seconds")

    def thread_count(self) -> int:
        return max(1, self._get_int("thread.count"))

    def reports_dir(self) -> Path:
        return Path(self.get("reports.dir")).expanduser()

    def describe(self) -> Dict[str, Any]:
        """Summary of the effective settings, suitable for logs and report headers."""
        return {
            "environment": self.environment_mode().upper(),
            "appium_server": self.server_url(),
            "start_local": self.start_local(),
            "platform": self.platform(),
            "device": f"{self.device_name()} ({self.udid() or 'any'})",
            "required_major": self.required_major_version(),
            "retry_count": self.retry_count(),
            "thread_count": self.thread_count(),
            "config_file": str(self.source) if self.source else None,
        }

    def _get_int(self, key: str) -> int:
        raw = self.get(key)
        try:
            return int(str(raw).strip())
        except (TypeError, ValueError):
            logger.warning("Invalid integer for '%s': %r; using default.", key, raw)
            return int(self._defaults.get(key, "0"))

    def _get_float(self, key: str) -> float:
        raw = self.get(key)
        try:
            return float(str(raw).strip())
        except (TypeError, ValueError):
            logger.warning("Invalid number for '%s': %r; using default.", key, raw)
            return float(self._defaults.get(key, "0"))

    def _get_bool(self, key: str) -> bool:
        value = str(self.get(key)).strip().lower()
        if value in _BOOL_TRUE:
            return True
        if value in _BOOL_FALSE:
            return False
        logger.warning("Invalid boolean for '%s': %r; using default.", key, value)
        return self._defaults.get(key, "false").lower() in _BOOL_TRUE


def load_configuration(
    overrides: Mapping[str, str] | None = None,
    config_path: Optional[Path] = None,
    env: Mapping[str, str] | None = None,
) -> Configuration:
    """Build a Configuration from overrides, the environment and an optional INI file."""

    source_env = os.environ if env is None else env
    overrides = dict(overrides or {})
    config_file = _determine_config_path(source_env, overrides, config_path)
    return Configuration(
        overrides=overrides,
        file_values=_read_file_values(config_file),
        env=source_env,
        source=config_file,
    )


def parse_overrides(pairs: Any) -> Dict[str, str]:
    """Turn ``KEY=VALUE`` strings into an overrides mapping."""
    result: Dict[str, str] = {}
    for pair in pairs or ():
        key, sep, value = str(pair).partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got {pair!r}")
        result[key.strip()] = value
    return result


def _determine_config_path(
    env: Mapping[str, str], overrides: Mapping[str, str], explicit: Optional[Path]
) -> Optional[Path]:
    if explicit is not None:
        return Path(explicit)
    for raw in (overrides.get("config.file"), env.get(f"{_ENV_PREFIX}CONFIG_FILE")):
        if raw:
            return Path(raw).expanduser()
    candidate = Path.cwd() / "mobile_testing.ini"
    return candidate if candidate.is_file() else None


def _read_file_values(config_file: Optional[Path]) -> Dict[str, str]:
    if config_file is None or not config_file.is_file():
        return {}
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(config_file, encoding="utf-8")
    except (configparser.Error, OSError, UnicodeDecodeError) as exc:
        logger.debug("Ignoring unreadable config file %s: %s", config_file, exc)
        return {}
    if not parser.has_section(_FILE_SECTION):
        return {}
    return dict(parser[_FILE_SECTION])


_CONFIGURATION: Optional[Configuration] = None
_CONFIGURATION_LOCK = threading.Lock()


def get_configuration(
    overrides: Mapping[str, str] | None = None,
    config_path: Optional[Path] = None,
) -> Configuration:
    """Return the process-wide Configuration, building it on first access.

    Arguments are only honoured by the call that builds the instance; call
    ``reset_configuration`` first to rebuild with different overrides.
    """
    global _CONFIGURATION
    with _CONFIGURATION_LOCK:
        if _CONFIGURATION is None:
            _CONFIGURATION = load_configuration(overrides=overrides, config_path=config_path)
        return _CONFIGURATION


def reset_configuration() -> None:
    """Drop the cached Configuration."""
    global _CONFIGURATION
    with _CONFIGURATION_LOCK:
        _CONFIGURATION = None
