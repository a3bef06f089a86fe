"""
Health-check helpers for Appium servers.

Every poll against ``GET {endpoint}/status`` is bounded by a request timeout
and every polling loop by a deadline. Connection errors during a single poll
are treated as "not ready yet"; only an exhausted deadline is reported.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Mapping, Optional, Tuple

import requests

from .exceptions import ServerUnreachableError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 2.0


def status_url(base_url: str) -> str:
    return base_url.rstrip("/") + "/status"


def extract_major_version(body: Any) -> Optional[int]:
    """
    Return the major version reported by a ``/status`` body, or None.

    Two response shapes are understood: ``{"build": {"version": "2.4.1"}}``
    (Appium 2) and ``{"value": {"build": {"version": "1.22.0"}}}`` (Appium 1).
    Malformed bodies yield None.
    """
    if isinstance(body, (str, bytes, bytearray)):
        try:
            payload = json.loads(body)
        except (TypeError, ValueError):
            return None
    else:
        payload = body
    if not isinstance(payload, Mapping):
        return None
    for container in (payload, payload.get("value")):
        if not isinstance(container, Mapping):
            continue
        build = container.get("build")
        if isinstance(build, Mapping):
            major = _leading_major(build.get("version"))
            if major is not None:
                return major
    return None


def _leading_major(version: Any) -> Optional[int]:
    if isinstance(version, bool) or not isinstance(version, (str, int, float)):
        return None
    head = str(version).strip().split(".")[0]
    return int(head) if head.isdigit() else None


def major_matches(required: int, major: Optional[int]) -> bool:
    """``0`` is the wildcard requirement."""
    if major is None:
        return False
    return required == 0 or major == required


class StatusClient:
    """Polls Appium ``/status`` endpoints through a requests session."""

    def __init__(
        self,
        http: Optional[requests.Session] = None,
        *,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._http = http if http is not None else requests.Session()
        self.request_timeout = request_timeout
        self._clock = clock
        self._sleep = sleep

    def probe(self, base_url: str) -> int:
        """Return the HTTP status code of ``/status``; connection errors propagate."""
        response = self._http.get(status_url(base_url), timeout=self.request_timeout)
        return int(response.status_code)

    def fetch(self, base_url: str) -> Optional[str]:
        """Return the ``/status`` body for a 2xx answer, otherwise None."""
        response = self._http.get(status_url(base_url), timeout=self.request_timeout)
        if 200 <= int(response.status_code) < 300:
            return response.text
        return None

    def major_version(self, base_url: str) -> Optional[int]:
        """Single poll; any failure reads as "unknown"."""
        try:
            body = self.fetch(base_url)
        except requests.RequestException as exc:
            logger.debug("Status query against %s failed: %s", base_url, exc)
            return None
        return extract_major_version(body) if body else None

    def wait_for_major_version(
        self,
        base_url: str,
        required: int,
        *,
        timeout: float,
        interval: float = 1.0,
    ) -> Tuple[bool, Optional[int]]:
        """
        Poll until a version can be parsed or ``timeout`` seconds elapse.

        Returns ``(matched, major)``; ``major`` is None when the deadline passed
        without a parseable answer.
        """
        url = status_url(base_url)
        deadline = self._clock() + max(timeout, 0.0)
        while True:
            major = self.major_version(base_url)
            if major is not None:
                matched = major_matches(required, major)
                if matched:
                    logger.info("Detected Appium major version %s at %s", major, url)
                else:
                    logger.warning(
                        "Appium major version %s at %s does not match required %s", major, url, required
                    )
                return matched, major
            if self._clock() >= deadline:
                break
            self._sleep(interval)
        logger.warning("Timed out waiting for Appium %s response.", url)
        return False, None

    def wait_until_reachable(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        interval: float = 1.0,
        hint: str = "",
    ) -> int:
        """
        Poll until ``/status`` answers with a code in [200, 500).

        A 4xx still proves the server process is answering. Raises
        ServerUnreachableError once ``timeout`` elapses.
        """
        url = status_url(base_url)
        deadline = self._clock() + max(timeout, 0.0)
        last_error: Optional[BaseException] = None
        while True:
            try:
                code = self.probe(base_url)
                if 200 <= code < 500:
                    return code
                last_error = None
                logger.debug("Appium %s answered %s; retrying.", url, code)
            except requests.RequestException as exc:
                last_error = exc
                logger.debug("Appium %s not reachable yet: %s", url, exc)
            if self._clock() >= deadline:
                break
            self._sleep(interval)
        message = f"Cannot reach Appium server at '{url}'."
        if hint:
            message += f" {hint}"
        if last_error is not None:
            message += f" Last error: {last_error}"
        raise ServerUnreachableError(message)
