"""
Retry decisions for failing tests.

``RetryPolicy.should_retry`` is consulted by the test runner right after a
failure. Counters are keyed by test identity plus the executing thread so
parallel lanes running the same test never share a count. The policy only
decides and waits; re-running the test is the caller's job.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set, Tuple

from mobile_testing.app.configuration import Configuration

logger = logging.getLogger(__name__)

FLAKY_MARKER = "flaky_test"
MARKER_FIELDS = ("max_retries", "delay_ms", "reason", "bug_id")
MAX_DELAY_MS = 60_000

_Key = Tuple[str, int]


@dataclass(frozen=True)
class RetrySettings:
    """Retry budget for one test: extra attempts after the first and the pause between them."""

    max_retries: int = 1
    delay_ms: int = 1000
    reason: str = ""
    bug_id: str = ""

    @classmethod
    def flaky(cls, max_retries: int = 3, delay_ms: int = 1000, reason: str = "", bug_id: str = "") -> "RetrySettings":
        return cls(max_retries=max(0, int(max_retries)), delay_ms=max(0, int(delay_ms)), reason=reason, bug_id=bug_id)

    @classmethod
    def from_marker(cls, marker: Any) -> "RetrySettings":
        """Settings from ``@pytest.mark.flaky_test(max_retries=..., delay_ms=..., reason=..., bug_id=...)``.

        Raises ValueError for unknown keywords, surplus positional arguments
        and non-integer counts.
        """
        kwargs = dict(marker.kwargs)
        unknown = sorted(set(kwargs) - set(MARKER_FIELDS))
        if unknown:
            raise ValueError(
                f"unexpected argument(s) {', '.join(unknown)}; expected {', '.join(MARKER_FIELDS)}"
            )
        if len(marker.args) > len(MARKER_FIELDS):
            raise ValueError(f"takes at most {len(MARKER_FIELDS)} positional arguments, got {len(marker.args)}")
        for name, value in zip(MARKER_FIELDS, marker.args):
            if name in kwargs:
                raise ValueError(f"got multiple values for '{name}'")
            kwargs[name] = value
        for name in ("max_retries", "delay_ms"):
            if name in kwargs:
                try:
                    kwargs[name] = int(kwargs[name])
                except (TypeError, ValueError):
                    raise ValueError(f"'{name}' must be an integer, got {kwargs[name]!r}") from None
        return cls.flaky(**kwargs)


class RetryPolicy:
    """Per-test retry counters with explicitly registered overrides."""

    def __init__(self, default: RetrySettings = RetrySettings(), *, wait: Optional[Callable[[float], Any]] = None) -> None:
        self.default = default
        self._registered: Dict[str, RetrySettings] = {}
        self._counters: Dict[_Key, int] = {}
        self._exhausted: Set[_Key] = set()
        self._sleepers: Set[threading.Event] = set()
        self._lock = threading.Lock()
        self._wait = wait

    @classmethod
    def from_config(cls, config: Configuration, **kwargs: Any) -> "RetryPolicy":
        default = RetrySettings(max_retries=max(0, config.retry_count()), delay_ms=max(0, config.retry_delay_ms()))
        return cls(default, **kwargs)

    def register(self, test_id: str, settings: RetrySettings) -> None:
        """Attach per-test settings; they replace the default count and delay."""
        with self._lock:
            self._registered[test_id] = settings

    def resolve(self, test_id: str) -> RetrySettings:
        with self._lock:
            return self._registered.get(test_id, self.default)

    def should_retry(self, test_id: str) -> bool:
        key = (test_id, threading.get_ident())
        settings = self.resolve(test_id)
        with self._lock:
            if key in self._exhausted:
                return False
            count = self._counters.get(key, 0)
            if count >= settings.max_retries:
                self._counters.pop(key, None)
                self._exhausted.add(key)
                attempt = None
            else:
                attempt = count + 1
                self._counters[key] = attempt
        if attempt is None:
            logger.info("Retries exhausted for '%s' after %s attempt(s).", test_id, settings.max_retries)
            return False
        logger.info("Retrying test '%s' - attempt %s/%s", test_id, attempt, settings.max_retries)
        if settings.reason or settings.bug_id:
            logger.debug("'%s' is marked flaky: %s %s", test_id, settings.reason, settings.bug_id)
        self._pause(settings.delay_ms)
        return True

    def begin(self, test_id: str) -> None:
        """A fresh invocation of ``test_id`` starts counting from zero."""
        self._forget(test_id)

    def finish(self, test_id: str) -> None:
        """Terminal result reached (passed or reported); drop all per-attempt state."""
        self._forget(test_id)

    def attempts(self, test_id: str) -> int:
        with self._lock:
            return self._counters.get((test_id, threading.get_ident()), 0)

    def interrupt(self) -> None:
        """Wake the retry delays in progress right now; later delays run in full and the retry still happens."""
        with self._lock:
            sleepers = list(self._sleepers)
        for event in sleepers:
            event.set()

    def reset_all(self) -> None:
        with self._lock:
            self._counters.clear()
            self._exhausted.clear()

    def _forget(self, test_id: str) -> None:
        key = (test_id, threading.get_ident())
        with self._lock:
            self._counters.pop(key, None)
            self._exhausted.discard(key)

    def _pause(self, delay_ms: int) -> None:
        if delay_ms <= 0:
            return
        seconds = min(delay_ms, MAX_DELAY_MS) / 1000.0
        if self._wait is not None:
            self._wait(seconds)
            return
        event = threading.Event()
        with self._lock:
            self._sleepers.add(event)
        try:
            event.wait(seconds)
        finally:
            with self._lock:
                self._sleepers.discard(event)

    def sleeping(self) -> int:
        """Number of threads currently waiting out a retry delay."""
        with self._lock:
            return len(self._sleepers)
