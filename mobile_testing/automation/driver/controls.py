"""
Element-level helpers for Appium sessions.

This module wraps Selenium/Appium element lookups with a consistent API so
page objects do not deal with waits or stale references directly. A stale
element reference is retried a few times with a short pause before it
surfaces; each retry re-locates the element.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from selenium.common.exceptions import (
    NoSuchElementException,
    StaleElementReferenceException,
    TimeoutException,
)
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from .exceptions import ActionTimeoutError, ControlNotFoundError

logger = logging.getLogger(__name__)

STALE_RETRIES = 3
STALE_PAUSE_SECONDS = 0.2
POLL_SECONDS = 0.25
DEFAULT_TIMEOUT = 10.0

T = TypeVar("T")


def retry_on_stale(
    action: Callable[[], T],
    retries: int = STALE_RETRIES,
    pause: float = STALE_PAUSE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``action``, retrying up to ``retries`` times on a stale element reference."""
    attempt = 0
    while True:
        try:
            return action()
        except StaleElementReferenceException:
            attempt += 1
            if attempt > retries:
                raise
            logger.debug("Stale element reference; retrying (%s/%s)", attempt, retries)
            sleep(pause)


@dataclass(slots=True)
class ControlSpec:
    """Locator strategy and value, e.g. ``ControlSpec("login-button")``."""

    value: str
    by: str = "accessibility id"

    def locator(self) -> tuple:
        return (self.by, self.value)


def wait_for_element(driver: Any, spec: ControlSpec, timeout: float = DEFAULT_TIMEOUT, *, visible: bool = False):
    """Wait for the element described by ``spec`` to be present (or visible)."""
    condition = (
        EC.visibility_of_element_located(spec.locator())
        if visible
        else EC.presence_of_element_located(spec.locator())
    )
    wait = WebDriverWait(
        driver,
        timeout,
        poll_frequency=POLL_SECONDS,
        ignored_exceptions=(NoSuchElementException, StaleElementReferenceException),
    )
    try:
        return wait.until(condition)
    except TimeoutException as exc:
        raise ControlNotFoundError(
            f"Element {spec.by}='{spec.value}' not found within {timeout}s."
        ) from exc


@dataclass(slots=True)
class UIControl:
    """Element handle that re-locates itself for every interaction."""

    driver: Any
    spec: ControlSpec
    timeout: float = DEFAULT_TIMEOUT

    def element(self):
        return wait_for_element(self.driver, self.spec, self.timeout)

    def click(self) -> None:
        retry_on_stale(lambda: self.element().click())

    def type_text(self, text: str, clear_first: bool = True) -> None:
        def _type() -> None:
            element = self.element()
            if clear_first:
                element.clear()
            element.send_keys(text)

        retry_on_stale(_type)

    def get_value(self) -> str:
        return retry_on_stale(lambda: self.element().text)

    def get_attribute(self, name: str) -> Optional[str]:
        return retry_on_stale(lambda: self.element().get_attribute(name))

    def is_displayed(self) -> bool:
        try:
            return bool(retry_on_stale(lambda: self.element().is_displayed()))
        except (ControlNotFoundError, NoSuchElementException, StaleElementReferenceException):
            return False

    def wait_until_displayed(self, timeout: Optional[float] = None) -> None:
        limit = self.timeout if timeout is None else timeout
        try:
            wait_for_element(self.driver, self.spec, limit, visible=True)
        except ControlNotFoundError as exc:
            raise ActionTimeoutError(
                f"Element {self.spec.by}='{self.spec.value}' not displayed within {limit}s."
            ) from exc


def resolve_control(session: Any, spec: ControlSpec, timeout: float = DEFAULT_TIMEOUT) -> UIControl:
    """Resolve ``spec`` against a DriverSession (or a bare driver) into a UIControl."""
    driver = getattr(session, "driver", session)
    wait_for_element(driver, spec, timeout)
    return UIControl(driver=driver, spec=spec, timeout=timeout)
