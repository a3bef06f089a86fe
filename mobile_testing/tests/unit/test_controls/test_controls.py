from __future__ import annotations

from types import SimpleNamespace
from typing import List

import pytest
from selenium.common.exceptions import NoSuchElementException, StaleElementReferenceException

from mobile_testing.automation.driver.controls import (
    ControlSpec,
    UIControl,
    resolve_control,
    retry_on_stale,
)
from mobile_testing.app.configuration import Configuration
from mobile_testing.automation.driver.exceptions import ActionTimeoutError, ControlNotFoundError
from mobile_testing.automation.driver.session import DriverContext


class FakeElement:
    def __init__(self, text: str = "", displayed: bool = True, stale_clicks: int = 0) -> None:
        self.text = text
        self.displayed = displayed
        self.stale_clicks = stale_clicks
        self.clicks = 0
        self.typed: List[str] = []
        self.cleared = 0

    def click(self) -> None:
        if self.stale_clicks:
            self.stale_clicks -= 1
            raise StaleElementReferenceException("detached")
        self.clicks += 1

    def clear(self) -> None:
        self.cleared += 1

    def send_keys(self, text: str) -> None:
        self.typed.append(text)

    def get_attribute(self, name: str):
        return {"content-desc": "Login"}.get(name)

    def is_displayed(self) -> bool:
        return self.displayed


class FakeDriver:
    def __init__(self, elements) -> None:
        self.elements = elements
        self.lookups: List[tuple] = []

    def find_element(self, by: str, value: str):
        self.lookups.append((by, value))
        if value not in self.elements:
            raise NoSuchElementException(value)
        return self.elements[value]


def test_retry_on_stale_gives_up_after_three_retries() -> None:
    pauses: List[float] = []
    calls = []

    def always_stale():
        calls.append(1)
        raise StaleElementReferenceException("gone")

    with pytest.raises(StaleElementReferenceException):
        retry_on_stale(always_stale, sleep=pauses.append)
    assert len(calls) == 4
    assert pauses == [0.2, 0.2, 0.2]


def test_retry_on_stale_returns_value() -> None:
    assert retry_on_stale(lambda: 42, sleep=lambda seconds: None) == 42


def test_click_recovers_from_stale_reference() -> None:
    element = FakeElement(stale_clicks=2)
    driver = FakeDriver({"login": element})
    control = UIControl(driver, ControlSpec("login"), timeout=1)
    control.click()
    assert element.clicks == 1
    assert len(driver.lookups) == 3


def test_type_text_and_reads() -> None:
    element = FakeElement(text="Welcome")
    control = resolve_control(SimpleNamespace(driver=FakeDriver({"name": element})), ControlSpec("name"), timeout=1)
    control.type_text("alice")
    control.type_text("bob", clear_first=False)
    assert element.typed == ["alice", "bob"]
    assert element.cleared == 1
    assert control.get_value() == "Welcome"
    assert control.get_attribute("content-desc") == "Login"
    assert control.is_displayed() is True


def test_missing_element_raises_control_not_found() -> None:
    with pytest.raises(ControlNotFoundError, match="accessibility id='ghost'"):
        resolve_control(FakeDriver({}), ControlSpec("ghost"), timeout=0)
    assert UIControl(FakeDriver({}), ControlSpec("ghost"), timeout=0).is_displayed() is False


def test_wait_until_displayed_times_out() -> None:
    control = UIControl(FakeDriver({"spinner": FakeElement(displayed=False)}), ControlSpec("spinner"), timeout=0)
    with pytest.raises(ActionTimeoutError):
        control.wait_until_displayed()


def test_control_spec_locator() -> None:
    assert ControlSpec("//button", by="xpath").locator() == ("xpath", "//button")


class FakeSessions:
    def __init__(self, driver: FakeDriver) -> None:
        self.config = Configuration(overrides={"wait.seconds": "3"}, env={})
        self.driver = driver
        self.quits = 0

    def init(self, platform=None):
        return SimpleNamespace(driver=self.driver, is_android=True, is_ios=False)

    def quit(self) -> None:
        self.quits += 1


def test_driver_context_resolves_controls_with_configured_wait() -> None:
    element = FakeElement()
    sessions = FakeSessions(FakeDriver({"login": element}))
    with DriverContext(sessions) as context:
        control = context.control(ControlSpec("login"))
        assert control.timeout == 3.0
        control.click()
        assert context.control(ControlSpec("login"), timeout=0).timeout == 0
    assert element.clicks == 1
    assert sessions.quits == 1
