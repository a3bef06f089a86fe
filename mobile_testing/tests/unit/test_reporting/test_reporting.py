from __future__ import annotations

import json
from pathlib import Path
from typing import List

import pytest

from mobile_testing.app.configuration import Configuration
from mobile_testing.automation.reporting import allure_helpers
from mobile_testing.automation.reporting.allure_helpers import AllureReportingSink, write_allure_environment
from mobile_testing.automation.reporting.metrics import ExecutionMetrics


class FakeAllure:
    def __init__(self) -> None:
        self.attachments: List[tuple] = []

    def attach(self, body, name=None, attachment_type=None) -> None:
        self.attachments.append((name, body, attachment_type))


@pytest.fixture
def fake_allure(monkeypatch: pytest.MonkeyPatch) -> FakeAllure:
    fake = FakeAllure()
    monkeypatch.setattr(allure_helpers, "allure", fake)
    return fake


def test_sink_forwards_attachments(fake_allure: FakeAllure) -> None:
    sink = AllureReportingSink()
    sink.attach("screen", b"\x89PNG", "image/png")
    assert fake_allure.attachments == [("screen", b"\x89PNG", "image/png")]


def test_attachments_are_noop_without_allure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(allure_helpers, "allure", None)
    AllureReportingSink().attach("screen", b"data", "image/png")
    allure_helpers.attach_text("note", "hello")
    allure_helpers.attach_file("missing", tmp_path / "nope.log")


def test_text_json_and_file_helpers(fake_allure: FakeAllure, tmp_path: Path) -> None:
    log = tmp_path / "appium.log"
    log.write_text("started", encoding="utf-8")
    allure_helpers.attach_text("note", "hello")
    allure_helpers.attach_json("caps", {"platformName": "Android"})
    allure_helpers.attach_file("appium log", log, "text/plain")
    allure_helpers.attach_image("missing image", tmp_path / "none.png")

    names = [name for name, _, _ in fake_allure.attachments]
    assert names == ["note", "caps", "appium log"]
    assert json.loads(fake_allure.attachments[1][1]) == {"platformName": "Android"}
    assert fake_allure.attachments[2][2] == "text/plain"


def test_sink_writes_results_file(tmp_path: Path) -> None:
    results = tmp_path / "reports" / "results.json"
    sink = AllureReportingSink(results)
    sink.record_result("test_a", "passed", 120)
    sink.record_result("test_b", "failed", 340, "AssertionError: boom")

    assert sink.close() == results
    payload = json.loads(results.read_text(encoding="utf-8"))
    assert payload["counts"] == {"passed": 1, "failed": 1}
    assert payload["results"][1] == {
        "name": "test_b",
        "status": "failed",
        "duration_ms": 340,
        "error_message": "AssertionError: boom",
    }


def test_sink_without_results_file() -> None:
    sink = AllureReportingSink()
    sink.record_result("test_a", "passed", 1)
    assert sink.close() is None


def test_write_allure_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BUILD_NUMBER", "77")
    config = Configuration(overrides={"platform": "iOS"}, env={})
    target = write_allure_environment(tmp_path / "allure-results", config)

    properties = (target / "environment.properties").read_text(encoding="utf-8")
    assert "Platform=iOS" in properties
    assert "Appium.Server=http://127.0.0.1:4723" in properties
    categories = json.loads((target / "categories.json").read_text(encoding="utf-8"))
    assert categories[0] == {"name": "Test defects", "matchedStatuses": ["failed"]}
    executor = json.loads((target / "executor.json").read_text(encoding="utf-8"))
    assert executor["buildName"] == "77"


def test_execution_metrics_summary() -> None:
    metrics = ExecutionMetrics()
    metrics.note_result("t1", "passed", 100)
    metrics.note_result("t2", "failed", 900)
    metrics.note_retry("t2")
    metrics.note_retry("t2")

    assert metrics.total() == 2
    assert metrics.slowest(1) == [("t2", 900)]
    summary = metrics.summary()
    assert "Tests: 2" in summary
    assert "failed=1" in summary
    assert "Retried tests: 1 (2 reruns)" in summary
    assert "rerun x2: t2" in summary
