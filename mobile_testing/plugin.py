"""
pytest integration for mobile suites.

Enable with ``-p mobile_testing.plugin`` or ``pytest_plugins = ["mobile_testing.plugin"]``.
A test whose call phase fails is re-run while the retry policy allows it;
intermediate attempts are reported as ``rerun`` and only the final outcome
reaches the reporting sink.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, List, Optional

import pytest
from _pytest.runner import runtestprotocol

from mobile_testing.app.configuration import (
    Configuration,
    get_configuration,
    parse_overrides,
    reset_configuration,
)
from mobile_testing.automation.driver.exceptions import ServerLifecycleError
from mobile_testing.automation.driver.session import DriverContext
from mobile_testing.automation.retry import FLAKY_MARKER, RetrySettings
from mobile_testing.automation.suite import SuiteRuntime

logger = logging.getLogger(__name__)

RUNTIME_KEY = pytest.StashKey[SuiteRuntime]()
LIFECYCLE_EXIT_CODE = pytest.ExitCode.INTERRUPTED


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("mobile-testing", "Mobile testing toolkit")
    group.addoption("--mt-config", dest="mt_config", default=None, help="Path to a mobile_testing.ini file")
    group.addoption(
        "--mt-set",
        dest="mt_set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a configuration key (repeatable)",
    )
    group.addoption("--mt-platform", dest="mt_platform", default=None, help="Target platform (Android or iOS)")


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        f"{FLAKY_MARKER}(max_retries=3, delay_ms=1000, reason='', bug_id=''): "
        "re-run the test on failure with its own retry budget",
    )
    try:
        overrides = parse_overrides(config.getoption("mt_set"))
    except ValueError as exc:
        raise pytest.UsageError(f"--mt-set: {exc}") from exc
    platform = config.getoption("mt_platform")
    if platform:
        overrides["platform"] = platform
    config_path = config.getoption("mt_config")
    reset_configuration()
    mobile_config = get_configuration(overrides=overrides, config_path=Path(config_path) if config_path else None)
    config.stash[RUNTIME_KEY] = SuiteRuntime(mobile_config)


def pytest_unconfigure(config: pytest.Config) -> None:
    if config.stash.get(RUNTIME_KEY, None) is not None:
        reset_configuration()


def _runtime(config: pytest.Config) -> Optional[SuiteRuntime]:
    return config.stash.get(RUNTIME_KEY, None)


def pytest_sessionstart(session: pytest.Session) -> None:
    runtime = _runtime(session.config)
    if runtime is None or session.config.option.collectonly:
        return
    allure_dir = getattr(session.config.option, "allure_report_dir", None)
    try:
        runtime.start(allure_dir=Path(allure_dir) if allure_dir else None)
    except ServerLifecycleError as exc:
        logger.error("Appium server startup failed: %s", exc)
        pytest.exit(f"Appium server startup failed: {exc}", returncode=LIFECYCLE_EXIT_CODE)


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    runtime = _runtime(session.config)
    if runtime is not None and runtime.started:
        runtime.finish()


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(session: pytest.Session, config: pytest.Config, items: List[pytest.Item]) -> None:
    runtime = _runtime(config)
    if runtime is None:
        return
    for item in items:
        marker = item.get_closest_marker(FLAKY_MARKER)
        if marker is not None:
            try:
                settings = RetrySettings.from_marker(marker)
            except ValueError as exc:
                raise pytest.UsageError(f"{item.nodeid}: invalid @pytest.mark.{FLAKY_MARKER}: {exc}") from exc
            runtime.retry.register(item.nodeid, settings)
            logger.debug("Registered flaky test %s: %s", item.nodeid, settings)


def _group_name(item: pytest.Item) -> str:
    if isinstance(item, pytest.Function):
        return item.module.__name__
    return item.path.stem


def _final_outcome(reports) -> str:
    for report in reports:
        if report.failed:
            return "failed" if report.when == "call" else "error"
    if any(report.skipped for report in reports):
        return "skipped"
    return "passed"


def _error_message(reports) -> Optional[str]:
    for report in reports:
        if report.failed:
            return report.longreprtext or None
    return None


@pytest.hookimpl(tryfirst=True)
def pytest_runtest_protocol(item: pytest.Item, nextitem: Optional[pytest.Item]) -> Optional[bool]:
    runtime = _runtime(item.config)
    if runtime is None:
        return None
    test_id = item.nodeid
    policy = runtime.retry
    policy.begin(test_id)

    while True:
        item.ihook.pytest_runtest_logstart(nodeid=item.nodeid, location=item.location)
        reports = runtestprotocol(item, nextitem=nextitem, log=False)
        call_failed = any(report.when == "call" and report.failed for report in reports)
        if call_failed and policy.should_retry(test_id):
            runtime.note_retry(test_id, _group_name(item))
            for report in reports:
                if report.when == "call":
                    report.outcome = "rerun"
                item.ihook.pytest_runtest_logreport(report=report)
            item.ihook.pytest_runtest_logfinish(nodeid=item.nodeid, location=item.location)
            continue
        for report in reports:
            item.ihook.pytest_runtest_logreport(report=report)
        item.ihook.pytest_runtest_logfinish(nodeid=item.nodeid, location=item.location)
        break

    duration_ms = int(sum(report.duration for report in reports) * 1000)
    runtime.record_final(test_id, _final_outcome(reports), duration_ms, _error_message(reports))
    return True


def pytest_report_teststatus(report, config):
    if getattr(report, "outcome", None) == "rerun":
        return "rerun", "R", ("RERUN", {"yellow": True})
    return None


@pytest.hookimpl(wrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call):
    report = yield
    if report.when == "call" and report.failed:
        runtime = _runtime(item.config)
        if runtime is not None:
            _attach_failure_screenshot(runtime, item.nodeid)
    return report


def _attach_failure_screenshot(runtime: SuiteRuntime, test_id: str) -> None:
    session = runtime.sessions.current()
    if session is None:
        return
    try:
        png = session.driver.get_screenshot_as_png()
    except Exception as exc:
        logger.warning("Could not capture failure screenshot for %s: %s", test_id, exc)
        return
    runtime.attach_screenshot(test_id, png)


def pytest_terminal_summary(terminalreporter, exitstatus, config) -> None:
    runtime = _runtime(config)
    if runtime is None or not runtime.metrics.retry_counts:
        return
    terminalreporter.write_sep("-", "mobile testing reruns")
    for test_id, count in sorted(runtime.metrics.retry_counts.items()):
        terminalreporter.write_line(f"{count} rerun(s): {test_id}")


@pytest.fixture(scope="session")
def suite_runtime(request: pytest.FixtureRequest) -> SuiteRuntime:
    runtime = _runtime(request.config)
    if runtime is None:
        raise pytest.UsageError("mobile_testing.plugin is not configured for this session.")
    return runtime


@pytest.fixture(scope="session")
def mobile_config(suite_runtime: SuiteRuntime) -> Configuration:
    return suite_runtime.config


@pytest.fixture
def driver_context(suite_runtime: SuiteRuntime) -> Iterator[DriverContext]:
    """Opens the calling thread's Appium session for one test and quits it afterwards."""
    context = DriverContext(suite_runtime.sessions)
    context.open()
    try:
        yield context
    finally:
        context.close()


@pytest.fixture
def driver(driver_context: DriverContext):
    return driver_context.driver
