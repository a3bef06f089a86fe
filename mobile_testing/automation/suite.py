"""
Suite-wide runtime shared by the pytest plugin and the CLI.

``SuiteRuntime`` is the single owner of the server lifecycle manager, the
per-thread session manager, the retry policy, flake statistics, execution
metrics and the reporting sink for one run.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from mobile_testing.app.configuration import Configuration
from mobile_testing.app.environment import Paths, build_default_paths

from .driver.server import ServerHandle, ServerLifecycleManager
from .driver.session import SessionManager
from .driver.status import StatusClient
from .flake_tracker import FlakeTracker
from .reporting.allure_helpers import (
    AllureReportingSink,
    ReportingSink,
    attach_file,
    attach_image,
    write_allure_environment,
)
from .reporting.metrics import ExecutionMetrics
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class SuiteRuntime:
    def __init__(
        self,
        config: Configuration,
        *,
        paths: Optional[Paths] = None,
        status_client: Optional[StatusClient] = None,
        server: Optional[ServerLifecycleManager] = None,
        sessions: Optional[SessionManager] = None,
        retry: Optional[RetryPolicy] = None,
        flakes: Optional[FlakeTracker] = None,
        metrics: Optional[ExecutionMetrics] = None,
        sink: Optional[ReportingSink] = None,
    ) -> None:
        self.config = config
        self.paths = paths or build_default_paths(config, create=False)
        status_client = status_client or StatusClient()
        self.server = server or ServerLifecycleManager(
            config, status_client=status_client, log_path=self.paths.appium_log
        )
        self.sessions = sessions or SessionManager(config, status_client=status_client)
        self.retry = retry or RetryPolicy.from_config(config)
        self.flakes = flakes or FlakeTracker(self.paths.flake_stats)
        self.metrics = metrics or ExecutionMetrics()
        self.sink = sink if sink is not None else AllureReportingSink(self.paths.results_file)
        self.started = False

    def start(self, allure_dir: Optional[Path] = None) -> ServerHandle:
        """Bring up (or adopt) the Appium server; lifecycle errors propagate."""
        logger.info("Mobile test suite starting: %s", self.config.describe())
        self.paths.ensure()
        handle = self.server.ensure_started()
        if handle.url and handle.mode in {"service", "process", "reused"}:
            self.sessions.endpoint = handle.url
        self.started = True
        if allure_dir is not None:
            try:
                write_allure_environment(Path(allure_dir), self.config)
            except OSError as exc:
                logger.warning("Could not write Allure environment files to %s: %s", allure_dir, exc)
        return handle

    def note_retry(self, test_id: str, group: str) -> None:
        self.metrics.note_retry(test_id)
        self.flakes.record_failure(group, test_id)

    def record_final(self, test_id: str, outcome: str, duration_ms: int, error_message: Optional[str] = None) -> None:
        """Report one test's terminal outcome; retried attempts never reach here."""
        self.metrics.note_result(test_id, outcome, duration_ms)
        self.sink.record_result(test_id, outcome, duration_ms, error_message)
        self.retry.finish(test_id)

    def attach_screenshot(self, test_id: str, png: bytes) -> Optional[Path]:
        """Save a failure screenshot under the screenshots dir and attach it to the report."""
        safe_name = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in test_id)
        target = self.paths.screenshots_dir / f"{safe_name}.png"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(png)
        except OSError as exc:
            logger.warning("Could not save failure screenshot %s: %s", target, exc)
            self.sink.attach(f"failure-{test_id}", png, "image/png")
            return None
        attach_image(f"failure-{test_id}", target)
        return target

    def finish(self) -> None:
        self.retry.interrupt()
        self.sessions.quit()
        owned_server = self.server.handle.owned
        try:
            self.server.shutdown()
        except Exception as exc:
            logger.warning("Ignoring error during Appium shutdown: %s", exc)
        if owned_server:
            attach_file("appium-log", self.paths.appium_log, "text/plain")
        summary = self.metrics.summary()
        logger.info("Execution summary:\n%s", summary)
        self.sink.attach("execution-summary", summary.encode("utf-8"), "text/plain")
        close = getattr(self.sink, "close", None)
        if callable(close):
            close()
        self.started = False
