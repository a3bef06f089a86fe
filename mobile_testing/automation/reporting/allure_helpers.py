"""Allure reporting helpers and the reporting sink used by the test runner."""

from __future__ import annotations

import json
import logging
import os
import platform
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

try:
    import allure  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    allure = None  # type: ignore

from mobile_testing.app.configuration import Configuration

logger = logging.getLogger(__name__)

FRAMEWORK_NAME = "Mobile Testing Toolkit"


class ReportingSink(Protocol):
    def attach(self, name: str, content: bytes, mime_hint: str) -> None: ...

    def record_result(self, name: str, status: str, duration_ms: int, error_message: Optional[str] = None) -> None: ...


@dataclass(slots=True)
class ResultRecord:
    name: str
    status: str
    duration_ms: int
    error_message: Optional[str] = None


def _attach_bytes(content: bytes, name: str, attachment_type: str) -> None:
    if allure is None:
        return
    try:
        allure.attach(content, name=name, attachment_type=attachment_type)
    except Exception as exc:
        logger.debug("Allure attach failed for %s: %s", name, exc)


def attach_image(name: str, path: Path, attachment_type: Optional[str] = None) -> None:
    try:
        content = Path(path).read_bytes()
    except OSError as exc:
        logger.debug("Cannot read image %s: %s", path, exc)
        return
    _attach_bytes(content, name, attachment_type or "image/png")


def attach_file(name: str, path: Path, attachment_type: Optional[str] = None) -> None:
    path = Path(path)
    if not path.exists():
        return
    _attach_bytes(path.read_bytes(), name, attachment_type or "application/octet-stream")


def attach_text(name: str, text: str) -> None:
    _attach_bytes(text.encode("utf-8"), name, "text/plain")


def attach_json(name: str, payload: Any) -> None:
    _attach_bytes(json.dumps(payload, indent=2, default=str).encode("utf-8"), name, "application/json")


def write_allure_environment(results_dir: Path, config: Configuration) -> Path:
    """Write environment.properties, categories.json and executor.json into ``results_dir``."""
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)

    properties = {
        "Framework": FRAMEWORK_NAME,
        "Python.Version": platform.python_version(),
        "Execution.Date": datetime.now().isoformat(timespec="seconds"),
        "OS.Name": platform.system(),
        "Platform": config.platform(),
        "Appium.Server": config.server_url(),
        "Environment": config.environment_mode().upper(),
    }
    lines = [f"{key}={value}" for key, value in properties.items()]
    (results_dir / "environment.properties").write_text("\n".join(lines) + "\n", encoding="utf-8")

    categories = [
        {"name": "Test defects", "matchedStatuses": ["failed"]},
        {"name": "Broken tests", "matchedStatuses": ["broken"]},
    ]
    (results_dir / "categories.json").write_text(json.dumps(categories, indent=2), encoding="utf-8")

    executor = {"name": f"{FRAMEWORK_NAME} Tests", "buildName": os.environ.get("BUILD_NUMBER", "local")}
    (results_dir / "executor.json").write_text(json.dumps(executor, indent=2), encoding="utf-8")
    return results_dir


class AllureReportingSink:
    """Forwards attachments to Allure and keeps final results for ``results.json``."""

    def __init__(self, results_file: Optional[Path] = None) -> None:
        self.results_file = Path(results_file) if results_file else None
        self._results: List[ResultRecord] = []
        self._lock = threading.Lock()

    def attach(self, name: str, content: bytes, mime_hint: str) -> None:
        _attach_bytes(content, name, mime_hint or "application/octet-stream")

    def record_result(self, name: str, status: str, duration_ms: int, error_message: Optional[str] = None) -> None:
        with self._lock:
            self._results.append(ResultRecord(name, status, int(duration_ms), error_message))

    def results(self) -> List[ResultRecord]:
        with self._lock:
            return list(self._results)

    def counts(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for record in self.results():
            totals[record.status] = totals.get(record.status, 0) + 1
        return totals

    def close(self) -> Optional[Path]:
        if self.results_file is None:
            return None
        payload = {"counts": self.counts(), "results": [asdict(record) for record in self.results()]}
        try:
            self.results_file.parent.mkdir(parents=True, exist_ok=True)
            self.results_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write results to %s: %s", self.results_file, exc)
            return None
        logger.info("Wrote %s result(s) to %s", len(payload["results"]), self.results_file)
        return self.results_file
