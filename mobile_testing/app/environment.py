# mobile_testing/app/environment.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .configuration import Configuration


@dataclass
class Paths:
    """Resolved filesystem locations used by a test run."""

    root: Path
    reports_dir: Path
    logs_dir: Path
    screenshots_dir: Path
    flake_stats: Path

    @property
    def appium_log(self) -> Path:
        return self.logs_dir / "appium.log"

    @property
    def results_file(self) -> Path:
        return self.reports_dir / "results.json"

    def ensure(self) -> "Paths":
        _ensure_dirs(self.reports_dir, self.logs_dir, self.screenshots_dir)
        return self


def build_default_paths(config: Configuration, root: Optional[Path] = None, *, create: bool = True) -> Paths:
    """Create the Paths collection for ``config``; ``create=False`` leaves the filesystem untouched."""
    base = Path.cwd() if root is None else Path(root)
    reports_dir = config.reports_dir()
    if not reports_dir.is_absolute():
        reports_dir = base / reports_dir
    paths = Paths(
        root=base,
        reports_dir=reports_dir,
        logs_dir=reports_dir / "logs",
        screenshots_dir=reports_dir / "screenshots",
        flake_stats=reports_dir / "flake_stats.json",
    )
    return paths.ensure() if create else paths


def _ensure_dirs(*directories: Path) -> None:
    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)
