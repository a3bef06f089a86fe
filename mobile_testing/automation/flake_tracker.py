"""Retried-failure counts persisted as JSON, grouped by test module."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)


@dataclass
class FlakeTracker:
    path: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self._stats: Dict[str, Dict[str, int]] = {}
        if self.path.exists():
            try:
                loaded = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable flake stats %s: %s", self.path, exc)
            else:
                if isinstance(loaded, dict):
                    self._stats = {
                        str(group): {str(k): int(v) for k, v in tests.items() if isinstance(v, int)}
                        for group, tests in loaded.items()
                        if isinstance(tests, dict)
                    }

    def record_failure(self, group: str, identifier: str) -> int:
        """Count one retried failure of ``identifier`` and persist; returns the new count."""
        with self._lock:
            group_stats = self._stats.setdefault(group, {})
            group_stats[identifier] = group_stats.get(identifier, 0) + 1
            count = group_stats[identifier]
            self._flush()
        return count

    def stats(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {group: dict(tests) for group, tests in self._stats.items()}

    def most_flaky(self, limit: int = 10) -> List[Tuple[str, str, int]]:
        rows = [(group, name, count) for group, tests in self.stats().items() for name, count in tests.items()]
        rows.sort(key=lambda row: (-row[2], row[0], row[1]))
        return rows[:limit]

    def _flush(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self._stats, indent=2, sort_keys=True), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write flake stats to %s: %s", self.path, exc)
