from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Tuple


@dataclass
class ExecutionMetrics:
    """Tracks final outcomes, per-test durations and retry usage for a run."""

    outcome_counts: Dict[str, int] = field(default_factory=lambda: {"passed": 0, "failed": 0, "skipped": 0, "error": 0})
    durations_ms: Dict[str, int] = field(default_factory=dict)
    retry_counts: Dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def note_result(self, test_id: str, outcome: str, duration_ms: int) -> None:
        """Record the final outcome of one test."""
        with self._lock:
            self.outcome_counts[outcome] = self.outcome_counts.get(outcome, 0) + 1
            self.durations_ms[test_id] = int(duration_ms)

    def note_retry(self, test_id: str) -> None:
        with self._lock:
            self.retry_counts[test_id] = self.retry_counts.get(test_id, 0) + 1

    def total(self) -> int:
        with self._lock:
            return sum(self.outcome_counts.values())

    def slowest(self, limit: int = 5) -> List[Tuple[str, int]]:
        with self._lock:
            items = sorted(self.durations_ms.items(), key=lambda item: (-item[1], item[0]))
        return items[:limit]

    def summary(self) -> str:
        with self._lock:
            counts = dict(self.outcome_counts)
            retries = dict(self.retry_counts)
            total_ms = sum(self.durations_ms.values())
        lines = [
            f"Tests: {sum(counts.values())}",
            "Outcomes: " + ", ".join(f"{name}={count}" for name, count in sorted(counts.items())),
            f"Total duration: {total_ms} ms",
            f"Retried tests: {len(retries)} ({sum(retries.values())} reruns)",
        ]
        for test_id, count in sorted(retries.items()):
            lines.append(f"  rerun x{count}: {test_id}")
        slow = self.slowest()
        if slow:
            lines.append("Slowest:")
            lines.extend(f"  {ms} ms  {test_id}" for test_id, ms in slow)
        return "\n".join(lines)
