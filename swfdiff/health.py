"""
Health monitoring for the swfdiff harness.

Adverse events (exhausted seeds, launch failures, timeout streaks, lane
halts) are appended to a JSONL file, one object per line. Nothing here
raises into a lane. Several lanes share one monitor, so writes and
counters are guarded by a lock.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# Threshold for consecutive timeout warnings within one lane
CONSECUTIVE_TIMEOUT_THRESHOLD = 5


class HealthMonitor:
    """Shared sink for adverse events.

    Each event becomes one JSONL line and bumps a "category.event" counter.
    Timeout streaks are counted per lane. I/O errors are dropped.
    """

    def __init__(self, log_path: Path) -> None:
        self.log_path = log_path
        self.counters: dict[str, int] = {}
        self._lock = threading.Lock()
        self._timeout_streaks: dict[int, int] = {}

    def _write_event(self, category: str, event: str, **kwargs: Any) -> None:
        """Append one event line; category is generation, execution, store or lane."""
        record: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "cat": category,
            "event": event,
        }
        record.update(kwargs)
        with self._lock:
            try:
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(record, default=str) + "\n")
            except OSError:
                pass  # A lost health event never stops a campaign

            counter_key = f"{category}.{event}"
            self.counters[counter_key] = self.counters.get(counter_key, 0) + 1

    # =========================================================================
    # Generation Events
    # =========================================================================

    def record_generation_exhausted(self, lane: int, seed: int, attempts: int, error: str) -> None:
        """Record a seed for which no valid document could be produced."""
        self._write_event(
            "generation",
            "generation_exhausted",
            lane=lane,
            seed=seed,
            attempts=attempts,
            error=error,
        )

    def record_uniqueness_stall(self, lane: int, seconds: float) -> None:
        """Record a lane that keeps regenerating documents it has already tried."""
        self._write_event(
            "generation",
            "uniqueness_stall",
            lane=lane,
            seconds=round(seconds, 2),
        )

    # =========================================================================
    # Execution Events
    # =========================================================================

    def record_timeout(self, lane: int, side: str) -> None:
        """Count a timed-out cycle; the streak is logged once it hits the threshold."""
        with self._lock:
            streak = self._timeout_streaks.get(lane, 0) + 1
            self._timeout_streaks[lane] = streak
        if streak == CONSECUTIVE_TIMEOUT_THRESHOLD:
            self._write_event(
                "execution",
                "consecutive_timeouts",
                lane=lane,
                side=side,
                count=streak,
            )

    def reset_timeout_streak(self, lane: int) -> None:
        """A cycle without timeouts ends the lane's streak."""
        with self._lock:
            self._timeout_streaks.pop(lane, None)

    def record_interception_miss(self, status: str) -> None:
        """Record an oracle run during which the shim captured nothing."""
        self._write_event("execution", "interception_miss", status=status)

    def record_launch_failure(self, lane: int, side: str, detail: str | None) -> None:
        self._write_event("execution", "launch_failure", lane=lane, side=side, detail=detail)

    # =========================================================================
    # Store and Lane Events
    # =========================================================================

    def record_store_error(self, fingerprint: str, error: str) -> None:
        """Record a failure bundle that could not be written."""
        self._write_event("store", "store_write_error", fingerprint=fingerprint[:16], error=error)

    def record_cycle_error(self, lane: int, error: str) -> None:
        """Record a cycle abandoned because of an unexpected exception."""
        self._write_event("lane", "cycle_error", lane=lane, error=error)

    def record_lane_halted(self, lane: int, error: str) -> None:
        """Record a lane stopped by an infrastructure error."""
        self._write_event("lane", "lane_halted", lane=lane, error=error)

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> dict[str, int]:
        """Snapshot of the "category.event" counters."""
        with self._lock:
            return dict(self.counters)
