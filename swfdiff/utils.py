"""
This module contains generic, reusable helpers for the swfdiff harness.

It includes utilities for logging, managing run statistics and cleaning up
child processes.
"""

from __future__ import annotations

import json
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO

import psutil

RUN_STATS_FILE = Path("swfdiff_run_stats.json")


def _default_run_stats() -> dict[str, Any]:
    """Return the canonical default run statistics structure."""
    return {
        "start_time": datetime.now(timezone.utc).isoformat(),
        "last_update_time": None,
        "total_cycles": 0,
        "matches": 0,
        "divergences_found": 0,
        "new_failures": 0,
        "duplicate_failures": 0,
        "inconclusive": 0,
        "generation_exhausted": 0,
        "oracle_crashes": 0,
        "native_crashes": 0,
        "timeouts": 0,
        "interception_misses": 0,
        "launch_failures": 0,
        "cycle_errors": 0,
    }


def load_run_stats(path: Path = RUN_STATS_FILE) -> dict[str, Any]:
    """
    Load the persistent run statistics from the JSON file.
    Returns a default structure if the file doesn't exist.
    """
    if not path.is_file():
        return _default_run_stats()
    try:
        with open(path, "r", encoding="utf-8") as f:
            stats: dict[str, Any] = json.load(f)
        for key, value in _default_run_stats().items():
            if key != "start_time":
                stats.setdefault(key, value)
        return stats
    except (json.JSONDecodeError, OSError) as e:
        print(
            f"Warning: Could not load run stats file. Starting fresh. Error: {e}",
            file=sys.stderr,
        )
        return _default_run_stats()


def save_run_stats(stats: dict[str, Any], path: Path = RUN_STATS_FILE) -> None:
    """Save the run statistics to the JSON file."""
    try:
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(stats, f, indent=2, sort_keys=True)
        tmp_path.replace(path)
    except OSError as e:
        print(f"Warning: Could not save run stats: {e}", file=sys.stderr)


def kill_process_tree(pid: int, timeout: float = 3.0) -> None:
    """Kill a process and all of its descendants, ignoring ones already gone."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        procs = [parent]
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(procs, timeout=timeout)


def lane_cpus(lane: int) -> list[int]:
    """The core a lane is pinned to, picked round-robin from the usable ones."""
    try:
        usable = sorted(psutil.Process().cpu_affinity())
    except (AttributeError, psutil.Error, OSError):
        # cpu_affinity() does not exist on macOS.
        usable = list(range(psutil.cpu_count() or 1))
    return [usable[lane % len(usable)]]


def pin_process(pid: int, cpus: list[int]) -> bool:
    """Restrict a process to the given cores. False when that is not possible."""
    try:
        psutil.Process(pid).cpu_affinity(cpus)
    except (AttributeError, psutil.Error, OSError, ValueError):
        return False
    return True


class TeeLogger:
    """
    Mirrors everything written to it into a run log file as well as the
    console stream it replaces.

    Identical consecutive lines are held back and printed once with a
    (×N) suffix. With verbose=False the per-cycle chatter ([GEN], [EXEC],
    matches) is dropped from both outputs. Lanes print concurrently, so
    every write goes through one lock.
    """

    # Lines containing these markers are suppressed in quiet mode.
    _QUIET_SUPPRESS_MARKERS: tuple[str, ...] = (
        "[GEN]",
        "[EXEC]",
        "[~] Match",
        "[~] Duplicate document",
    )

    def __init__(self, file_path: str | Path, original_stream: TextIO, verbose: bool = True) -> None:
        self.original_stream = original_stream
        self.log_file = open(file_path, "w", encoding="utf-8")
        self.verbose = verbose
        self._lock = threading.RLock()
        self._last_line: str | None = None
        self._repeat_count = 0
        self._last_was_suppressed = False
        self._awaiting_separator = False

    def _is_suppressed(self, line: str) -> bool:
        if self.verbose:
            return False
        return any(marker in line for marker in self._QUIET_SUPPRESS_MARKERS)

    def _emit(self, text: str) -> None:
        self.original_stream.write(text)
        self.log_file.write(text)

    def _flush_repeat(self) -> None:
        if self._last_line is None:
            return
        line = self._last_line
        if self._repeat_count > 1:
            suffix = f" (×{self._repeat_count})"
            line = line[:-1] + suffix + "\n" if line.endswith("\n") else line + suffix
        self._emit(line)
        self._last_line = None
        self._repeat_count = 0

    def write(self, message: str) -> None:
        with self._lock:
            if message == "\n":
                # print() sends the separator on its own; attach it to the buffered line.
                if self._last_was_suppressed:
                    self._last_was_suppressed = False
                    return
                if self._awaiting_separator:
                    self._awaiting_separator = False
                    if self._last_line is not None and not self._last_line.endswith("\n"):
                        self._last_line += "\n"
                    return
                self._flush_repeat()
                self._emit(message)
                self.flush_streams()
                return
            if not message:
                return
            if self._is_suppressed(message):
                self._last_was_suppressed = True
                return
            self._last_was_suppressed = False
            self._awaiting_separator = not message.endswith("\n")

            if self._last_line is not None and message.rstrip("\n") == self._last_line.rstrip("\n"):
                self._repeat_count += 1
                return
            self._flush_repeat()
            self._last_line = message
            self._repeat_count = 1

    def flush_streams(self) -> None:
        self.original_stream.flush()
        self.log_file.flush()

    def flush(self) -> None:
        """Flush any buffered repeat and both underlying streams."""
        with self._lock:
            self._flush_repeat()
            self.flush_streams()

    def close(self) -> None:
        with self._lock:
            self._flush_repeat()
            self.flush_streams()
            self.log_file.close()

    @property
    def encoding(self) -> str:
        return getattr(self.original_stream, "encoding", "utf-8")

    def isatty(self) -> bool:
        return hasattr(self.original_stream, "isatty") and self.original_stream.isatty()

    def fileno(self) -> int:
        if hasattr(self.original_stream, "fileno"):
            return self.original_stream.fileno()
        raise OSError("TeeLogger does not have a file descriptor")
