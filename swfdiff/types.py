"""Shared type definitions for swfdiff.

This module holds the types that flow between the runners, the comparator,
the failure store and the campaign driver. Keeping them here avoids circular
imports between those modules.

ExecutionResult is a frozen dataclass: it is produced once per
(interpreter, document) pair and never mutated afterwards.
"""

from __future__ import annotations

import signal
from dataclasses import dataclass
from enum import Enum


class InfrastructureError(Exception):
    """An environment failure (display, shim, runtime) that halts a lane."""


class ExitStatus(str, Enum):
    COMPLETED = "COMPLETED"
    TIMED_OUT = "TIMED_OUT"
    CRASHED = "CRASHED"
    LAUNCH_FAILED = "LAUNCH_FAILED"


@dataclass(frozen=True)
class ExecutionResult:
    """The observable outcome of running one document through one interpreter."""

    status: ExitStatus
    captured_output: bytes = b""
    duration: float = 0.0
    returncode: int | None = None
    crash_detail: str | None = None

    @property
    def output_text(self) -> str:
        return self.captured_output.decode("utf-8", errors="replace")

    @property
    def signal_name(self) -> str | None:
        """Name of the terminating signal for signal-killed processes."""
        if self.returncode is None or self.returncode >= 0:
            return None
        try:
            return signal.Signals(-self.returncode).name
        except ValueError:
            return f"SIG{-self.returncode}"

    def describe(self) -> str:
        """Short human-readable status, e.g. 'CRASHED (SIGSEGV)'."""
        if self.status is ExitStatus.CRASHED:
            detail = self.crash_detail or self.signal_name
            if detail is None and self.returncode is not None:
                detail = f"EXIT:{self.returncode}"
            return f"{self.status.value} ({detail})" if detail else self.status.value
        if self.status is ExitStatus.LAUNCH_FAILED and self.crash_detail:
            return f"{self.status.value} ({self.crash_detail})"
        return self.status.value

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "returncode": self.returncode,
            "signal": self.signal_name,
            "crash_detail": self.crash_detail,
            "duration": round(self.duration, 4),
            "output_bytes": len(self.captured_output),
        }
