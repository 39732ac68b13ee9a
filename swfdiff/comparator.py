"""
Output normalization and verdicts.

`compare()` decides whether one document behaved the same way under the
interpreter under test and the reference player. It is a pure function:
it looks only at the two ExecutionResults and the configured noise
patterns, never at the clock or the environment.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from swfdiff.types import ExecutionResult, ExitStatus

TIMESTAMP_PLACEHOLDER = "<TIMESTAMP>"

# Flash Date.toString(), e.g. "Sun Oct 18 09:15:02 GMT+0000 2026"
_PLAYER_DATE = (
    r"\b(?:Mon|Tue|Wed|Thu|Fri|Sat|Sun) (?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)"
    r" +\d{1,2} \d{2}:\d{2}:\d{2}(?: GMT[+-]\d{4})?(?: \d{4})?"
)
_ISO_DATETIME = r"\b\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?"
_CLOCK_TIME = r"\b\d{1,2}:\d{2}:\d{2}(?:\.\d+)?\b"
TIMESTAMP_PATTERNS = (_PLAYER_DATE, _ISO_DATETIME, _CLOCK_TIME)

_WHITESPACE_RUN = re.compile(r"\s+")


class VerdictKind(str, Enum):
    MATCH = "Match"
    DIVERGE = "Diverge"
    INCONCLUSIVE = "Inconclusive"


@dataclass(frozen=True)
class Verdict:
    kind: VerdictKind
    reason: str | None = None

    INFRASTRUCTURE = "infrastructure"
    CRASH_MISMATCH = "crash-mismatch"
    BOTH_TIMED_OUT = "both-timed-out"
    TIMEOUT_MISMATCH = "timeout-mismatch"
    OUTPUT_MISMATCH = "output-mismatch"

    @property
    def is_divergence(self) -> bool:
        return self.kind is VerdictKind.DIVERGE

    def __str__(self) -> str:
        return f"{self.kind.value}{{{self.reason}}}" if self.reason else self.kind.value


MATCH = Verdict(VerdictKind.MATCH)


@lru_cache(maxsize=32)
def _compile(noise_patterns: tuple[str, ...]) -> tuple[tuple[re.Pattern, ...], tuple[re.Pattern, ...]]:
    timestamps = tuple(re.compile(p) for p in TIMESTAMP_PATTERNS)
    noise = tuple(re.compile(p) for p in noise_patterns)
    return timestamps, noise


def normalize_output(raw: bytes | str, noise_patterns: tuple[str, ...] = ()) -> str:
    """
    Reduce captured output to the part that is expected to be identical.

    Steps, in order: decode (invalid bytes are replaced), unify line endings,
    remove configured benign-noise matches, replace timestamp-shaped text with
    a placeholder, collapse whitespace runs inside each line and drop lines
    that end up empty. Line order is preserved.
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    timestamps, noise = _compile(tuple(noise_patterns))

    lines = []
    for line in text.split("\n"):
        for pattern in noise:
            line = pattern.sub("", line)
        for pattern in timestamps:
            line = pattern.sub(TIMESTAMP_PLACEHOLDER, line)
        line = _WHITESPACE_RUN.sub(" ", line).strip()
        if line:
            lines.append(line)
    return "\n".join(lines)


def compare(
    native: ExecutionResult,
    oracle: ExecutionResult,
    noise_patterns: tuple[str, ...] = (),
) -> Verdict:
    """Classify a (native, oracle) result pair. Roles are not interchangeable."""
    statuses = {native.status, oracle.status}

    if ExitStatus.LAUNCH_FAILED in statuses:
        return Verdict(VerdictKind.INCONCLUSIVE, Verdict.INFRASTRUCTURE)
    if statuses == {ExitStatus.CRASHED, ExitStatus.COMPLETED}:
        return Verdict(VerdictKind.DIVERGE, Verdict.CRASH_MISMATCH)
    if statuses == {ExitStatus.TIMED_OUT}:
        return Verdict(VerdictKind.INCONCLUSIVE, Verdict.BOTH_TIMED_OUT)
    if ExitStatus.TIMED_OUT in statuses:
        return Verdict(VerdictKind.INCONCLUSIVE, Verdict.TIMEOUT_MISMATCH)

    # Both completed, or both crashed.
    native_text = normalize_output(native.captured_output, noise_patterns)
    oracle_text = normalize_output(oracle.captured_output, noise_patterns)
    if native_text == oracle_text:
        return MATCH
    return Verdict(VerdictKind.DIVERGE, Verdict.OUTPUT_MISMATCH)


def unified_diff(native_text: str, oracle_text: str) -> list[str]:
    """Human-readable diff of two normalized outputs (oracle is the expected side)."""
    return list(
        difflib.unified_diff(
            oracle_text.splitlines(),
            native_text.splitlines(),
            fromfile="oracle",
            tofile="native",
            lineterm="",
        )
    )


def changed_lines(native_text: str, oracle_text: str) -> list[str]:
    """
    Only the added/removed lines of the diff, without hunk positions.

    Two divergences caused by the same bug usually differ in where the
    affected lines sit, so positions are left out.
    """
    diff = list(difflib.unified_diff(oracle_text.splitlines(), native_text.splitlines(), n=0, lineterm=""))
    # diff[:2] are the ---/+++ file headers.
    return [line for line in diff[2:] if not line.startswith("@@")]
