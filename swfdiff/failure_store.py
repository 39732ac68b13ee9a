"""
Durable, deduplicated storage of divergences.

Every divergence is reduced to a fingerprint. The first observation of a
fingerprint creates a directory under the failures root holding everything
needed to reproduce and triage it:

    <root>/<fingerprint>/
        test.swf            raw document bytes
        native_output.txt   raw captured output of the interpreter under test
        oracle_output.txt   raw captured output of the reference player
        diff.txt            unified diff of the normalized outputs
        record.json         metadata, including the observation counter

Later observations only bump the counter in record.json. Directories are
staged under a temporary name and renamed into place, so a crash mid-write
never leaves a half-written record and two writers racing on the same
fingerprint cannot both create it.
"""

from __future__ import annotations

import hashlib
import json
import os
import sys
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from swfdiff.comparator import Verdict, changed_lines, normalize_output, unified_diff
from swfdiff.swf import SwfDocument
from swfdiff.types import ExecutionResult, ExitStatus

if TYPE_CHECKING:
    from swfdiff.health import HealthMonitor

FINGERPRINT_POLICIES = ("normalized-diff", "raw-output")
RECORD_FILE = "record.json"
SWF_FILE = "test.swf"
NATIVE_OUTPUT_FILE = "native_output.txt"
ORACLE_OUTPUT_FILE = "oracle_output.txt"
DIFF_FILE = "diff.txt"
STAGING_PREFIX = ".staging-"


def _crash_class(result: ExecutionResult) -> str:
    """Stable crash category: signal name, exit code or exception type."""
    if result.status is not ExitStatus.CRASHED:
        return result.status.value
    if result.signal_name:
        return result.signal_name
    if result.returncode is not None:
        return f"EXIT:{result.returncode}"
    if result.crash_detail:
        return result.crash_detail.split(":", 1)[0]
    return "CRASHED"


def compute_fingerprint(
    native: ExecutionResult,
    oracle: ExecutionResult,
    reason: str,
    policy: str = "normalized-diff",
    noise_patterns: tuple[str, ...] = (),
) -> str:
    """
    Hash a divergence into a deduplication key.

    "normalized-diff" hashes the reason, both crash classes and the changed
    lines between the normalized outputs, so different seeds that trip the
    same bug collapse together. "raw-output" hashes both raw outputs.
    """
    hasher = hashlib.sha256()
    hasher.update(f"{reason}\0{_crash_class(native)}\0{_crash_class(oracle)}\0".encode())
    if policy == "normalized-diff":
        native_text = normalize_output(native.captured_output, noise_patterns)
        oracle_text = normalize_output(oracle.captured_output, noise_patterns)
        for line in changed_lines(native_text, oracle_text):
            hasher.update(line.encode("utf-8", errors="replace") + b"\n")
    elif policy == "raw-output":
        hasher.update(native.captured_output + b"\0" + oracle.captured_output)
    else:
        raise ValueError(f"Unknown fingerprint policy: {policy!r}")
    return hasher.hexdigest()


@dataclass
class FailureRecord:
    fingerprint: str
    first_seen_seed: int | None
    duplicate_count: int
    reason: str
    first_seen: str
    last_seen: str
    swf_bytes: bytes = field(default=b"", repr=False)
    native_output: bytes = field(default=b"", repr=False)
    oracle_output: bytes = field(default=b"", repr=False)
    native: dict[str, Any] = field(default_factory=dict)
    oracle: dict[str, Any] = field(default_factory=dict)
    path: Path | None = None

    def metadata(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "first_seen_seed": self.first_seen_seed,
            "duplicate_count": self.duplicate_count,
            "reason": self.reason,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "swf_md5": hashlib.md5(self.swf_bytes).hexdigest(),
            "swf_size": len(self.swf_bytes),
            "native": self.native,
            "oracle": self.oracle,
        }

    @classmethod
    def load(cls, directory: Path) -> "FailureRecord":
        """Read a stored record back. Raises OSError/ValueError on a damaged entry."""
        meta = json.loads((directory / RECORD_FILE).read_text(encoding="utf-8"))
        return cls(
            fingerprint=meta["fingerprint"],
            first_seen_seed=meta.get("first_seen_seed"),
            duplicate_count=meta.get("duplicate_count", 1),
            reason=meta.get("reason", ""),
            first_seen=meta.get("first_seen", ""),
            last_seen=meta.get("last_seen", ""),
            swf_bytes=(directory / SWF_FILE).read_bytes(),
            native_output=(directory / NATIVE_OUTPUT_FILE).read_bytes(),
            oracle_output=(directory / ORACLE_OUTPUT_FILE).read_bytes(),
            native=meta.get("native", {}),
            oracle=meta.get("oracle", {}),
            path=directory,
        )


@dataclass(frozen=True)
class FilingOutcome:
    fingerprint: str
    is_new: bool
    duplicate_count: int
    path: Path


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    os.replace(tmp_path, path)


class FailureStore:
    """The only state shared between lanes. All filing is serialized."""

    def __init__(
        self,
        root: Path,
        fingerprint_policy: str = "normalized-diff",
        noise_patterns: tuple[str, ...] = (),
        health_monitor: "HealthMonitor | None" = None,
    ):
        if fingerprint_policy not in FINGERPRINT_POLICIES:
            raise ValueError(f"Unknown fingerprint policy: {fingerprint_policy!r}")
        self.root = root
        self.fingerprint_policy = fingerprint_policy
        self.noise_patterns = tuple(noise_patterns)
        self.health_monitor = health_monitor
        self.new_failures = 0
        self.duplicates = 0
        self._lock = threading.Lock()
        self.root.mkdir(parents=True, exist_ok=True)

    def fingerprint(self, native: ExecutionResult, oracle: ExecutionResult, reason: str) -> str:
        return compute_fingerprint(native, oracle, reason, self.fingerprint_policy, self.noise_patterns)

    def known_fingerprints(self) -> list[str]:
        return sorted(
            p.name
            for p in self.root.iterdir()
            if not p.name.startswith(STAGING_PREFIX) and (p / RECORD_FILE).is_file()
        )

    def iter_records(self):
        """Yield every readable stored record, skipping damaged entries."""
        for fingerprint in self.known_fingerprints():
            try:
                yield FailureRecord.load(self.root / fingerprint)
            except (OSError, ValueError, KeyError) as e:
                print(f"[!] Warning: Skipping unreadable failure {fingerprint[:16]}: {e}", file=sys.stderr)

    def file(
        self,
        swf: bytes | SwfDocument,
        native: ExecutionResult,
        oracle: ExecutionResult,
        verdict: Verdict,
        seed: int | None = None,
    ) -> FilingOutcome | None:
        """
        Persist a divergence, or count another observation of a known one.

        Returns None when the store could not be written; the campaign keeps
        running in that case.
        """
        reason = verdict.reason or verdict.kind.value
        fingerprint = self.fingerprint(native, oracle, reason)
        swf_bytes = swf.to_bytes() if isinstance(swf, SwfDocument) else bytes(swf)
        now = datetime.now(timezone.utc).isoformat()

        with self._lock:
            try:
                if (self.root / fingerprint / RECORD_FILE).is_file():
                    return self._bump(fingerprint, now)
                outcome = self._create(fingerprint, swf_bytes, native, oracle, reason, seed, now)
                if outcome is None:
                    # Another process created it between the check and the rename.
                    return self._bump(fingerprint, now)
                return outcome
            except (OSError, ValueError) as e:
                print(f"  [!] CRITICAL: Could not file failure {fingerprint[:16]}: {e}", file=sys.stderr)
                if self.health_monitor:
                    self.health_monitor.record_store_error(fingerprint, str(e))
                return None

    def _create(
        self,
        fingerprint: str,
        swf_bytes: bytes,
        native: ExecutionResult,
        oracle: ExecutionResult,
        reason: str,
        seed: int | None,
        now: str,
    ) -> FilingOutcome | None:
        record = FailureRecord(
            fingerprint=fingerprint,
            first_seen_seed=seed,
            duplicate_count=1,
            reason=reason,
            first_seen=now,
            last_seen=now,
            swf_bytes=swf_bytes,
            native_output=native.captured_output,
            oracle_output=oracle.captured_output,
            native=native.to_dict(),
            oracle=oracle.to_dict(),
        )
        metadata = record.metadata()
        metadata["fingerprint_policy"] = self.fingerprint_policy

        staging = self.root / f"{STAGING_PREFIX}{fingerprint[:16]}-{uuid.uuid4().hex[:8]}"
        staging.mkdir()
        (staging / SWF_FILE).write_bytes(swf_bytes)
        (staging / NATIVE_OUTPUT_FILE).write_bytes(native.captured_output)
        (staging / ORACLE_OUTPUT_FILE).write_bytes(oracle.captured_output)
        diff = unified_diff(
            normalize_output(native.captured_output, self.noise_patterns),
            normalize_output(oracle.captured_output, self.noise_patterns),
        )
        header = f"# native: {native.describe()}\n# oracle: {oracle.describe()}\n"
        (staging / DIFF_FILE).write_text(header + "\n".join(diff) + "\n", encoding="utf-8")
        _write_json_atomic(staging / RECORD_FILE, metadata)

        final = self.root / fingerprint
        try:
            os.rename(staging, final)
        except OSError:
            if not (final / RECORD_FILE).is_file():
                raise
            for leftover in staging.iterdir():
                leftover.unlink()
            staging.rmdir()
            return None

        self.new_failures += 1
        print(f"  [+] New failure {fingerprint[:16]} saved to {final}", file=sys.stderr)
        return FilingOutcome(fingerprint, True, 1, final)

    def _bump(self, fingerprint: str, now: str) -> FilingOutcome:
        directory = self.root / fingerprint
        record_path = directory / RECORD_FILE
        metadata = json.loads(record_path.read_text(encoding="utf-8"))
        metadata["duplicate_count"] = metadata.get("duplicate_count", 1) + 1
        metadata["last_seen"] = now
        _write_json_atomic(record_path, metadata)
        self.duplicates += 1
        print(
            f"  [~] Known failure {fingerprint[:16]} seen again (×{metadata['duplicate_count']}).",
            file=sys.stderr,
        )
        return FilingOutcome(fingerprint, False, metadata["duplicate_count"], directory)
