"""
Re-run stored failures against the current native interpreter.

After a fix lands in the interpreter under test, this tool walks the
failure store, runs every stored document through the native runner again
and compares the fresh result with the oracle result recorded at filing
time. The oracle is not re-run: its behavior is fixed.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from swfdiff.comparator import VerdictKind, compare
from swfdiff.config import (
    ConfigError,
    config_from_mapping,
    load_config_file,
    merge_config_data,
)
from swfdiff.execution import NativeRunner
from swfdiff.failure_store import FailureRecord, FailureStore
from swfdiff.types import ExecutionResult, ExitStatus


def stored_oracle_result(record: FailureRecord) -> ExecutionResult:
    """Rebuild the oracle's ExecutionResult from a stored record."""
    meta = record.oracle
    return ExecutionResult(
        status=ExitStatus(meta.get("status", ExitStatus.COMPLETED.value)),
        captured_output=record.oracle_output,
        duration=meta.get("duration", 0.0),
        returncode=meta.get("returncode"),
        crash_detail=meta.get("crash_detail"),
    )


def recheck_failures(
    store: FailureStore,
    native: NativeRunner,
    timeout: float,
    noise_patterns: tuple[str, ...] = (),
) -> dict[str, list[str]]:
    """
    Re-run every stored failure.

    Returns:
        Fingerprints grouped under "still_failing", "fixed" and "inconclusive".
    """
    report: dict[str, list[str]] = {"still_failing": [], "fixed": [], "inconclusive": []}
    for record in store.iter_records():
        oracle = stored_oracle_result(record)
        fresh = native.run(record.swf_bytes, timeout)
        verdict = compare(fresh, oracle, noise_patterns)
        short = record.fingerprint[:16]
        if verdict.is_divergence:
            report["still_failing"].append(record.fingerprint)
            print(f"  [!] {short} still failing: {verdict} (native {fresh.describe()})", file=sys.stderr)
        elif verdict.kind is VerdictKind.MATCH:
            report["fixed"].append(record.fingerprint)
            print(f"  [+] {short} now matches the oracle.", file=sys.stderr)
        else:
            report["inconclusive"].append(record.fingerprint)
            print(f"  [~] {short} inconclusive: {verdict}", file=sys.stderr)
    return report


def main(argv: list[str] | None = None) -> int:
    """Re-check stored failures; exit status 1 while any still fail."""
    parser = argparse.ArgumentParser(
        description="Re-run stored swfdiff failures through the native interpreter."
    )
    parser.add_argument("--config", type=Path, default=None, help="Campaign JSON configuration file.")
    parser.add_argument("--failures-dir", type=Path, default=None, help="Failure store to re-check.")
    parser.add_argument(
        "--native-command", default=None, help="Command line; '{swf}' is replaced by the path."
    )
    parser.add_argument(
        "--native-callable", default=None, help="In-process interpreter as 'module:function'."
    )
    parser.add_argument("--timeout", type=float, default=None, help="Per-run timeout in seconds.")
    parser.add_argument("--report", type=Path, default=None, help="Write the grouped result as JSON.")
    args = parser.parse_args(argv)

    overrides: dict = {"native": {}}
    if args.failures_dir:
        overrides["failures_dir"] = str(args.failures_dir)
    if args.timeout:
        overrides["timeout"] = args.timeout
    if args.native_command:
        overrides["native"] = {"command": args.native_command, "callable": None}
    if args.native_callable:
        overrides["native"] = {"callable": args.native_callable, "command": []}

    try:
        file_data = load_config_file(args.config) if args.config else {}
        config = config_from_mapping(merge_config_data(file_data, overrides))
    except ConfigError as e:
        print(f"[!] Configuration error: {e}", file=sys.stderr)
        return 2

    if not config.failures_dir.is_dir():
        print(f"[!] Failures directory {config.failures_dir} does not exist.", file=sys.stderr)
        return 2

    try:
        native = NativeRunner(config.native, config.work_dir / "recheck")
    except (ImportError, AttributeError, ValueError) as e:
        print(f"[!] Cannot load the native interpreter: {e}", file=sys.stderr)
        return 2

    store = FailureStore(
        config.failures_dir,
        fingerprint_policy=config.comparator.fingerprint_policy,
        noise_patterns=config.comparator.noise_patterns,
    )
    print(f"[*] Re-checking failures in {config.failures_dir}...", file=sys.stderr)
    report = recheck_failures(store, native, config.timeout, config.comparator.noise_patterns)
    total = sum(len(group) for group in report.values())
    print(
        f"[*] {len(report['still_failing'])}/{total} still failing, "
        f"{len(report['fixed'])} fixed, {len(report['inconclusive'])} inconclusive.",
        file=sys.stderr,
    )
    if args.report:
        args.report.write_text(json.dumps(report, indent=2), encoding="utf-8")
    return 1 if report["still_failing"] else 0


if __name__ == "__main__":
    sys.exit(main())
