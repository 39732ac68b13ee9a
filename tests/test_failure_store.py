"""Tests for fingerprinting and the deduplicating failure store."""

import json
import os
import tempfile
import threading
import unittest
from io import StringIO
from pathlib import Path
from unittest.mock import MagicMock, patch

from swfdiff.comparator import Verdict, VerdictKind
from swfdiff.failure_store import (
    DIFF_FILE,
    NATIVE_OUTPUT_FILE,
    ORACLE_OUTPUT_FILE,
    RECORD_FILE,
    STAGING_PREFIX,
    SWF_FILE,
    FailureRecord,
    FailureStore,
    compute_fingerprint,
)
from swfdiff.swf import Header, SwfDocument, Tag, TagCode
from swfdiff.types import ExecutionResult, ExitStatus

OUTPUT_MISMATCH = Verdict(VerdictKind.DIVERGE, Verdict.OUTPUT_MISMATCH)
CRASH_MISMATCH = Verdict(VerdictKind.DIVERGE, Verdict.CRASH_MISMATCH)


def completed(output: bytes) -> ExecutionResult:
    return ExecutionResult(ExitStatus.COMPLETED, output, duration=0.5, returncode=0)


class TestComputeFingerprint(unittest.TestCase):
    def test_same_diff_at_different_positions_collides(self):
        first = compute_fingerprint(completed(b"1\nNaN\n"), completed(b"1\n0\n"), "output-mismatch")
        second = compute_fingerprint(
            completed(b"7\n7\n7\nNaN\n"), completed(b"7\n7\n7\n0\n"), "output-mismatch"
        )
        self.assertEqual(first, second)

    def test_different_diff_differs(self):
        first = compute_fingerprint(completed(b"NaN\n"), completed(b"0\n"), "output-mismatch")
        second = compute_fingerprint(completed(b"NaN\n"), completed(b"1\n"), "output-mismatch")
        self.assertNotEqual(first, second)

    def test_reason_is_part_of_fingerprint(self):
        native, oracle = completed(b"a"), completed(b"b")
        self.assertNotEqual(
            compute_fingerprint(native, oracle, "output-mismatch"),
            compute_fingerprint(native, oracle, "crash-mismatch"),
        )

    def test_crash_signal_is_part_of_fingerprint(self):
        native = completed(b"x")
        segv = ExecutionResult(ExitStatus.CRASHED, b"x", returncode=-11)
        abrt = ExecutionResult(ExitStatus.CRASHED, b"x", returncode=-6)
        self.assertNotEqual(
            compute_fingerprint(native, segv, "crash-mismatch"),
            compute_fingerprint(native, abrt, "crash-mismatch"),
        )

    def test_exit_code_is_part_of_fingerprint(self):
        native = completed(b"x")
        exit_1 = ExecutionResult(ExitStatus.CRASHED, b"x", returncode=1, crash_detail="EXIT:1")
        exit_134 = ExecutionResult(ExitStatus.CRASHED, b"x", returncode=134, crash_detail="EXIT:134")
        self.assertNotEqual(
            compute_fingerprint(native, exit_1, "crash-mismatch"),
            compute_fingerprint(native, exit_134, "crash-mismatch"),
        )

    def test_exception_type_is_part_of_fingerprint(self):
        native = completed(b"x")
        value_error = ExecutionResult(ExitStatus.CRASHED, b"", crash_detail="ValueError: bad tag")
        other_value_error = ExecutionResult(ExitStatus.CRASHED, b"", crash_detail="ValueError: other")
        key_error = ExecutionResult(ExitStatus.CRASHED, b"", crash_detail="KeyError: 'x'")
        self.assertEqual(
            compute_fingerprint(value_error, native, "crash-mismatch"),
            compute_fingerprint(other_value_error, native, "crash-mismatch"),
        )
        self.assertNotEqual(
            compute_fingerprint(value_error, native, "crash-mismatch"),
            compute_fingerprint(key_error, native, "crash-mismatch"),
        )

    def test_raw_output_policy(self):
        first = compute_fingerprint(completed(b"a \n"), completed(b"b"), "x", policy="raw-output")
        second = compute_fingerprint(completed(b"a\n"), completed(b"b"), "x", policy="raw-output")
        self.assertNotEqual(first, second)

    def test_unknown_policy(self):
        with self.assertRaises(ValueError):
            compute_fingerprint(completed(b""), completed(b""), "x", policy="bogus")


class TestFailureStore(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp_dir.name) / "failures"
        self.health = MagicMock()
        self.store = FailureStore(self.root, health_monitor=self.health)
        self.stderr_patch = patch("sys.stderr", new_callable=StringIO)
        self.mock_stderr = self.stderr_patch.start()

    def tearDown(self):
        self.stderr_patch.stop()
        self.tmp_dir.cleanup()

    def test_new_failure_writes_complete_bundle(self):
        outcome = self.store.file(b"FWS-bytes", completed(b"NaN\n"), completed(b"0\n"), OUTPUT_MISMATCH, seed=42)

        self.assertTrue(outcome.is_new)
        self.assertEqual(outcome.duplicate_count, 1)
        directory = self.root / outcome.fingerprint
        self.assertEqual((directory / SWF_FILE).read_bytes(), b"FWS-bytes")
        self.assertEqual((directory / NATIVE_OUTPUT_FILE).read_bytes(), b"NaN\n")
        self.assertEqual((directory / ORACLE_OUTPUT_FILE).read_bytes(), b"0\n")
        diff = (directory / DIFF_FILE).read_text()
        self.assertIn("--- oracle", diff)
        self.assertIn("+NaN", diff)
        meta = json.loads((directory / RECORD_FILE).read_text())
        self.assertEqual(meta["first_seen_seed"], 42)
        self.assertEqual(meta["reason"], "output-mismatch")
        self.assertEqual(meta["native"]["status"], "COMPLETED")
        self.assertEqual(self.store.new_failures, 1)
        self.assertIn("New failure", self.mock_stderr.getvalue())

    def test_same_diff_from_two_seeds_is_one_record(self):
        first = self.store.file(b"doc-1", completed(b"1\nNaN\n"), completed(b"1\n0\n"), OUTPUT_MISMATCH, seed=1)
        second = self.store.file(b"doc-2", completed(b"2\nNaN\n"), completed(b"2\n0\n"), OUTPUT_MISMATCH, seed=2)

        self.assertEqual(first.fingerprint, second.fingerprint)
        self.assertFalse(second.is_new)
        self.assertEqual(second.duplicate_count, 2)
        self.assertEqual(self.store.known_fingerprints(), [first.fingerprint])
        record = FailureRecord.load(self.root / first.fingerprint)
        self.assertEqual(record.duplicate_count, 2)
        self.assertEqual(record.first_seen_seed, 1)
        self.assertEqual(record.swf_bytes, b"doc-1")
        self.assertEqual(self.store.duplicates, 1)

    def test_crash_mismatch_keeps_raw_document(self):
        doc = SwfDocument(Header(), (Tag(TagCode.SHOW_FRAME), Tag(TagCode.END)))
        oracle = ExecutionResult(ExitStatus.CRASHED, b"", returncode=-11)
        outcome = self.store.file(doc, completed(b"10\n"), oracle, CRASH_MISMATCH, seed=7)

        record = FailureRecord.load(outcome.path)
        self.assertEqual(record.swf_bytes, doc.to_bytes())
        self.assertEqual(record.oracle["signal"], "SIGSEGV")
        self.assertIn("CRASHED (SIGSEGV)", (outcome.path / DIFF_FILE).read_text())

    def test_concurrent_filing_creates_one_record(self):
        outcomes = []

        def worker(seed):
            outcomes.append(
                self.store.file(b"doc", completed(b"NaN"), completed(b"0"), OUTPUT_MISMATCH, seed=seed)
            )

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sum(o.is_new for o in outcomes), 1)
        self.assertEqual(max(o.duplicate_count for o in outcomes), 8)
        self.assertEqual(len(self.store.known_fingerprints()), 1)

    def test_rename_race_counts_as_duplicate(self):
        fingerprint = self.store.fingerprint(completed(b"NaN"), completed(b"0"), "output-mismatch")
        real_rename = os.rename

        def racing_rename(src, dst):
            # Another writer lands the same record first.
            other = Path(dst)
            other.mkdir()
            (other / RECORD_FILE).write_text(json.dumps({"fingerprint": fingerprint, "duplicate_count": 1}))
            (other / "marker").write_text("x")
            return real_rename(src, dst)

        with patch("swfdiff.failure_store.os.rename", side_effect=racing_rename):
            outcome = self.store.file(b"doc", completed(b"NaN"), completed(b"0"), OUTPUT_MISMATCH)

        self.assertFalse(outcome.is_new)
        self.assertEqual(outcome.duplicate_count, 2)
        self.assertEqual([p for p in self.root.iterdir() if p.name.startswith(STAGING_PREFIX)], [])

    def test_store_error_is_reported_not_raised(self):
        with patch("pathlib.Path.mkdir", side_effect=OSError("read-only file system")):
            outcome = self.store.file(b"doc", completed(b"a"), completed(b"b"), OUTPUT_MISMATCH)

        self.assertIsNone(outcome)
        self.assertIn("CRITICAL", self.mock_stderr.getvalue())
        self.health.record_store_error.assert_called_once()

    def test_new_store_instance_sees_existing_records(self):
        outcome = self.store.file(b"doc", completed(b"a"), completed(b"b"), OUTPUT_MISMATCH)
        reopened = FailureStore(self.root)

        self.assertEqual(reopened.known_fingerprints(), [outcome.fingerprint])
        again = reopened.file(b"doc", completed(b"a"), completed(b"b"), OUTPUT_MISMATCH)
        self.assertFalse(again.is_new)

    def test_staging_dirs_are_not_records(self):
        (self.root / f"{STAGING_PREFIX}abc").mkdir()
        (self.root / f"{STAGING_PREFIX}abc" / RECORD_FILE).write_text("{}")
        self.assertEqual(self.store.known_fingerprints(), [])

    def test_iter_records_skips_damaged_entries(self):
        outcome = self.store.file(b"doc", completed(b"a"), completed(b"b"), OUTPUT_MISMATCH)
        damaged = self.root / ("f" * 64)
        damaged.mkdir()
        (damaged / RECORD_FILE).write_text("{not json")

        records = list(self.store.iter_records())
        self.assertEqual([r.fingerprint for r in records], [outcome.fingerprint])
        self.assertIn("Skipping unreadable failure", self.mock_stderr.getvalue())

    def test_unknown_policy_rejected(self):
        with self.assertRaises(ValueError):
            FailureStore(self.root, fingerprint_policy="bogus")


if __name__ == "__main__":
    unittest.main()
