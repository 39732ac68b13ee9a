"""
Tests for the utils module (swfdiff/utils.py).

This module tests run stats loading/saving, TeeLogger and process-tree
cleanup.
"""

import json
import tempfile
import unittest
from io import StringIO
from pathlib import Path
from unittest.mock import MagicMock, patch

import psutil

from swfdiff.utils import (
    TeeLogger,
    _default_run_stats,
    kill_process_tree,
    lane_cpus,
    load_run_stats,
    pin_process,
    save_run_stats,
)


class TestLoadRunStats(unittest.TestCase):
    """Tests for load_run_stats function."""

    def test_returns_default_when_file_not_exists(self):
        """Test that default structure is returned when file doesn't exist."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            stats = load_run_stats(Path(tmp_dir) / "missing.json")

        self.assertIn("start_time", stats)
        self.assertEqual(stats["total_cycles"], 0)
        self.assertEqual(stats["new_failures"], 0)

    def test_loads_existing_stats(self):
        existing_stats = {"start_time": "2025-01-01T00:00:00", "total_cycles": 42, "matches": 40}
        with tempfile.TemporaryDirectory() as tmp_dir:
            stats_file = Path(tmp_dir) / "stats.json"
            stats_file.write_text(json.dumps(existing_stats))
            stats = load_run_stats(stats_file)

        self.assertEqual(stats["total_cycles"], 42)
        self.assertEqual(stats["matches"], 40)
        self.assertEqual(stats["start_time"], "2025-01-01T00:00:00")

    def test_adds_missing_fields_to_old_stats(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            stats_file = Path(tmp_dir) / "stats.json"
            stats_file.write_text(json.dumps({"total_cycles": 3}))
            stats = load_run_stats(stats_file)

        self.assertEqual(stats["total_cycles"], 3)
        self.assertEqual(stats["interception_misses"], 0)
        self.assertEqual(stats["duplicate_failures"], 0)

    def test_corrupted_file_prints_warning(self):
        """Test that a corrupted file prints a warning and starts fresh."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            stats_file = Path(tmp_dir) / "stats.json"
            stats_file.write_text("{bad json}")
            with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
                stats = load_run_stats(stats_file)

        self.assertEqual(stats["total_cycles"], 0)
        self.assertIn("Starting fresh", mock_stderr.getvalue())


class TestDefaultRunStats(unittest.TestCase):
    def test_has_all_expected_fields(self):
        defaults = _default_run_stats()
        expected_keys = {
            "start_time",
            "last_update_time",
            "total_cycles",
            "matches",
            "divergences_found",
            "new_failures",
            "duplicate_failures",
            "inconclusive",
            "generation_exhausted",
            "oracle_crashes",
            "native_crashes",
            "timeouts",
            "interception_misses",
            "launch_failures",
            "cycle_errors",
        }
        self.assertEqual(set(defaults.keys()), expected_keys)


class TestSaveRunStats(unittest.TestCase):
    """Tests for save_run_stats function."""

    def test_saves_sorted_json_and_leaves_no_tmp_file(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            stats_file = Path(tmp_dir) / "stats.json"
            save_run_stats({"z_field": 1, "a_field": 2}, stats_file)

            content = stats_file.read_text()
            self.assertLess(content.index("a_field"), content.index("z_field"))
            self.assertEqual(json.loads(content)["z_field"], 1)
            self.assertEqual(list(Path(tmp_dir).glob("*.tmp")), [])

    def test_save_handles_write_error(self):
        """Test that OSError during save is caught and warned."""
        with patch("builtins.open", side_effect=OSError("disk full")):
            with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
                save_run_stats({"total_cycles": 1}, Path("/nonexistent/stats.json"))

        self.assertIn("Warning", mock_stderr.getvalue())
        self.assertIn("disk full", mock_stderr.getvalue())


class TestTeeLogger(unittest.TestCase):
    """Tests for TeeLogger class."""

    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.log_path = Path(self.tmp_dir.name) / "run.log"
        self.stream = StringIO()

    def tearDown(self):
        self.tmp_dir.cleanup()

    def _print(self, logger, text):
        # Mimic print(): the text, then a separate newline write.
        logger.write(text)
        logger.write("\n")

    def test_writes_to_both_streams(self):
        logger = TeeLogger(self.log_path, self.stream)
        self._print(logger, "Hello, World!")
        logger.close()

        self.assertEqual(self.stream.getvalue(), "Hello, World!\n")
        self.assertEqual(self.log_path.read_text(), "Hello, World!\n")

    def test_previous_line_is_emitted_when_a_new_one_arrives(self):
        logger = TeeLogger(self.log_path, self.stream)
        self._print(logger, "first")
        self._print(logger, "second")

        self.assertEqual(self.stream.getvalue(), "first\n")
        logger.close()
        self.assertEqual(self.stream.getvalue(), "first\nsecond\n")

    def test_collapses_repeated_lines(self):
        logger = TeeLogger(self.log_path, self.stream)
        for _ in range(3):
            self._print(logger, "[~] Duplicate document, regenerating.")
        self._print(logger, "done")
        logger.close()

        self.assertEqual(
            self.stream.getvalue(),
            "[~] Duplicate document, regenerating. (×3)\ndone\n",
        )

    def test_quiet_mode_suppresses_cycle_boilerplate(self):
        logger = TeeLogger(self.log_path, self.stream, verbose=False)
        self._print(logger, "[lane 0] [GEN] seed=1 size=100 tags=5")
        self._print(logger, "[lane 0] [~] Match for seed 1.")
        self._print(logger, "[lane 0] [!!!] DIVERGENCE Diverge{output-mismatch}")
        logger.close()

        output = self.stream.getvalue()
        self.assertNotIn("[GEN]", output)
        self.assertNotIn("Match", output)
        self.assertEqual(output, "[lane 0] [!!!] DIVERGENCE Diverge{output-mismatch}\n")

    def test_close_closes_log_file(self):
        logger = TeeLogger(self.log_path, self.stream)
        logger.close()
        self.assertTrue(logger.log_file.closed)

    def test_flush_emits_pending_line(self):
        original_stream = MagicMock()
        logger = TeeLogger(self.log_path, original_stream)
        logger.write("pending\n")
        logger.flush()

        original_stream.write.assert_called_with("pending\n")
        original_stream.flush.assert_called()
        logger.close()

    def test_encoding_defaults_to_utf8(self):
        logger = TeeLogger(self.log_path, MagicMock(spec=[]))
        self.assertEqual(logger.encoding, "utf-8")
        logger.log_file.close()

    def test_fileno_raises_for_stringio(self):
        logger = TeeLogger(self.log_path, self.stream)
        with self.assertRaises(OSError):
            logger.fileno()
        logger.close()


class TestKillProcessTree(unittest.TestCase):
    def test_kills_children_and_parent(self):
        child = MagicMock()
        parent = MagicMock()
        parent.children.return_value = [child]
        with patch("swfdiff.utils.psutil.Process", return_value=parent), patch(
            "swfdiff.utils.psutil.wait_procs"
        ) as mock_wait:
            kill_process_tree(1234)

        child.kill.assert_called_once()
        parent.kill.assert_called_once()
        mock_wait.assert_called_once_with([child, parent], timeout=3.0)

    def test_missing_process_is_ignored(self):
        with patch("swfdiff.utils.psutil.Process", side_effect=psutil.NoSuchProcess(1234)):
            kill_process_tree(1234)

    def test_child_exiting_during_kill_is_ignored(self):
        child = MagicMock()
        child.kill.side_effect = psutil.NoSuchProcess(99)
        parent = MagicMock()
        parent.children.return_value = [child]
        with patch("swfdiff.utils.psutil.Process", return_value=parent), patch(
            "swfdiff.utils.psutil.wait_procs"
        ):
            kill_process_tree(1234)
        parent.kill.assert_called_once()


class TestCpuPinning(unittest.TestCase):
    def test_lane_cpus_round_robin_over_usable_cores(self):
        process = MagicMock()
        process.cpu_affinity.return_value = [3, 2]
        with patch("swfdiff.utils.psutil.Process", return_value=process):
            self.assertEqual(lane_cpus(0), [2])
            self.assertEqual(lane_cpus(1), [3])
            self.assertEqual(lane_cpus(2), [2])

    def test_lane_cpus_without_affinity_support(self):
        process = MagicMock()
        process.cpu_affinity.side_effect = AttributeError("cpu_affinity")
        with patch("swfdiff.utils.psutil.Process", return_value=process), patch(
            "swfdiff.utils.psutil.cpu_count", return_value=4
        ):
            self.assertEqual(lane_cpus(5), [1])

    def test_pin_process(self):
        process = MagicMock()
        with patch("swfdiff.utils.psutil.Process", return_value=process) as mock_process:
            self.assertTrue(pin_process(4321, [1]))

        mock_process.assert_called_once_with(4321)
        process.cpu_affinity.assert_called_once_with([1])

    def test_pin_process_failure_is_reported(self):
        with patch("swfdiff.utils.psutil.Process", side_effect=psutil.NoSuchProcess(4321)):
            self.assertFalse(pin_process(4321, [0]))
        process = MagicMock()
        process.cpu_affinity.side_effect = psutil.AccessDenied(4321)
        with patch("swfdiff.utils.psutil.Process", return_value=process):
            self.assertFalse(pin_process(4321, [0]))


if __name__ == "__main__":
    unittest.main()
