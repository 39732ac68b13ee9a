"""
The swfdiff campaign driver.

This module runs the generate -> execute -> compare -> file cycle on a fixed
pool of worker lanes. Each lane owns its display, its scratch directory and
its pair of runners; the failure store and the set of already-attempted
documents are the only things lanes share.

A stop request (SIGINT/SIGTERM, budget reached, `--single`) lets every lane
finish the cycle it is in, so a divergence that has been observed is always
filed before the process exits.
"""

from __future__ import annotations

import hashlib
import json
import os
import platform
import random
import signal
import socket
import sys
import threading
import time
import traceback
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from textwrap import dedent
from typing import Any, Protocol

import psutil

from swfdiff.comparator import Verdict, VerdictKind, compare
from swfdiff.config import CampaignConfig, ConfigError, config_from_args
from swfdiff.display import ExistingDisplay, VirtualDisplay
from swfdiff.execution import NativeCallable, NativeRunner, OracleRunner, load_callable
from swfdiff.failure_store import FailureStore
from swfdiff.generator import GenerationExhausted, generate
from swfdiff.health import HealthMonitor
from swfdiff.metadata import generate_run_metadata
from swfdiff.shim import resolve_shim
from swfdiff.swf import SwfDocument
from swfdiff.types import ExecutionResult, ExitStatus, InfrastructureError
from swfdiff.utils import RUN_STATS_FILE, TeeLogger, lane_cpus, load_run_stats, save_run_stats

UNIQUENESS_WARNING_SECONDS = 10.0
UNIQUENESS_GIVE_UP_SECONDS = 30.0


class Runner(Protocol):
    def run(self, swf: bytes | SwfDocument, timeout: float) -> ExecutionResult: ...


RunnerFactory = Callable[["Lane"], "tuple[Runner, Runner]"]


class LaneState(str, Enum):
    IDLE = "IDLE"
    GENERATING = "GENERATING"
    EXECUTING = "EXECUTING"
    COMPARING = "COMPARING"
    FILING = "FILING"
    HALTED = "HALTED"
    STOPPED = "STOPPED"


class CorpusExhausted(Exception):
    """The generator keeps producing documents that were already attempted."""


def derive_cycle_seed(base_seed: int, lane: int, counter: int) -> int:
    """Deterministic, collision-resistant seed for one generation attempt."""
    digest = hashlib.sha256(f"{base_seed}:{lane}:{counter}".encode()).digest()
    return int.from_bytes(digest[:8], "big")


class AttemptedDocuments:
    """MD5 digests of every document handed to the runners in this campaign."""

    def __init__(self) -> None:
        self._digests: set[str] = set()
        self._lock = threading.Lock()

    def add(self, data: bytes) -> bool:
        """Record a document; False if it had been attempted before."""
        digest = hashlib.md5(data).hexdigest()
        with self._lock:
            if digest in self._digests:
                return False
            self._digests.add(digest)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._digests)


class Lane:
    """One worker lane: a thread running cycles until told to stop."""

    def __init__(self, index: int, driver: "CampaignDriver"):
        self.index = index
        self.driver = driver
        self.config = driver.config
        self.tag = f"[lane {index}] "
        self.state = LaneState.IDLE
        self.work_dir = self.config.work_dir / f"lane_{index}"
        self.display: VirtualDisplay | ExistingDisplay | None = None
        self.native: Runner | None = None
        self.oracle: Runner | None = None
        self.cycles_completed = 0
        self.error: str | None = None
        self.cpus: list[int] | None = None
        self._attempt_counter = 0
        self.thread = threading.Thread(target=self.run, name=f"swfdiff-lane-{index}", daemon=True)

    def log(self, message: str) -> None:
        print(f"{self.tag}{message}", file=sys.stderr)

    def setup(self) -> None:
        """Start the lane's display and build its runners. Raises InfrastructureError."""
        if self.config.pin_lanes:
            self.cpus = lane_cpus(self.index)
            self.log(f"[*] Pinning interpreter processes to CPU {self.cpus[0]}.")
        if self.driver.runner_factory is not None:
            self.native, self.oracle = self.driver.runner_factory(self)
            return
        display_cfg = self.config.display
        if display_cfg.virtual:
            self.display = VirtualDisplay(
                display_cfg.base_display + self.index,
                command=display_cfg.command,
                startup_timeout=display_cfg.startup_timeout,
            )
        else:
            self.display = ExistingDisplay()
        self.display.start()
        oracle_cfg = self.config.oracle
        shim_path = resolve_shim(
            oracle_cfg.shim_path,
            self.config.work_dir / "shim",
            oracle_cfg.shim_compiler,
            oracle_cfg.shim_flags,
        )
        self.oracle = OracleRunner(
            oracle_cfg,
            shim_path,
            self.display,
            self.work_dir / "oracle",
            health_monitor=self.driver.health_monitor,
            lane_tag=self.tag,
            cpus=self.cpus,
        )
        self.native = NativeRunner(
            self.config.native,
            self.work_dir / "native",
            interpreter=self.driver.native_interpreter,
            lane_tag=self.tag,
            cpus=self.cpus,
        )

    def teardown(self) -> None:
        if self.display is not None:
            self.display.stop()

    def run(self) -> None:
        try:
            self.setup()
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"lane{self.index}") as pool:
                while self.driver.claim_cycle():
                    try:
                        self.run_cycle(pool)
                    except (CorpusExhausted, InfrastructureError):
                        raise
                    except Exception as e:
                        self.cycle_failed(e)
                        continue
                    self.cycles_completed += 1
            self.state = LaneState.STOPPED
        except CorpusExhausted as e:
            self.log(f"[!] {e}; stopping lane.")
            self.state = LaneState.STOPPED
        except InfrastructureError as e:
            self.halt(e)
        except Exception as e:
            self.log(f"[!!!] Unexpected error: {e}")
            traceback.print_exc(file=sys.stderr)
            self.halt(e)
        finally:
            try:
                self.teardown()
            finally:
                self.driver.lane_finished(self)

    def cycle_failed(self, error: Exception) -> None:
        """Log an error raised inside one cycle; the lane moves on to the next."""
        detail = f"{type(error).__name__}: {error}"
        self.log(f"[!!!] Cycle failed with an unexpected error: {detail}")
        traceback.print_exc(file=sys.stderr)
        self.state = LaneState.IDLE
        self.driver.bump("cycle_errors")
        self.driver.health_monitor.record_cycle_error(self.index, detail)

    def halt(self, error: Exception) -> None:
        self.error = f"{type(error).__name__}: {error}"
        self.state = LaneState.HALTED
        self.log(f"[!] Lane halted: {self.error}")
        self.driver.health_monitor.record_lane_halted(self.index, self.error)

    def next_document(self) -> tuple[int, bytes] | None:
        """
        Generate a document that no lane has attempted yet.

        Returns None when generation for a seed is exhausted; that cycle is
        skipped. Raises CorpusExhausted when no fresh document shows up for
        UNIQUENESS_GIVE_UP_SECONDS.
        """
        started = time.monotonic()
        warned = False
        while True:
            seed = derive_cycle_seed(self.driver.base_seed, self.index, self._attempt_counter)
            self._attempt_counter += 1
            try:
                document = generate(seed, self.config.generator)
            except GenerationExhausted as e:
                self.log(
                    f"[~] Generation exhausted for seed {seed} after {e.attempts} attempts: "
                    f"{e.last_error}"
                )
                self.driver.bump("generation_exhausted")
                self.driver.health_monitor.record_generation_exhausted(
                    self.index, seed, e.attempts, str(e.last_error)
                )
                return None
            data = document.to_bytes()
            if self.driver.attempted.add(data):
                self.log(f"[GEN] seed={seed} size={len(data)} tags={len(document.tags)}")
                return seed, data

            elapsed = time.monotonic() - started
            self.log("[~] Duplicate document, regenerating.")
            if elapsed >= UNIQUENESS_GIVE_UP_SECONDS:
                raise CorpusExhausted(f"No unique document generated in {elapsed:.0f}s")
            if elapsed >= UNIQUENESS_WARNING_SECONDS and not warned:
                warned = True
                self.log(f"[!] Warning: no unique document for {elapsed:.0f}s.")
                self.driver.health_monitor.record_uniqueness_stall(self.index, elapsed)

    def run_cycle(self, pool: ThreadPoolExecutor) -> None:
        self.state = LaneState.GENERATING
        generated = self.next_document()
        if generated is None:
            self.state = LaneState.IDLE
            return
        seed, data = generated

        self.state = LaneState.EXECUTING
        timeout = self.config.timeout
        native_future = pool.submit(self.native.run, data, timeout)
        oracle_future = pool.submit(self.oracle.run, data, timeout)
        native_result = native_future.result()
        oracle_result = oracle_future.result()

        self.state = LaneState.COMPARING
        verdict = compare(native_result, oracle_result, self.config.comparator.noise_patterns)
        self.driver.record_results(self.index, native_result, oracle_result, verdict)

        if verdict.is_divergence:
            self.state = LaneState.FILING
            self.log(
                f"[!!!] DIVERGENCE {verdict} for seed {seed}: "
                f"native {native_result.describe()}, oracle {oracle_result.describe()}"
            )
            outcome = self.driver.failure_store.file(data, native_result, oracle_result, verdict, seed)
            if outcome is not None:
                self.driver.bump("new_failures" if outcome.is_new else "duplicate_failures")
        elif verdict.kind is VerdictKind.MATCH:
            self.log(f"[~] Match for seed {seed}.")
        else:
            self.log(
                f"[~] {verdict} for seed {seed}: "
                f"native {native_result.describe()}, oracle {oracle_result.describe()}"
            )
        self.state = LaneState.IDLE


class CampaignDriver:
    """Owns the lanes, the shared state and the stop signal."""

    def __init__(
        self,
        config: CampaignConfig,
        failure_store: FailureStore,
        health_monitor: HealthMonitor,
        run_stats: dict[str, Any] | None = None,
        stats_path: Path | None = None,
        timeseries_path: Path | None = None,
        runner_factory: RunnerFactory | None = None,
        native_interpreter: NativeCallable | None = None,
    ):
        self.config = config
        self.failure_store = failure_store
        self.health_monitor = health_monitor
        self.run_stats = run_stats if run_stats is not None else load_run_stats(stats_path or RUN_STATS_FILE)
        self.stats_path = stats_path or RUN_STATS_FILE
        self.timeseries_path = timeseries_path
        self.runner_factory = runner_factory
        self.native_interpreter = native_interpreter
        if self.native_interpreter is None and runner_factory is None and config.native.callable:
            try:
                self.native_interpreter = load_callable(config.native.callable)
            except (ImportError, AttributeError, ValueError) as e:
                raise ConfigError(f"Option 'native.callable' cannot be loaded: {e}") from e

        self.base_seed = config.seed if config.seed is not None else random.SystemRandom().getrandbits(63)
        self.budget = 1 if config.single else config.budget
        self.attempted = AttemptedDocuments()
        self.stop_event = threading.Event()
        self.lanes: list[Lane] = []
        self.cycles_started = 0
        self.cycles_this_run = 0
        self._cycle_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._lanes_done = threading.Event()
        self._active_lanes = 0
        self.start_time = time.monotonic()

    # --- Shared state, called from lanes ---

    def claim_cycle(self) -> bool:
        """Reserve the next cycle; False once stopped or the budget is spent."""
        with self._cycle_lock:
            if self.stop_event.is_set():
                return False
            if self.budget is not None and self.cycles_started >= self.budget:
                self.stop_event.set()
                return False
            self.cycles_started += 1
            return True

    def bump(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self.run_stats[key] = self.run_stats.get(key, 0) + amount

    def record_results(
        self, lane: int, native: ExecutionResult, oracle: ExecutionResult, verdict: Verdict
    ) -> None:
        with self._stats_lock:
            stats = self.run_stats
            stats["total_cycles"] = stats.get("total_cycles", 0) + 1
            self.cycles_this_run += 1
            key = {
                VerdictKind.MATCH: "matches",
                VerdictKind.DIVERGE: "divergences_found",
            }.get(verdict.kind, "inconclusive")
            stats[key] = stats.get(key, 0) + 1
            if native.status is ExitStatus.CRASHED:
                stats["native_crashes"] = stats.get("native_crashes", 0) + 1
            if oracle.status is ExitStatus.CRASHED:
                stats["oracle_crashes"] = stats.get("oracle_crashes", 0) + 1
            for result in (native, oracle):
                if result.status is ExitStatus.TIMED_OUT:
                    stats["timeouts"] = stats.get("timeouts", 0) + 1
                if result.status is ExitStatus.LAUNCH_FAILED:
                    stats["launch_failures"] = stats.get("launch_failures", 0) + 1
            if oracle.status in (ExitStatus.COMPLETED, ExitStatus.CRASHED) and not oracle.captured_output:
                stats["interception_misses"] = stats.get("interception_misses", 0) + 1

        sides = (("native", native), ("oracle", oracle))
        for side, result in sides:
            if result.status is ExitStatus.LAUNCH_FAILED:
                self.health_monitor.record_launch_failure(lane, side, result.crash_detail)
        timed_out = [side for side, r in sides if r.status is ExitStatus.TIMED_OUT]
        if timed_out:
            self.health_monitor.record_timeout(lane, "+".join(timed_out))
        else:
            self.health_monitor.reset_timeout_streak(lane)

    def lane_finished(self, lane: Lane) -> None:
        with self._cycle_lock:
            self._active_lanes -= 1
            if self._active_lanes <= 0:
                self._lanes_done.set()

    # --- Control ---

    def stop(self) -> None:
        """Ask lanes to stop after their current cycle."""
        if not self.stop_event.is_set():
            print("[!] Stop requested; letting in-flight cycles finish.", file=sys.stderr)
        self.stop_event.set()

    def throughput(self) -> float:
        elapsed = time.monotonic() - self.start_time
        return self.cycles_this_run / elapsed if elapsed > 0 else 0.0

    def report_progress(self) -> None:
        with self._stats_lock:
            self.run_stats["last_update_time"] = datetime.now(timezone.utc).isoformat()
            snapshot = dict(self.run_stats)
        states = ", ".join(f"{lane.index}:{lane.state.value}" for lane in self.lanes)
        print(
            f"[*] Cycles = {self.cycles_this_run}, cycles/s = {self.throughput():.2f}, "
            f"new failures = {self.failure_store.new_failures}, "
            f"duplicates = {self.failure_store.duplicates}, lanes = [{states}]",
            file=sys.stderr,
        )
        save_run_stats(snapshot, self.stats_path)
        self.log_timeseries_datapoint(snapshot)

    def log_timeseries_datapoint(self, snapshot: dict[str, Any]) -> None:
        """Append a snapshot of the current run statistics to the time-series log."""
        if self.timeseries_path is None:
            return
        datapoint = dict(snapshot)
        datapoint["timestamp"] = datetime.now(timezone.utc).isoformat()
        datapoint["cycles_per_second"] = round(self.throughput(), 3)
        try:
            datapoint["system_load_1min"] = psutil.getloadavg()[0]
        except (OSError, AttributeError):
            datapoint["system_load_1min"] = None
        datapoint["process_rss_mb"] = round(psutil.Process().memory_info().rss / (1024 * 1024), 2)
        try:
            datapoint["disk_usage_percent"] = psutil.disk_usage(str(self.config.failures_dir)).percent
        except OSError:
            datapoint["disk_usage_percent"] = None
        try:
            with open(self.timeseries_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(datapoint) + "\n")
        except OSError as e:
            print(f"[!] Warning: Could not write to time-series log file: {e}", file=sys.stderr)

    def _reporter(self) -> None:
        while not self._lanes_done.wait(self.config.stats_interval):
            self.report_progress()

    def run(self) -> str:
        """
        Run lanes until every one of them has stopped or halted.

        Returns:
            A short termination reason for the run summary.
        """
        self.config.work_dir.mkdir(parents=True, exist_ok=True)
        self.lanes = [Lane(i, self) for i in range(self.config.lanes)]
        self._active_lanes = len(self.lanes)
        self._lanes_done.clear()
        self.start_time = time.monotonic()
        print(f"[*] Starting {len(self.lanes)} lane(s) with base seed {self.base_seed}.", file=sys.stderr)

        reporter = threading.Thread(target=self._reporter, name="swfdiff-stats", daemon=True)
        for lane in self.lanes:
            lane.thread.start()
        reporter.start()
        for lane in self.lanes:
            lane.thread.join()
        self._lanes_done.set()
        reporter.join()
        self.report_progress()

        if all(lane.state is LaneState.HALTED for lane in self.lanes):
            return "All lanes halted"
        if self.budget is not None and self.cycles_started >= self.budget:
            return "Budget exhausted"
        if self.stop_event.is_set():
            return "Stop requested"
        return "Corpus exhausted"


def main(argv: list[str] | None = None) -> None:
    """Parse command-line arguments and run a swfdiff campaign."""
    try:
        config = config_from_args(argv)
    except ConfigError as e:
        print(f"[!] Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    logs_dir = config.logs_dir
    logs_dir.mkdir(parents=True, exist_ok=True)
    run_start_time = datetime.now()
    timestamp_iso = run_start_time.isoformat()
    safe_timestamp = timestamp_iso.replace(":", "-").replace("+", "Z")
    run_log_path = logs_dir / f"swfdiff_run_{safe_timestamp}.log"
    stats_path = logs_dir / RUN_STATS_FILE.name

    original_stdout = sys.stdout
    original_stderr = sys.stderr

    # This initial print goes only to the console
    print(f"[+] Starting swfdiff campaign. Full log will be at: {run_log_path}")

    tee_logger = TeeLogger(run_log_path, original_stdout, verbose=config.verbose)
    sys.stdout = tee_logger
    sys.stderr = tee_logger

    termination_reason = "Completed"
    start_stats = load_run_stats(stats_path)
    driver: CampaignDriver | None = None
    previous_handlers: dict[int, Any] = {}

    try:
        header = f"""
================================================================================
SWFDIFF CAMPAIGN RUN
================================================================================
- Hostname:          {socket.gethostname()}
- Platform:          {platform.platform()}
- Process ID:        {os.getpid()}
- Python Version:    {sys.version.replace(chr(10), " ")}
- Working Dir:       {Path.cwd()}
- Log File:          {run_log_path}
- Start Time:        {timestamp_iso}
- Command:           {" ".join(sys.argv)}
- Lanes:             {config.lanes}
- Run Timeout:       {config.timeout} seconds
- Budget:            {config.budget if config.budget is not None else "unbounded"}
- Oracle:            {config.oracle.binary}
- Native:            {" ".join(config.native.command) or config.native.callable}
- Failures Dir:      {config.failures_dir}
--------------------------------------------------------------------------------
Initial Stats:
{json.dumps(start_stats, indent=4)}
================================================================================

"""
        print(dedent(header))

        generate_run_metadata(logs_dir, config)
        health_monitor = HealthMonitor(logs_dir / "health_events.jsonl")
        failure_store = FailureStore(
            config.failures_dir,
            fingerprint_policy=config.comparator.fingerprint_policy,
            noise_patterns=config.comparator.noise_patterns,
            health_monitor=health_monitor,
        )
        driver = CampaignDriver(
            config,
            failure_store,
            health_monitor,
            run_stats=dict(start_stats),
            stats_path=stats_path,
            timeseries_path=logs_dir / "timeseries.jsonl",
        )
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous_handlers[signum] = signal.signal(signum, lambda *_: driver.stop())
        termination_reason = driver.run()
    except KeyboardInterrupt:
        print("\n[!] Campaign stopped by user.")
        termination_reason = "KeyboardInterrupt"
    except Exception as e:
        termination_reason = f"Error: {e}"
        # Use original stderr for the final error message so it's always visible.
        print(f"\n[!!!] An unexpected error occurred in the campaign driver: {e}", file=original_stderr)
        traceback.print_exc(file=original_stderr)
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

        print("\n" + "=" * 80)
        print("CAMPAIGN RUN SUMMARY")
        print("=" * 80)

        end_time = datetime.now()
        duration = end_time - run_start_time
        end_stats = load_run_stats(stats_path)
        cycles_this_run = end_stats.get("total_cycles", 0) - start_stats.get("total_cycles", 0)
        new_this_run = end_stats.get("new_failures", 0) - start_stats.get("new_failures", 0)
        dups_this_run = end_stats.get("duplicate_failures", 0) - start_stats.get("duplicate_failures", 0)
        duration_secs = duration.total_seconds()
        cycles_per_sec = cycles_this_run / duration_secs if duration_secs > 0 else 0
        halted = [lane for lane in driver.lanes if lane.state is LaneState.HALTED] if driver else []

        summary = f"""
- Termination:       {termination_reason}
- End Time:          {end_time.isoformat()}
- Total Duration:    {str(duration)}
- Halted Lanes:      {", ".join(f"{lane.index} ({lane.error})" for lane in halted) or "none"}

--- Discoveries This Run ---
- New Failures:      {new_this_run}
- Duplicate Hits:    {dups_this_run}

--- Performance This Run ---
- Total Cycles:      {cycles_this_run}
- Cycles per Second: {cycles_per_sec:.2f}

--- Final Campaign Stats ---
{json.dumps(end_stats, indent=4)}
================================================================================
"""
        print(dedent(summary))

        tee_logger.close()
        sys.stdout = original_stdout
        sys.stderr = original_stderr
        print(f"[+] Campaign finished. Full log saved to: {run_log_path}")


if __name__ == "__main__":
    main()
