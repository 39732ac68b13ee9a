"""
Interpreter execution for swfdiff.

This module provides the two runners that share one outward contract,
`run(swf, timeout) -> ExecutionResult`:
- OracleRunner: the closed reference player, launched as a subprocess under
  the interception shim on a lane-local virtual display
- NativeRunner: the interpreter under test, either as a subprocess or as an
  in-process callable behind a thread fault boundary

Both runners watch the output for the completion sentinel: once it appears
the interpreter is considered done and is terminated, since players often
keep running after the movie finishes.
"""

from __future__ import annotations

import importlib
import os
import subprocess
import sys
import tempfile
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from swfdiff.generator import CASE_COMPLETE_MARKER
from swfdiff.shim import shim_environment
from swfdiff.swf import SwfDocument
from swfdiff.types import ExecutionResult, ExitStatus
from swfdiff.utils import kill_process_tree, pin_process

if TYPE_CHECKING:
    from swfdiff.config import NativeConfig, OracleConfig
    from swfdiff.display import ExistingDisplay, VirtualDisplay
    from swfdiff.health import HealthMonitor

POLL_INTERVAL = 0.05
READ_CHUNK_SIZE = 4096
READER_JOIN_TIMEOUT = 2.0
MM_CFG_CONTENT = "ErrorReportingEnable=1\nTraceOutputFileEnable=1\nMaxWarnings=0\n"

NativeCallable = Callable[[bytes, float], "str | bytes"]


def _as_bytes(swf: bytes | SwfDocument) -> bytes:
    return swf.to_bytes() if isinstance(swf, SwfDocument) else bytes(swf)


class _OutputCollector(threading.Thread):
    """Drains a pipe into a buffer and flags when the sentinel shows up."""

    def __init__(self, fd: int, sentinel: bytes | None):
        super().__init__(daemon=True)
        self.fd = fd
        self.sentinel = sentinel
        self.buffer = bytearray()
        self.sentinel_seen = threading.Event()
        self._lock = threading.Lock()

    def run(self) -> None:
        while True:
            try:
                chunk = os.read(self.fd, READ_CHUNK_SIZE)
            except OSError:
                break
            if not chunk:
                break
            with self._lock:
                # Search across the chunk boundary so a split sentinel is still found.
                start = max(0, len(self.buffer) - len(self.sentinel or b""))
                self.buffer += chunk
                if self.sentinel and self.sentinel in self.buffer[start:]:
                    self.sentinel_seen.set()

    def snapshot(self) -> bytes:
        with self._lock:
            return bytes(self.buffer)


def run_monitored(
    cmd: list[str],
    timeout: float,
    env: dict[str, str] | None = None,
    cwd: Path | None = None,
    sentinel: str | None = CASE_COMPLETE_MARKER,
    cpus: list[int] | None = None,
) -> ExecutionResult:
    """
    Run a command, capturing stdout until exit, sentinel, or timeout.

    Outcomes:
    - OSError while launching -> LAUNCH_FAILED
    - sentinel seen, or exit code 0 -> COMPLETED
    - any other exit (non-zero code or signal) -> CRASHED
    - deadline reached -> TIMED_OUT (the process tree is killed)

    With cpus set, the child is pinned to those cores right after launch.
    """
    start_time = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            env=env,
            cwd=cwd,
            start_new_session=True,
        )
    except OSError as e:
        return ExecutionResult(
            status=ExitStatus.LAUNCH_FAILED,
            duration=time.monotonic() - start_time,
            crash_detail=f"{type(e).__name__}: {e}",
        )

    if cpus:
        pin_process(proc.pid, cpus)
    collector = _OutputCollector(proc.stdout.fileno(), sentinel.encode() if sentinel else None)
    collector.start()
    deadline = start_time + timeout
    status: ExitStatus | None = None
    try:
        while status is None:
            if collector.sentinel_seen.is_set():
                status = ExitStatus.COMPLETED
                break
            try:
                proc.wait(timeout=POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                if time.monotonic() >= deadline:
                    status = ExitStatus.TIMED_OUT
                continue
            collector.join(READER_JOIN_TIMEOUT)
            if collector.sentinel_seen.is_set() or proc.returncode == 0:
                status = ExitStatus.COMPLETED
            else:
                status = ExitStatus.CRASHED
    finally:
        if proc.poll() is None:
            kill_process_tree(proc.pid)
            proc.wait()
        collector.join(READER_JOIN_TIMEOUT)
        proc.stdout.close()

    returncode = None
    crash_detail = None
    if status is ExitStatus.CRASHED:
        returncode = proc.returncode
        crash_detail = f"EXIT:{returncode}" if returncode >= 0 else None
    return ExecutionResult(
        status=status,
        captured_output=collector.snapshot(),
        duration=time.monotonic() - start_time,
        returncode=returncode,
        crash_detail=crash_detail,
    )


def prepare_oracle_home(home: Path, log_suffix: str) -> Path:
    """
    Lay out a private HOME for one oracle run.

    Writes mm.cfg (trace output enabled) and creates an empty log file at the
    oracle's fixed log location; the player fails when the file is missing.

    Returns:
        Path to the (empty) log file.
    """
    home.mkdir(parents=True, exist_ok=True)
    (home / "mm.cfg").write_text(MM_CFG_CONTENT)
    log_path = home / log_suffix
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.write_bytes(b"")
    return log_path


class OracleRunner:
    """Runs the reference player as an isolated child process."""

    def __init__(
        self,
        config: "OracleConfig",
        shim_path: Path,
        display: "VirtualDisplay | ExistingDisplay",
        work_dir: Path,
        health_monitor: "HealthMonitor | None" = None,
        lane_tag: str = "",
        cpus: list[int] | None = None,
    ):
        self.config = config
        self.shim_path = shim_path
        self.display = display
        self.work_dir = work_dir
        self.health_monitor = health_monitor
        self.lane_tag = lane_tag
        self.cpus = cpus
        self.work_dir.mkdir(parents=True, exist_ok=True)

    def build_env(self, home: Path) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.config.extra_env)
        env.update(shim_environment(self.shim_path, self.config.log_suffix, self.config.shim_debug))
        env["HOME"] = str(home)
        env["DISPLAY"] = self.display.name
        return env

    def run(self, swf: bytes | SwfDocument, timeout: float) -> ExecutionResult:
        """Execute one document; a fresh SWF file, HOME and process every call."""
        data = _as_bytes(swf)
        with tempfile.TemporaryDirectory(dir=self.work_dir, prefix="oracle_") as tmp:
            tmp_path = Path(tmp)
            swf_path = tmp_path / "test.swf"
            try:
                swf_path.write_bytes(data)
                prepare_oracle_home(tmp_path / "home", self.config.log_suffix)
            except OSError as e:
                return ExecutionResult(
                    status=ExitStatus.LAUNCH_FAILED, crash_detail=f"workspace: {e}"
                )

            cmd = [str(self.config.binary), *self.config.args, str(swf_path)]
            print(f"{self.lane_tag}[EXEC] Running oracle {self.config.binary}.", file=sys.stderr)
            result = run_monitored(
                cmd,
                timeout,
                env=self.build_env(tmp_path / "home"),
                cwd=tmp_path,
                sentinel=self.config.sentinel,
                cpus=self.cpus,
            )
            if not self.config.delete_swf:
                kept = self.work_dir / f"oracle_input_{int(time.time() * 1000)}.swf"
                swf_path.replace(kept)

        if result.status is ExitStatus.LAUNCH_FAILED:
            print(f"{self.lane_tag}  [!] Oracle failed to launch: {result.crash_detail}", file=sys.stderr)
        elif result.status is ExitStatus.CRASHED:
            print(f"{self.lane_tag}  [~] Oracle crashed: {result.describe()}", file=sys.stderr)
        if result.status is not ExitStatus.LAUNCH_FAILED and not result.captured_output:
            # The shim never saw a log write; this is an empty comparand, not an error.
            print(f"{self.lane_tag}  [~] No oracle log output observed.", file=sys.stderr)
            if self.health_monitor:
                self.health_monitor.record_interception_miss(result.status.value)
        return result


def load_callable(reference: str) -> NativeCallable:
    """Resolve a 'package.module:function' reference."""
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'module:function', got {reference!r}")
    module = importlib.import_module(module_name)
    target = module
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise ValueError(f"{reference!r} is not callable")
    return target


class NativeRunner:
    """
    Runs the interpreter under test with the same contract as OracleRunner.

    Subprocess mode runs `command` with the SWF path substituted for the
    `{swf}` placeholder (or appended) and captures stdout. In-process mode
    calls `interpreter(swf_bytes, timeout)` on a worker thread: an exception
    becomes a CRASHED result, and a call still running at the deadline is
    reported as TIMED_OUT and abandoned.
    """

    def __init__(
        self,
        config: "NativeConfig",
        work_dir: Path,
        interpreter: NativeCallable | None = None,
        lane_tag: str = "",
        cpus: list[int] | None = None,
    ):
        self.config = config
        self.work_dir = work_dir
        self.lane_tag = lane_tag
        self.cpus = cpus
        if interpreter is None and config.callable:
            interpreter = load_callable(config.callable)
        self.interpreter = interpreter
        if self.interpreter is None and not config.command:
            raise ValueError("NativeRunner needs either a command or an in-process callable")
        self.work_dir.mkdir(parents=True, exist_ok=True)

    def run(self, swf: bytes | SwfDocument, timeout: float) -> ExecutionResult:
        data = _as_bytes(swf)
        if self.interpreter is not None:
            return self._run_in_process(data, timeout)
        return self._run_subprocess(data, timeout)

    def _build_command(self, swf_path: Path) -> list[str]:
        parts = list(self.config.command)
        if any("{swf}" in part for part in parts):
            return [part.replace("{swf}", str(swf_path)) for part in parts]
        return parts + [str(swf_path)]

    def _run_subprocess(self, data: bytes, timeout: float) -> ExecutionResult:
        with tempfile.TemporaryDirectory(dir=self.work_dir, prefix="native_") as tmp:
            swf_path = Path(tmp) / "test.swf"
            try:
                swf_path.write_bytes(data)
            except OSError as e:
                return ExecutionResult(status=ExitStatus.LAUNCH_FAILED, crash_detail=f"workspace: {e}")
            env = os.environ.copy()
            env.update(self.config.extra_env)
            print(f"{self.lane_tag}[EXEC] Running native {self.config.command[0]}.", file=sys.stderr)
            result = run_monitored(
                self._build_command(swf_path),
                timeout,
                env=env,
                cwd=Path(tmp),
                sentinel=self.config.sentinel,
                cpus=self.cpus,
            )
        if result.status is ExitStatus.LAUNCH_FAILED:
            print(
                f"{self.lane_tag}  [!] Native interpreter failed to launch: {result.crash_detail}",
                file=sys.stderr,
            )
        return result

    def _run_in_process(self, data: bytes, timeout: float) -> ExecutionResult:
        outcome: dict[str, object] = {}

        def target() -> None:
            try:
                outcome["output"] = self.interpreter(data, timeout)
            except BaseException as e:  # the fault boundary: nothing escapes the worker
                outcome["error"] = e

        start_time = time.monotonic()
        worker = threading.Thread(target=target, name="native-interpreter", daemon=True)
        try:
            worker.start()
        except RuntimeError as e:
            return ExecutionResult(status=ExitStatus.LAUNCH_FAILED, crash_detail=str(e))
        worker.join(timeout)
        duration = time.monotonic() - start_time

        if worker.is_alive():
            print(
                f"{self.lane_tag}  [~] Native interpreter exceeded {timeout}s; abandoning call.",
                file=sys.stderr,
            )
            return ExecutionResult(status=ExitStatus.TIMED_OUT, duration=duration)
        if "error" in outcome:
            error = outcome["error"]
            detail = f"{type(error).__name__}: {error}"
            print(f"{self.lane_tag}  [~] Native interpreter raised {detail}", file=sys.stderr)
            return ExecutionResult(status=ExitStatus.CRASHED, duration=duration, crash_detail=detail)
        output = outcome.get("output") or b""
        if isinstance(output, str):
            output = output.encode("utf-8", errors="replace")
        return ExecutionResult(status=ExitStatus.COMPLETED, captured_output=bytes(output), duration=duration)
