"""
Headless X display management for oracle lanes.

Each lane owns one VirtualDisplay so that concurrently running oracle
processes never share an X server.
"""

from __future__ import annotations

import os
import subprocess
import sys
import time
from pathlib import Path

from swfdiff.types import InfrastructureError
from swfdiff.utils import kill_process_tree

X11_SOCKET_DIR = Path("/tmp/.X11-unix")
DEFAULT_DISPLAY_COMMAND = (
    "Xvfb",
    ":{display}",
    "-nolisten",
    "tcp",
    "-screen",
    "0",
    "640x480x24",
)


class DisplayStartError(InfrastructureError):
    """The virtual display could not be started."""


class VirtualDisplay:
    """Start/stop lifecycle around an X server process bound to one display number."""

    def __init__(
        self,
        display_number: int,
        command: tuple[str, ...] = DEFAULT_DISPLAY_COMMAND,
        startup_timeout: float = 10.0,
        socket_dir: Path = X11_SOCKET_DIR,
    ):
        self.display_number = display_number
        self.command = command
        self.startup_timeout = startup_timeout
        self.socket_dir = socket_dir
        self.process: subprocess.Popen | None = None

    @property
    def name(self) -> str:
        return f":{self.display_number}"

    @property
    def socket_path(self) -> Path:
        return self.socket_dir / f"X{self.display_number}"

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def start(self) -> str:
        """
        Launch the X server and wait until its socket appears.

        Returns:
            The DISPLAY value for child processes.

        Raises:
            DisplayStartError: if the server fails to launch, exits early,
                or does not become ready within startup_timeout.
        """
        if self.is_running():
            return self.name
        cmd = [part.format(display=self.display_number) for part in self.command]
        print(f"[*] Starting virtual display {self.name}: {' '.join(cmd)}", file=sys.stderr)
        try:
            self.process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise DisplayStartError(f"Could not launch display {self.name}: {e}") from e

        deadline = time.monotonic() + self.startup_timeout
        while time.monotonic() < deadline:
            if self.process.poll() is not None:
                code = self.process.returncode
                self.process = None
                raise DisplayStartError(f"Display {self.name} exited during startup (exit {code})")
            if self.socket_path.exists():
                print(f"  [+] Display {self.name} is ready.", file=sys.stderr)
                return self.name
            time.sleep(0.05)

        self.stop()
        raise DisplayStartError(
            f"Display {self.name} not ready after {self.startup_timeout:.1f}s"
        )

    def stop(self) -> None:
        if self.process is None:
            return
        kill_process_tree(self.process.pid)
        try:
            self.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            print(f"  [!] Warning: display {self.name} did not exit.", file=sys.stderr)
        self.process = None

    def __enter__(self) -> "VirtualDisplay":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()


class ExistingDisplay:
    """Use the DISPLAY of the surrounding environment instead of spawning one."""

    def __init__(self, name: str | None = None):
        self._name = name or os.environ.get("DISPLAY", "")

    @property
    def name(self) -> str:
        return self._name

    def is_running(self) -> bool:
        return bool(self._name)

    def start(self) -> str:
        if not self._name:
            raise DisplayStartError("No DISPLAY is set and virtual displays are disabled")
        return self._name

    def stop(self) -> None:
        pass

    def __enter__(self) -> "ExistingDisplay":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
