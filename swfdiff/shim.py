"""
Build and inject the output interception shim.

The shim (path_mapping.c, shipped beside this module) is compiled once per
campaign into a shared object and loaded into the oracle process through
LD_PRELOAD. The rest of swfdiff only sees the environment produced by
`shim_environment()`.
"""

from __future__ import annotations

import hashlib
import shutil
import subprocess
import sys
import threading
from pathlib import Path

from swfdiff.types import InfrastructureError

SHIM_SOURCE = Path(__file__).with_name("path_mapping.c")
DEFAULT_LOG_SUFFIX = ".macromedia/Flash_Player/Logs/flashlog.txt"
BUILD_TIMEOUT = 120

_build_lock = threading.Lock()


class ShimBuildError(InfrastructureError):
    """The shim could not be compiled or located."""


def build_shim(
    output_dir: Path,
    compiler: str = "cc",
    extra_flags: tuple[str, ...] = (),
    source: Path = SHIM_SOURCE,
) -> Path:
    """
    Compile the shim into output_dir, reusing a previous build when possible.

    The output name includes a hash of the source and flags so that changing
    either (e.g. adding -m32 for a 32-bit oracle) triggers a rebuild.

    Returns:
        Path to the shared object.

    Raises:
        ShimBuildError: if the compiler is missing or the build fails.
    """
    try:
        source_bytes = source.read_bytes()
    except OSError as e:
        raise ShimBuildError(f"Cannot read shim source {source}: {e}") from e

    key = hashlib.sha256(source_bytes + " ".join(extra_flags).encode()).hexdigest()[:12]
    output_path = output_dir / f"path_mapping_{key}.so"

    with _build_lock:
        if output_path.is_file():
            return output_path
        if shutil.which(compiler) is None:
            raise ShimBuildError(f"Compiler '{compiler}' not found; cannot build {source.name}")

        output_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = output_path.with_suffix(".so.tmp")
        cmd = [compiler, "-shared", "-fPIC", "-O2", *extra_flags, "-o", str(tmp_path), str(source), "-ldl"]
        print(f"[*] Building interception shim: {' '.join(cmd)}", file=sys.stderr)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=BUILD_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ShimBuildError(f"Shim build failed to run: {e}") from e
        if result.returncode != 0:
            raise ShimBuildError(
                f"Shim build failed (exit {result.returncode}):\n{result.stderr.strip()}"
            )
        tmp_path.replace(output_path)
        print(f"  [+] Shim built at {output_path}", file=sys.stderr)
        return output_path


def resolve_shim(prebuilt: Path | None, build_dir: Path, compiler: str, flags: tuple[str, ...]) -> Path:
    """Return a usable shim: the prebuilt one if configured, else a fresh build."""
    if prebuilt is not None:
        if not prebuilt.is_file():
            raise ShimBuildError(f"Configured shim {prebuilt} does not exist")
        return prebuilt
    return build_shim(build_dir, compiler, flags)


def shim_environment(
    shim_path: Path, log_suffix: str = DEFAULT_LOG_SUFFIX, debug: bool = False
) -> dict[str, str]:
    """Environment variables that activate the shim in a child process."""
    env = {
        "LD_PRELOAD": str(shim_path.resolve()),
        "SWFDIFF_LOG_SUFFIX": log_suffix,
    }
    if debug:
        env["SWFDIFF_SHIM_DEBUG"] = "1"
    return env
