"""
Generate and save run metadata for swfdiff campaigns.

This module captures the campaign environment: instance identity, hardware
specs, the two interpreters being compared and the effective configuration.
"""

from __future__ import annotations

import hashlib
import json
import platform
import random
import shutil
import subprocess
import sys
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

if TYPE_CHECKING:
    from swfdiff.config import CampaignConfig

METADATA_FILE = "run_metadata.json"

# Name components for generating readable instance names
ADJECTIVES = [
    "amber",
    "brisk",
    "calm",
    "dapper",
    "eager",
    "fluid",
    "gentle",
    "hasty",
    "idle",
    "jolly",
    "keen",
    "lucid",
    "mellow",
    "nimble",
    "orderly",
    "plucky",
    "quiet",
    "rapid",
    "steady",
    "tidy",
    "upbeat",
    "vivid",
    "wry",
    "zesty",
]

NOUNS = [
    "actionscript",
    "bitmap",
    "button",
    "clip",
    "frame",
    "glyph",
    "keyframe",
    "layer",
    "morph",
    "movie",
    "shape",
    "sprite",
    "stage",
    "symbol",
    "timeline",
    "tween",
    "vector",
]


def generate_instance_name() -> str:
    """Generate a random adjective-noun instance name."""
    return f"{random.choice(ADJECTIVES)}-{random.choice(NOUNS)}"


def get_git_info() -> dict[str, str | bool]:
    """Get git commit hash and dirty status for the swfdiff checkout."""
    try:
        package_dir = Path(__file__).parent.parent
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"], cwd=package_dir, capture_output=True, text=True, timeout=5
        )
        commit_hash = result.stdout.strip() if result.returncode == 0 else "unknown"
        result = subprocess.run(
            ["git", "status", "--porcelain"], cwd=package_dir, capture_output=True, text=True, timeout=5
        )
        is_dirty = bool(result.stdout.strip()) if result.returncode == 0 else False
        return {"commit": commit_hash, "dirty": is_dirty}
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return {"commit": "unknown", "dirty": False}


def describe_executable(binary: str) -> dict[str, Any]:
    """Resolve an executable and fingerprint it, so results can be tied to a build."""
    resolved = shutil.which(binary) or binary
    info: dict[str, Any] = {"configured": binary, "resolved": resolved, "sha256": None, "size": None}
    try:
        data = Path(resolved).read_bytes()
    except OSError as e:
        print(f"[!] Warning: Could not read executable {binary}: {e}", file=sys.stderr)
        return info
    info["sha256"] = hashlib.sha256(data).hexdigest()
    info["size"] = len(data)
    return info


def load_existing_metadata(metadata_path: Path) -> dict | None:
    if not metadata_path.exists():
        return None
    try:
        with open(metadata_path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        print(f"[!] Warning: Could not load existing metadata: {e}", file=sys.stderr)
        return None


def generate_run_metadata(output_dir: Path, config: "CampaignConfig") -> dict:
    """
    Generate run metadata and save it to output_dir/run_metadata.json.

    An existing file keeps its run_id and instance_name across restarts;
    hardware and configuration are always refreshed.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    metadata_path = output_dir / METADATA_FILE

    existing = load_existing_metadata(metadata_path)
    if existing:
        run_id = existing.get("run_id", str(uuid.uuid4()))
        instance_name = existing.get("instance_name") or generate_instance_name()
        print(f"[+] Reusing existing instance identity: {instance_name} ({run_id[:8]}...)", file=sys.stderr)
    else:
        run_id = str(uuid.uuid4())
        instance_name = generate_instance_name()
        print(f"[+] Created new instance identity: {instance_name} ({run_id[:8]}...)", file=sys.stderr)

    if config.native.command:
        native_info = describe_executable(config.native.command[0])
        native_info["command"] = list(config.native.command)
    else:
        native_info = {"callable": config.native.callable}

    metadata = {
        "run_id": run_id,
        "instance_name": instance_name,
        "environment": {
            "hostname": platform.node(),
            "os": platform.platform(),
            "python_version": sys.version,
            "swfdiff_version": get_git_info(),
            "oracle": describe_executable(config.oracle.binary),
            "native": native_info,
        },
        "hardware": {
            "cpu_count_logical": psutil.cpu_count(logical=True),
            "cpu_count_physical": psutil.cpu_count(logical=False),
            "total_ram_gb": round(psutil.virtual_memory().total / (1024**3), 2),
            "disk_free_gb": round(shutil.disk_usage(output_dir).free / (1024**3), 2),
        },
        "configuration": config.to_dict(),
    }

    try:
        with open(metadata_path, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2, default=str)
    except OSError as e:
        print(f"[!] Warning: Could not save run metadata: {e}", file=sys.stderr)
    return metadata
