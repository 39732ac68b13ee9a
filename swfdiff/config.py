"""
Campaign configuration.

A campaign is configured from an optional JSON file (`--config`) with CLI
flags layered on top. The result is a frozen CampaignConfig tree that is
handed to each component when it is constructed; nothing reads global
settings afterwards.

JSON layout (every key optional):

    {
        "lanes": 4, "timeout": 10, "budget": null, "seed": 1234,
        "failures_dir": "run/failures", "work_dir": "run/work",
        "generator": {"tests_per_case": 3, "opcode_fuzz": true},
        "oracle": {"binary": "./utils/flashplayer_32_sa_debug"},
        "native": {"command": ["ruffle-trace", "{swf}"]},
        "display": {"virtual": true, "base_display": 100},
        "comparator": {"noise_patterns": ["^Warning: .*$"]}
    }
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from swfdiff.display import DEFAULT_DISPLAY_COMMAND
from swfdiff.failure_store import FINGERPRINT_POLICIES
from swfdiff.generator import (
    CASE_COMPLETE_MARKER,
    DEFAULT_TAG_WEIGHTS,
    MANDATORY_TAG_COUNT,
    GeneratorConfig,
)
from swfdiff.shim import DEFAULT_LOG_SUFFIX
from swfdiff.swf import MAX_FRAME_RATE, MAX_VERSION, MIN_VERSION

RANDOM_VERSION_RANGE = (6, 32)
DEFAULT_ORACLE_BINARY = "./utils/flashplayer_32_sa_debug"


class ConfigError(ValueError):
    """An invalid configuration value; the message names the option."""


@dataclass(frozen=True)
class OracleConfig:
    binary: str = DEFAULT_ORACLE_BINARY
    args: tuple[str, ...] = ()
    log_suffix: str = DEFAULT_LOG_SUFFIX
    shim_path: Path | None = None
    shim_compiler: str = "cc"
    shim_flags: tuple[str, ...] = ()
    shim_debug: bool = False
    sentinel: str | None = CASE_COMPLETE_MARKER
    delete_swf: bool = True
    extra_env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class NativeConfig:
    command: tuple[str, ...] = ()
    callable: str | None = None
    sentinel: str | None = CASE_COMPLETE_MARKER
    extra_env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class DisplayConfig:
    virtual: bool = True
    command: tuple[str, ...] = DEFAULT_DISPLAY_COMMAND
    base_display: int = 100
    startup_timeout: float = 10.0


@dataclass(frozen=True)
class ComparatorConfig:
    noise_patterns: tuple[str, ...] = ()
    fingerprint_policy: str = "normalized-diff"


@dataclass(frozen=True)
class CampaignConfig:
    lanes: int = 1
    timeout: float = 10.0
    budget: int | None = None
    seed: int | None = None
    failures_dir: Path = Path("run/failures")
    work_dir: Path = Path("run/work")
    logs_dir: Path = Path("logs")
    single: bool = False
    stats_interval: float = 5.0
    verbose: bool = True
    pin_lanes: bool = False
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    native: NativeConfig = field(default_factory=NativeConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    comparator: ComparatorConfig = field(default_factory=ComparatorConfig)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view, used for run headers and metadata."""
        return _plain(self)


def _plain(value: Any) -> Any:
    # dataclasses.asdict() deep-copies leaves, which mappingproxy does not support.
    if dataclasses.is_dataclass(value):
        return {f.name: _plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (frozenset, set)):
        return sorted(value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value


# --- Coercion from JSON / CLI values ---

_SECTION_TYPES = {
    "generator": GeneratorConfig,
    "oracle": OracleConfig,
    "native": NativeConfig,
    "display": DisplayConfig,
    "comparator": ComparatorConfig,
}


def _coerce(section: str, name: str, value: Any, default: Any) -> Any:
    option = f"{section}.{name}" if section else name
    if value is None:
        return None
    if name in ("budget", "seed", "base_display") and (isinstance(value, bool) or not isinstance(value, int)):
        raise ConfigError(f"Option '{option}' must be an integer, got {value!r}")
    if isinstance(default, tuple):
        if isinstance(value, str):
            return tuple(shlex.split(value)) if name == "command" else (value,)
        if not isinstance(value, (list, tuple)):
            raise ConfigError(f"Option '{option}' must be a list, got {value!r}")
        return tuple(value)
    if isinstance(default, frozenset):
        return frozenset(value)
    if isinstance(default, Mapping):
        if not isinstance(value, Mapping):
            raise ConfigError(f"Option '{option}' must be an object, got {value!r}")
        return MappingProxyType(dict(value))
    if isinstance(default, Path) or name in ("shim_path",):
        return Path(value)
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"Option '{option}' must be true or false, got {value!r}")
        return value
    if isinstance(default, (int, float)) and not isinstance(value, (int, float)):
        raise ConfigError(f"Option '{option}' must be a number, got {value!r}")
    return value


def _build_section(cls, section: str, values: Mapping[str, Any]):
    known = {f.name: f for f in dataclasses.fields(cls)}
    unknown = set(values) - set(known)
    if unknown:
        raise ConfigError(f"Unknown option(s) in '{section or 'campaign'}': {', '.join(sorted(unknown))}")
    defaults = cls()
    kwargs = {}
    for name, value in values.items():
        coerced = _coerce(section, name, value, getattr(defaults, name))
        if coerced is not None or name in ("budget", "seed", "callable", "shim_path", "sentinel"):
            kwargs[name] = coerced
    return cls(**kwargs)


def config_from_mapping(data: Mapping[str, Any]) -> CampaignConfig:
    """Build and validate a CampaignConfig from a JSON-shaped mapping."""
    top = {k: v for k, v in data.items() if k not in _SECTION_TYPES}
    sections = {
        name: _build_section(cls, name, data.get(name) or {}) for name, cls in _SECTION_TYPES.items()
    }
    config = _build_section(CampaignConfig, "", top)
    config = dataclasses.replace(config, **sections)
    validate_config(config)
    return config


def load_config_file(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


# --- Validation ---

def _check_range(
    option: str, value: tuple, lo_bound: float, hi_bound: float, integral: bool = False
) -> None:
    if len(value) != 2:
        raise ConfigError(f"Option '{option}' must be a [min, max] pair, got {value!r}")
    kinds = (int,) if integral else (int, float)
    if any(isinstance(v, bool) or not isinstance(v, kinds) for v in value):
        kind = "integers" if integral else "numbers"
        raise ConfigError(f"Option '{option}' must hold two {kind}, got {value!r}")
    lo, hi = value
    if not (lo_bound <= lo <= hi <= hi_bound):
        raise ConfigError(
            f"Option '{option}' must satisfy {lo_bound} <= min <= max <= {hi_bound}, got {value!r}"
        )


def validate_generator(gen: GeneratorConfig) -> None:
    _check_range(
        "generator.version_range", gen.version_range, MIN_VERSION, MAX_VERSION, integral=True
    )
    _check_range("generator.frame_rate_range", gen.frame_rate_range, 1 / 256, MAX_FRAME_RATE)
    _check_range(
        "generator.frame_size_range", gen.frame_size_range, 1, 0x7FFF // 20, integral=True
    )
    # FileAttributes is mandatory from version 8 on, on top of the fixed tags.
    minimum_tags = MANDATORY_TAG_COUNT + (1 if gen.version_range[1] >= 8 else 0)
    if gen.max_tag_count < minimum_tags:
        raise ConfigError(f"Option 'generator.max_tag_count' must be at least {minimum_tags}")
    if gen.max_document_size < 64:
        raise ConfigError("Option 'generator.max_document_size' must be at least 64 bytes")
    if gen.tests_per_case < 1:
        raise ConfigError("Option 'generator.tests_per_case' must be at least 1")
    if gen.max_retries < 1:
        raise ConfigError("Option 'generator.max_retries' must be at least 1")
    if not (gen.dynamic_function_fuzz or gen.static_function_fuzz or gen.opcode_fuzz):
        raise ConfigError("At least one of the generator fuzz-case families must be enabled")
    for name, weight in gen.tag_weights.items():
        if name not in DEFAULT_TAG_WEIGHTS:
            raise ConfigError(f"Option 'generator.tag_weights' names unknown tag {name!r}")
        if weight < 0:
            raise ConfigError(f"Option 'generator.tag_weights' has negative weight for {name!r}")
    unknown_excluded = set(gen.excluded_tags) - set(DEFAULT_TAG_WEIGHTS)
    if unknown_excluded:
        raise ConfigError(f"Option 'generator.excluded_tags' names unknown tags: {sorted(unknown_excluded)}")


def validate_config(config: CampaignConfig) -> None:
    """Raise ConfigError for the first invalid option found."""
    if config.lanes < 1:
        raise ConfigError("Option 'lanes' must be at least 1")
    if config.timeout <= 0:
        raise ConfigError("Option 'timeout' must be positive")
    if config.budget is not None and config.budget < 1:
        raise ConfigError("Option 'budget' must be at least 1, or null for an unbounded campaign")
    if config.stats_interval <= 0:
        raise ConfigError("Option 'stats_interval' must be positive")
    validate_generator(config.generator)

    if bool(config.native.command) == bool(config.native.callable):
        raise ConfigError("Exactly one of 'native.command' and 'native.callable' must be set")
    if config.native.callable and ":" not in config.native.callable:
        raise ConfigError("Option 'native.callable' must look like 'package.module:function'")
    if not config.oracle.binary:
        raise ConfigError("Option 'oracle.binary' must not be empty")
    if not config.oracle.log_suffix or Path(config.oracle.log_suffix).is_absolute():
        raise ConfigError("Option 'oracle.log_suffix' must be a relative path")

    if config.display.base_display < 0:
        raise ConfigError("Option 'display.base_display' must not be negative")
    if config.display.virtual and not config.display.command:
        raise ConfigError("Option 'display.command' must not be empty")

    if config.comparator.fingerprint_policy not in FINGERPRINT_POLICIES:
        raise ConfigError(
            f"Option 'comparator.fingerprint_policy' must be one of {', '.join(FINGERPRINT_POLICIES)}"
        )
    for pattern in config.comparator.noise_patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            raise ConfigError(
                f"Option 'comparator.noise_patterns' has an invalid regex {pattern!r}: {e}"
            ) from e


# --- Command line ---

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="swfdiff: differential fuzzing of an SWF interpreter against the reference player."
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON configuration file.")
    parser.add_argument(
        "--lanes",
        type=int,
        default=None,
        help="Number of parallel worker lanes. (Default: 1)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-run timeout in seconds. (Default: 10)",
    )
    parser.add_argument(
        "--budget",
        type=int,
        default=None,
        help="Stop after N cycles in total. (Default: run until stopped)",
    )
    parser.add_argument("--seed", type=int, default=None, help="Base seed for the whole campaign.")
    parser.add_argument(
        "--failures-dir",
        type=Path,
        default=None,
        help="Durable failure store directory.",
    )
    parser.add_argument(
        "--work-dir",
        type=Path,
        default=None,
        help="Scratch directory for lane-local files.",
    )
    parser.add_argument(
        "--logs-dir",
        type=Path,
        default=None,
        help="Directory for run and health logs.",
    )
    parser.add_argument("--single", action="store_true", help="Run a single cycle and exit.")
    parser.add_argument("--quiet", action="store_true", help="Suppress per-cycle progress lines.")
    parser.add_argument(
        "--pin-lanes",
        action="store_true",
        help="Pin each lane's interpreter processes to one CPU core.",
    )
    parser.add_argument(
        "--stats-interval",
        type=float,
        default=None,
        help="Seconds between throughput reports.",
    )

    oracle = parser.add_argument_group("oracle")
    oracle.add_argument(
        "--oracle",
        dest="oracle_binary",
        default=None,
        help="Reference player executable.",
    )
    oracle.add_argument(
        "--oracle-arg",
        action="append",
        default=None,
        help="Extra argument for the player.",
    )
    oracle.add_argument(
        "--log-suffix",
        default=None,
        help="Path suffix of the player's trace log file.",
    )
    oracle.add_argument("--shim", type=Path, default=None, help="Prebuilt interception shim (.so).")
    oracle.add_argument(
        "--shim-flag",
        action="append",
        default=None,
        help="Extra compiler flag for the shim, e.g. -m32.",
    )
    oracle.add_argument(
        "--shim-debug",
        action="store_true",
        help="Trace intercepted calls to stderr.",
    )
    oracle.add_argument(
        "--keep-swf",
        action="store_true",
        help="Keep generated documents after each run.",
    )

    native = parser.add_argument_group("native interpreter")
    native.add_argument(
        "--native-command",
        default=None,
        help="Command line; '{swf}' is replaced by the document path.",
    )
    native.add_argument(
        "--native-callable",
        default=None,
        help="In-process interpreter as 'module:function'.",
    )

    display = parser.add_argument_group("display")
    display.add_argument(
        "--no-virtual-display",
        action="store_true",
        help="Use the inherited DISPLAY instead of Xvfb.",
    )
    display.add_argument(
        "--display-base",
        type=int,
        default=None,
        help="First X display number for lanes.",
    )

    comparator = parser.add_argument_group("comparison")
    comparator.add_argument(
        "--noise-pattern",
        action="append",
        default=None,
        help="Regex of benign output to drop before comparing.",
    )
    comparator.add_argument("--fingerprint-policy", choices=FINGERPRINT_POLICIES, default=None)

    generator = parser.add_argument_group("generator")
    generator.add_argument(
        "--tests-per-case",
        type=int,
        default=None,
        help="Fuzz cases per document.",
    )
    generator.add_argument(
        "--static-function-fuzz",
        action="store_true",
        help="Enable static method cases.",
    )
    generator.add_argument("--opcode-fuzz", action="store_true", help="Enable raw opcode cases.")
    generator.add_argument(
        "--no-dynamic-function-fuzz",
        action="store_true",
        help="Disable instance method cases.",
    )
    generator.add_argument("--random-strings", action="store_true", help="Use random strings.")
    generator.add_argument("--random-ints", action="store_true", help="Use random integers.")
    generator.add_argument("--int-strings", action="store_true", help="Use numeric strings.")
    generator.add_argument("--double-nan", action="store_true", help="Allow NaN doubles.")
    generator.add_argument("--edge-cases", action="store_true", help="Favor boundary numbers.")
    generator.add_argument(
        "--random-version",
        action="store_true",
        help="Pick SWF versions between 6 and 32.",
    )
    return parser


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Translate explicitly-given CLI flags into the JSON-shaped layout."""
    overrides: dict[str, Any] = {name: {} for name in _SECTION_TYPES}

    def put(section: str | None, key: str, value: Any) -> None:
        if value is None or value is False:
            return
        if section is None:
            overrides[key] = value
        else:
            overrides[section][key] = value

    put(None, "lanes", args.lanes)
    put(None, "timeout", args.timeout)
    put(None, "budget", args.budget)
    put(None, "seed", args.seed)
    put(None, "failures_dir", args.failures_dir and str(args.failures_dir))
    put(None, "work_dir", args.work_dir and str(args.work_dir))
    put(None, "logs_dir", args.logs_dir and str(args.logs_dir))
    put(None, "single", args.single)
    put(None, "stats_interval", args.stats_interval)
    put(None, "pin_lanes", args.pin_lanes)
    if args.quiet:
        overrides["verbose"] = False

    put("oracle", "binary", args.oracle_binary)
    put("oracle", "args", args.oracle_arg)
    put("oracle", "log_suffix", args.log_suffix)
    put("oracle", "shim_path", args.shim and str(args.shim))
    put("oracle", "shim_flags", args.shim_flag)
    put("oracle", "shim_debug", args.shim_debug)
    if args.keep_swf:
        overrides["oracle"]["delete_swf"] = False

    if args.native_command:
        overrides["native"]["command"] = shlex.split(args.native_command)
        overrides["native"]["callable"] = None
    if args.native_callable:
        overrides["native"]["callable"] = args.native_callable
        overrides["native"]["command"] = []

    if args.no_virtual_display:
        overrides["display"]["virtual"] = False
    put("display", "base_display", args.display_base)

    put("comparator", "noise_patterns", args.noise_pattern)
    put("comparator", "fingerprint_policy", args.fingerprint_policy)

    put("generator", "tests_per_case", args.tests_per_case)
    for flag in (
        "static_function_fuzz",
        "opcode_fuzz",
        "random_strings",
        "random_ints",
        "int_strings",
        "double_nan",
        "edge_cases",
    ):
        put("generator", flag, getattr(args, flag))
    if args.no_dynamic_function_fuzz:
        overrides["generator"]["dynamic_function_fuzz"] = False
    if args.random_version:
        overrides["generator"]["version_range"] = list(RANDOM_VERSION_RANGE)
    return overrides


def merge_config_data(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if key in _SECTION_TYPES:
            section = dict(merged.get(key) or {})
            section.update(value)
            merged[key] = section
        else:
            merged[key] = value
    return merged


def config_from_args(argv: list[str] | None = None) -> CampaignConfig:
    """Parse argv, merge it over the optional config file and validate."""
    args = build_parser().parse_args(argv)
    file_data = load_config_file(args.config) if args.config else {}
    return config_from_mapping(merge_config_data(file_data, _cli_overrides(args)))
