"""Tests for configuration loading, CLI merging and validation."""

import json
import tempfile
import unittest
from pathlib import Path

from swfdiff.config import (
    RANDOM_VERSION_RANGE,
    CampaignConfig,
    ConfigError,
    config_from_args,
    config_from_mapping,
    load_config_file,
    merge_config_data,
)

NATIVE = {"native": {"command": ["ruffle-trace", "{swf}"]}}


class TestConfigFromMapping(unittest.TestCase):
    def test_defaults(self):
        config = config_from_mapping(NATIVE)

        self.assertEqual(config.lanes, 1)
        self.assertEqual(config.timeout, 10.0)
        self.assertIsNone(config.budget)
        self.assertEqual(config.failures_dir, Path("run/failures"))
        self.assertEqual(config.native.command, ("ruffle-trace", "{swf}"))
        self.assertEqual(config.generator.version_range, (32, 32))
        self.assertTrue(config.oracle.delete_swf)
        self.assertTrue(config.display.virtual)
        self.assertFalse(config.pin_lanes)

    def test_nested_sections(self):
        config = config_from_mapping(
            {
                "lanes": 4,
                "seed": 99,
                "generator": {"tests_per_case": 3, "opcode_fuzz": True, "version_range": [6, 10]},
                "oracle": {"binary": "/opt/flash", "args": ["-v"], "shim_path": "/opt/shim.so"},
                "native": {"callable": "ruffle_py:run"},
                "comparator": {"noise_patterns": ["^Warning"], "fingerprint_policy": "raw-output"},
            }
        )

        self.assertEqual(config.lanes, 4)
        self.assertEqual(config.seed, 99)
        self.assertEqual(config.generator.version_range, (6, 10))
        self.assertTrue(config.generator.opcode_fuzz)
        self.assertEqual(config.oracle.args, ("-v",))
        self.assertEqual(config.oracle.shim_path, Path("/opt/shim.so"))
        self.assertEqual(config.native.callable, "ruffle_py:run")
        self.assertEqual(config.comparator.noise_patterns, ("^Warning",))

    def test_command_string_is_split(self):
        config = config_from_mapping({"native": {"command": "ruffle --trace '{swf}'"}})
        self.assertEqual(config.native.command, ("ruffle", "--trace", "{swf}"))

    def test_to_dict_is_json_serializable(self):
        config = config_from_mapping(
            {**NATIVE, "oracle": {"extra_env": {"GDK_BACKEND": "x11"}}}
        )
        data = config.to_dict()

        json.dumps(data)
        self.assertEqual(data["oracle"]["extra_env"], {"GDK_BACKEND": "x11"})
        self.assertEqual(data["failures_dir"], "run/failures")
        self.assertEqual(data["generator"]["version_range"], [32, 32])
        self.assertIn("DO_ACTION", data["generator"]["tag_weights"])


class TestValidation(unittest.TestCase):
    def assertConfigError(self, data, fragment):
        with self.assertRaises(ConfigError) as ctx:
            config_from_mapping(data)
        self.assertIn(fragment, str(ctx.exception))

    def test_unknown_option(self):
        self.assertConfigError({**NATIVE, "lane": 2}, "lane")
        self.assertConfigError({**NATIVE, "oracle": {"bianry": "x"}}, "bianry")

    def test_native_mode_must_be_exactly_one(self):
        self.assertConfigError({}, "native")
        self.assertConfigError({"native": {"command": ["a"], "callable": "m:f"}}, "Exactly one")

    def test_callable_format(self):
        self.assertConfigError({"native": {"callable": "module_only"}}, "native.callable")

    def test_integer_options(self):
        self.assertConfigError({**NATIVE, "seed": "12"}, "seed")
        self.assertConfigError({**NATIVE, "budget": True}, "budget")
        self.assertConfigError({**NATIVE, "budget": 0}, "budget")

    def test_numeric_and_boolean_types(self):
        self.assertConfigError({**NATIVE, "timeout": "fast"}, "timeout")
        self.assertConfigError({**NATIVE, "timeout": 0}, "timeout")
        self.assertConfigError({**NATIVE, "generator": {"opcode_fuzz": "yes"}}, "opcode_fuzz")

    def test_generator_ranges(self):
        self.assertConfigError({**NATIVE, "generator": {"version_range": [0, 10]}}, "version_range")
        self.assertConfigError({**NATIVE, "generator": {"version_range": [10, 6]}}, "version_range")
        self.assertConfigError({**NATIVE, "generator": {"frame_rate_range": [1, 300]}}, "frame_rate")

    def test_range_values_must_be_numbers(self):
        self.assertConfigError({**NATIVE, "generator": {"version_range": ["a", "b"]}}, "version_range")
        self.assertConfigError({**NATIVE, "generator": {"frame_rate_range": [1, None]}}, "frame_rate")
        self.assertConfigError({**NATIVE, "generator": {"frame_size_range": [True, 5]}}, "integers")
        self.assertConfigError({**NATIVE, "generator": {"version_range": [6.5, 10]}}, "integers")

    def test_tag_count_floor_depends_on_version(self):
        self.assertConfigError({**NATIVE, "generator": {"max_tag_count": 4}}, "at least 5")
        config = config_from_mapping(
            {**NATIVE, "generator": {"max_tag_count": 4, "version_range": [6, 7]}}
        )
        self.assertEqual(config.generator.max_tag_count, 4)

    def test_unknown_tags(self):
        self.assertConfigError({**NATIVE, "generator": {"excluded_tags": ["DEFINE_SPRITE"]}}, "DEFINE_SPRITE")
        self.assertConfigError({**NATIVE, "generator": {"tag_weights": {"DO_ACTION": -1}}}, "negative")

    def test_some_case_family_enabled(self):
        self.assertConfigError({**NATIVE, "generator": {"dynamic_function_fuzz": False}}, "families")

    def test_invalid_noise_regex(self):
        self.assertConfigError({**NATIVE, "comparator": {"noise_patterns": ["("]}}, "regex")

    def test_fingerprint_policy(self):
        self.assertConfigError({**NATIVE, "comparator": {"fingerprint_policy": "md5"}}, "fingerprint_policy")

    def test_absolute_log_suffix(self):
        self.assertConfigError({**NATIVE, "oracle": {"log_suffix": "/tmp/flashlog.txt"}}, "log_suffix")


class TestConfigFile(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp_dir.name) / "campaign.json"

    def tearDown(self):
        self.tmp_dir.cleanup()

    def test_load(self):
        self.path.write_text(json.dumps({"lanes": 2}))
        self.assertEqual(load_config_file(self.path), {"lanes": 2})

    def test_missing_file(self):
        with self.assertRaisesRegex(ConfigError, "Cannot read"):
            load_config_file(self.path)

    def test_invalid_json(self):
        self.path.write_text("{lanes: 2")
        with self.assertRaisesRegex(ConfigError, "not valid JSON"):
            load_config_file(self.path)

    def test_top_level_must_be_object(self):
        self.path.write_text("[1, 2]")
        with self.assertRaisesRegex(ConfigError, "JSON object"):
            load_config_file(self.path)

    def test_cli_overrides_file(self):
        self.path.write_text(
            json.dumps(
                {
                    "lanes": 2,
                    "timeout": 3,
                    "native": {"command": ["ruffle"]},
                    "generator": {"tests_per_case": 4, "random_ints": True},
                }
            )
        )
        config = config_from_args(
            ["--config", str(self.path), "--lanes", "8", "--opcode-fuzz", "--native-callable", "m:f"]
        )

        self.assertEqual(config.lanes, 8)
        self.assertEqual(config.timeout, 3)
        self.assertEqual(config.generator.tests_per_case, 4)
        self.assertTrue(config.generator.random_ints)
        self.assertTrue(config.generator.opcode_fuzz)
        self.assertEqual(config.native.callable, "m:f")
        self.assertEqual(config.native.command, ())


class TestConfigFromArgs(unittest.TestCase):
    def test_flags(self):
        config = config_from_args(
            [
                "--native-command",
                "ruffle --trace {swf}",
                "--budget",
                "50",
                "--seed",
                "7",
                "--quiet",
                "--pin-lanes",
                "--keep-swf",
                "--no-virtual-display",
                "--random-version",
                "--no-dynamic-function-fuzz",
                "--static-function-fuzz",
                "--noise-pattern",
                "^a",
                "--noise-pattern",
                "^b",
                "--oracle-arg=-x",
                "--shim-flag=-m32",
            ]
        )

        self.assertEqual(config.native.command, ("ruffle", "--trace", "{swf}"))
        self.assertEqual(config.budget, 50)
        self.assertEqual(config.seed, 7)
        self.assertFalse(config.verbose)
        self.assertTrue(config.pin_lanes)
        self.assertFalse(config.oracle.delete_swf)
        self.assertFalse(config.display.virtual)
        self.assertEqual(config.generator.version_range, RANDOM_VERSION_RANGE)
        self.assertFalse(config.generator.dynamic_function_fuzz)
        self.assertTrue(config.generator.static_function_fuzz)
        self.assertEqual(config.comparator.noise_patterns, ("^a", "^b"))
        self.assertEqual(config.oracle.args, ("-x",))
        self.assertEqual(config.oracle.shim_flags, ("-m32",))

    def test_single(self):
        config = config_from_args(["--native-command", "ruffle", "--single"])
        self.assertTrue(config.single)
        self.assertIsInstance(config, CampaignConfig)

    def test_merge_keeps_unrelated_section_keys(self):
        merged = merge_config_data(
            {"oracle": {"binary": "/a", "args": ["-v"]}, "lanes": 1},
            {"oracle": {"binary": "/b"}, "lanes": 3},
        )
        self.assertEqual(merged, {"oracle": {"binary": "/b", "args": ["-v"]}, "lanes": 3})


if __name__ == "__main__":
    unittest.main()
