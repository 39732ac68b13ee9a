"""Tests for the corpus generator."""

import random
import struct
import unittest

from swfdiff.generator import (
    CASE_COMPLETE_MARKER,
    PREFIX_MARKER,
    DoActionBuilder,
    GenerationExhausted,
    GeneratorConfig,
    derive_sub_seed,
    generate,
    validate_document,
)
from swfdiff.swf import ActionCode, TagCode, parse_swf


def main_do_action(data: bytes) -> bytes:
    """The last DoAction tag is the one carrying the fuzz cases."""
    tags = parse_swf(data).tags
    return [t.payload for t in tags if t.code == TagCode.DO_ACTION][-1]


class TestGenerateDeterminism(unittest.TestCase):
    def test_same_seed_same_bytes(self):
        config = GeneratorConfig(static_function_fuzz=True, opcode_fuzz=True, random_ints=True)
        self.assertEqual(generate(1234, config).to_bytes(), generate(1234, config).to_bytes())

    def test_bytes_seed_is_supported(self):
        config = GeneratorConfig()
        self.assertEqual(generate(b"seed", config), generate(b"seed", config))

    def test_different_seeds_produce_different_documents(self):
        config = GeneratorConfig(random_ints=True, random_strings=True)
        documents = {generate(seed, config).to_bytes() for seed in range(20)}
        self.assertGreater(len(documents), 15)


class TestGeneratedStructure(unittest.TestCase):
    def test_generated_documents_are_valid(self):
        config = GeneratorConfig(
            static_function_fuzz=True,
            opcode_fuzz=True,
            random_ints=True,
            random_strings=True,
            edge_cases=True,
            double_nan=True,
            tests_per_case=2,
        )
        for seed in range(40):
            data = generate(seed, config).to_bytes()
            validate_document(data, config)

    def test_mandatory_tag_layout_for_current_versions(self):
        data = generate(5, GeneratorConfig()).to_bytes()
        codes = [t.code for t in parse_swf(data).tags]

        self.assertEqual(codes[0], TagCode.FILE_ATTRIBUTES)
        self.assertEqual(codes[1], TagCode.ENABLE_DEBUGGER_2)
        self.assertEqual(codes[-3:], [TagCode.DO_ACTION, TagCode.SHOW_FRAME, TagCode.END])

    def test_old_versions_use_enable_debugger(self):
        config = GeneratorConfig(version_range=(5, 5))
        codes = [t.code for t in parse_swf(generate(5, config).to_bytes()).tags]

        self.assertEqual(codes[0], TagCode.ENABLE_DEBUGGER)
        self.assertNotIn(TagCode.FILE_ATTRIBUTES, codes)

    def test_excluding_all_optional_tags(self):
        config = GeneratorConfig(excluded_tags=frozenset(GeneratorConfig().tag_weights))
        for seed in range(10):
            self.assertEqual(len(parse_swf(generate(seed, config).to_bytes()).tags), 5)

    def test_tag_count_respects_limit(self):
        config = GeneratorConfig(max_tag_count=7)
        for seed in range(30):
            self.assertLessEqual(len(parse_swf(generate(seed, config).to_bytes()).tags), 7)

    def test_header_ranges(self):
        config = GeneratorConfig(
            version_range=(6, 32), frame_rate_range=(12.0, 30.0), frame_size_range=(1, 500)
        )
        for seed in range(30):
            parsed = parse_swf(generate(seed, config).to_bytes())
            self.assertTrue(6 <= parsed.version <= 32)
            self.assertTrue(12.0 <= parsed.frame_rate <= 30.0)
            self.assertTrue(20 <= parsed.frame_size_twips[1] <= 500 * 20)


class TestFuzzCases(unittest.TestCase):
    def test_epilogue_traces_sentinel_and_quits(self):
        payload = main_do_action(generate(3, GeneratorConfig()).to_bytes())

        self.assertIn(CASE_COMPLETE_MARKER.encode() + b"\x00", payload)
        self.assertIn(b"fscommand:quit\x00_root\x00", payload)
        self.assertEqual(payload[-1], 0)

    def test_tests_per_case_controls_case_count(self):
        config = GeneratorConfig(tests_per_case=3)
        payload = main_do_action(generate(11, config).to_bytes())
        # Each case pushes the marker once and compares against it once.
        self.assertEqual(payload.count(PREFIX_MARKER.encode()), 6)

    def test_all_families_enabled(self):
        config = GeneratorConfig(static_function_fuzz=True, opcode_fuzz=True, tests_per_case=2)
        payload = main_do_action(generate(11, config).to_bytes())
        self.assertEqual(payload.count(PREFIX_MARKER.encode()), 12)

    def test_dynamic_case_constructs_and_calls(self):
        builder = DoActionBuilder(random.Random(0), GeneratorConfig())
        builder.dynamic_function_case()
        output = bytes(builder.w.output)

        self.assertIn(bytes([ActionCode.NEW_OBJECT]), output)
        self.assertIn(bytes([ActionCode.CALL_METHOD]), output)
        self.assertIn(b"foo\x00", output)

    def test_dump_stack_branches_back_to_loop_start(self):
        builder = DoActionBuilder(random.Random(0), GeneratorConfig())
        builder.w.push("padding")
        loop_start = len(builder.w)
        builder.dump_stack()

        output = builder.w.output
        self.assertEqual(output[-5], ActionCode.IF)
        (offset,) = struct.unpack("<h", output[-2:])
        self.assertEqual(len(output) + offset, loop_start)

    def test_fixed_values_by_default(self):
        builder = DoActionBuilder(random.Random(0), GeneratorConfig())
        values = {repr(builder._random_int()) for _ in range(20)}
        self.assertEqual(values, {"10"})
        self.assertEqual(builder._random_string(), "this is a test")

    def test_random_strings_never_contain_nul(self):
        builder = DoActionBuilder(random.Random(0), GeneratorConfig(random_strings=True))
        for _ in range(50):
            value = builder._random_string()
            self.assertNotIn(b"\x00", value if isinstance(value, bytes) else value.encode())


class TestGenerationExhausted(unittest.TestCase):
    def test_unrepresentable_frame_rate(self):
        config = GeneratorConfig(frame_rate_range=(60.001, 60.002), max_retries=2)
        with self.assertRaises(GenerationExhausted) as ctx:
            generate(1, config)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIn("frame rate", ctx.exception.last_error)

    def test_size_limit_too_small(self):
        config = GeneratorConfig(max_document_size=40, max_retries=3)
        with self.assertRaises(GenerationExhausted) as ctx:
            generate(9, config)
        self.assertEqual(ctx.exception.seed, 9)
        self.assertEqual(ctx.exception.attempts, 4)


class TestHelpers(unittest.TestCase):
    def test_derive_sub_seed(self):
        self.assertEqual(derive_sub_seed(5, 1), derive_sub_seed(5, 1))
        self.assertNotEqual(derive_sub_seed(5, 1), derive_sub_seed(5, 2))

    def test_enabled_tags(self):
        config = GeneratorConfig(
            tag_weights={"DO_ACTION": 1.0, "METADATA": 0.0, "FRAME_LABEL": 2.0},
            excluded_tags=frozenset({"FRAME_LABEL"}),
        )
        self.assertEqual(config.enabled_tags(), {"DO_ACTION": 1.0})


if __name__ == "__main__":
    unittest.main()
