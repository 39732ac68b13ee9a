"""
Corpus generation for swfdiff.

This module provides the SwfGenerator and the `generate()` entry point which
turn a seed and a GeneratorConfig into a structurally valid SwfDocument.

Each document runs a small number of AVM1 "fuzz cases" from up to three
families:
- Dynamic function: construct a builtin class and call a random method on it
- Static function: call a static method of a builtin class
- Opcode: apply a single stack opcode to random operands

Every case pushes a prefix marker first and finishes with a stack-dump loop
that traces each value down to that marker, so the interpreters' trace output
reflects the whole resulting stack. The document ends by tracing the
completion sentinel and asking the player to quit.
"""

from __future__ import annotations

import hashlib
import math
import random
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from swfdiff.swf import (
    UNDEFINED,
    ActionCode,
    ActionWriter,
    Float32,
    Header,
    SwfDocument,
    SwfStructureError,
    Tag,
    TagCode,
    validate_structure,
)

PREFIX_MARKER = "#PREFIX#"
CASE_COMPLETE_MARKER = "#CASE_COMPLETE#"
FIXED_STRING = "this is a test"
FIXED_INT = 10
MAX_RANDOM_STRING_LEN = 256
MAX_VALUE_DEPTH = 4
DEBUGGER_PASSWORD = "$1$5C$2dKTbwjNlJlNSvp9qvD651"

# Tags that are always emitted and therefore not part of the weighted pool.
MANDATORY_TAG_COUNT = 4  # EnableDebugger, DoAction, ShowFrame, End

DEFAULT_TAG_WEIGHTS = MappingProxyType(
    {
        "DO_ACTION": 4.0,
        "SET_BACKGROUND_COLOR": 1.0,
        "FRAME_LABEL": 1.0,
        "SCRIPT_LIMITS": 0.5,
        "METADATA": 0.5,
    }
)

EDGE_CASE_INTS = (0, 1, -1, 0x7FFFFFFF, -0x80000000, 0xFFFF, 0x8000, -0x8000)
EDGE_CASE_DOUBLES = (0.0, -0.0, math.inf, -math.inf, 1.7976931348623157e308, 5e-324)

# (class, method, max argument count). Arguments are pushed from 0 up to the
# maximum so that missing-argument handling is exercised as well.
STATIC_METHODS: tuple[tuple[str, str, int], ...] = (
    ("Accessibility", "isActive", 0),
    ("BitmapData", "loadBitmap", 1),
    ("CustomActions", "get", 1),
    ("CustomActions", "install", 2),
    ("CustomActions", "list", 0),
    ("CustomActions", "uninstall", 1),
    ("Date", "UTC", 7),
    ("ExternalInterface", "addCallback", 3),
    ("ExternalInterface", "call", 2),
    ("Key", "getAscii", 0),
    ("Key", "getCode", 0),
    ("Key", "isDown", 1),
    ("Key", "removeListener", 1),
    ("Locale", "checkXMLStatus", 0),
    ("Locale", "getDefaultLang", 0),
    ("Locale", "loadString", 1),
    ("Locale", "loadStringEx", 2),
    ("String", "fromCharCode", 1),
    ("Mouse", "removeListener", 1),
    ("Object", "registerClass", 2),
    ("Point", "distance", 2),
    ("Point", "interpolate", 3),
    ("Point", "polar", 2),
    ("Selection", "getBeginIndex", 0),
    ("Selection", "getCaretIndex", 0),
    ("Selection", "getEndIndex", 0),
    ("Selection", "getFocus", 0),
    ("Selection", "removeListener", 1),
    ("Selection", "setFocus", 1),
    ("SharedObject", "getLocal", 3),
    ("Stage", "removeListener", 1),
    ("TextField", "getFontList", 0),
    ("XMLUI", "get", 1),
)

# (class, max constructor args, ((method, arg count), ...))
DYNAMIC_CLASSES: tuple[tuple[str, int, tuple[tuple[str, int], ...]], ...] = (
    ("String", 1, (("charAt", 1),)),
    (
        "Array",
        10,
        (
            ("concat", 1),
            ("join", 1),
            ("pop", 0),
            ("push", 1),
            ("reverse", 0),
            ("shift", 0),
            ("slice", 2),
            ("sort", 2),
            ("sortOn", 2),
            ("splice", 3),
            ("toString", 0),
            ("unshift", 1),
        ),
    ),
)

# (opcode, operand count)
OPCODES: tuple[tuple[ActionCode, int], ...] = (
    (ActionCode.ADD, 2),
    (ActionCode.ADD2, 2),
    (ActionCode.AND, 2),
    (ActionCode.ASCII_TO_CHAR, 1),
    (ActionCode.BIT_AND, 2),
    (ActionCode.BIT_LSHIFT, 2),
    (ActionCode.BIT_OR, 2),
    (ActionCode.BIT_RSHIFT, 2),
    (ActionCode.BIT_URSHIFT, 2),
    (ActionCode.BIT_XOR, 2),
    (ActionCode.CAST_OP, 2),
    (ActionCode.CHAR_TO_ASCII, 1),
    (ActionCode.DECREMENT, 1),
    (ActionCode.EQUALS, 2),
    (ActionCode.EQUALS2, 2),
    (ActionCode.GREATER, 2),
    (ActionCode.INCREMENT, 1),
    (ActionCode.INSTANCE_OF, 2),
    (ActionCode.LESS, 2),
    (ActionCode.LESS2, 2),
    (ActionCode.MB_ASCII_TO_CHAR, 1),
    (ActionCode.MB_CHAR_TO_ASCII, 1),
    (ActionCode.MB_STRING_EXTRACT, 3),
    (ActionCode.MB_STRING_LENGTH, 1),
    (ActionCode.MODULO, 2),
    (ActionCode.MULTIPLY, 2),
    (ActionCode.NOT, 1),
    (ActionCode.OR, 2),
    (ActionCode.POP, 1),
    (ActionCode.PUSH_DUPLICATE, 1),
    (ActionCode.STACK_SWAP, 2),
    (ActionCode.STRICT_EQUALS, 2),
    (ActionCode.STRING_ADD, 2),
    (ActionCode.STRING_EQUALS, 2),
    (ActionCode.STRING_EXTRACT, 3),
    (ActionCode.STRING_GREATER, 2),
    (ActionCode.STRING_LENGTH, 1),
    (ActionCode.STRING_LESS, 2),
    (ActionCode.SUBTRACT, 2),
    (ActionCode.TARGET_PATH, 1),
    (ActionCode.TO_INTEGER, 1),
    (ActionCode.TO_NUMBER, 1),
    (ActionCode.TO_STRING, 1),
    (ActionCode.TRACE, 1),
    (ActionCode.TYPE_OF, 1),
)


class GenerationExhausted(Exception):
    """Raised when no valid document could be produced within the retry budget."""

    def __init__(self, seed: int | bytes, attempts: int, last_error: str):
        super().__init__(
            f"Could not generate a valid SWF for seed {seed!r} after {attempts} attempts: "
            f"{last_error}"
        )
        self.seed = seed
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class GeneratorConfig:
    """Knobs controlling what the generator may emit."""

    version_range: tuple[int, int] = (32, 32)
    frame_rate_range: tuple[float, float] = (60.0, 60.0)
    frame_size_range: tuple[int, int] = (10, 10)
    max_tag_count: int = 16
    max_document_size: int = 64 * 1024
    tag_weights: Mapping[str, float] = field(default_factory=lambda: DEFAULT_TAG_WEIGHTS)
    excluded_tags: frozenset[str] = frozenset()
    tests_per_case: int = 1
    dynamic_function_fuzz: bool = True
    static_function_fuzz: bool = False
    opcode_fuzz: bool = False
    random_strings: bool = False
    random_ints: bool = False
    int_strings: bool = False
    double_nan: bool = False
    edge_cases: bool = False
    max_retries: int = 8

    def enabled_tags(self) -> dict[str, float]:
        """Return the optional tag pool after exclusions, dropping zero weights."""
        return {
            name: weight
            for name, weight in self.tag_weights.items()
            if name not in self.excluded_tags and weight > 0
        }


def derive_sub_seed(seed: int | bytes, attempt: int) -> int:
    """Derive a deterministic retry seed from the original seed."""
    material = seed if isinstance(seed, bytes) else str(seed).encode()
    digest = hashlib.sha256(material + b":" + str(attempt).encode()).digest()
    return int.from_bytes(digest[:8], "big")


class DoActionBuilder:
    """Writes fuzz cases into an ActionWriter using a seeded RNG."""

    def __init__(self, rng: random.Random, config: GeneratorConfig):
        self.rng = rng
        self.config = config
        self.w = ActionWriter()

    # --- Values ---

    def _random_string(self) -> str | bytes:
        if self.config.edge_cases and self.rng.random() < 0.25:
            return ""
        if self.config.int_strings and self.rng.random() < 0.5:
            value = self.rng.randint(-0x80000000, 0x7FFFFFFF) if self.config.random_ints else FIXED_INT
            return str(value)
        if self.config.random_strings:
            length = self.rng.randint(1, MAX_RANDOM_STRING_LEN - 1)
            # NUL terminates strings in the format, so keep bytes non-zero.
            return bytes(self.rng.randint(1, 255) for _ in range(length))
        return FIXED_STRING

    def _random_int(self) -> int:
        if self.config.edge_cases and self.rng.random() < 0.25:
            return self.rng.choice(EDGE_CASE_INTS)
        if self.config.random_ints:
            return self.rng.randint(-0x80000000, 0x7FFFFFFF)
        return FIXED_INT

    def _random_double(self) -> float:
        if self.config.edge_cases and self.rng.random() < 0.25:
            return self.rng.choice(EDGE_CASE_DOUBLES)
        if self.config.double_nan and self.rng.random() < 0.5:
            return math.nan
        if self.config.random_ints:
            return float(self.rng.randint(-(2**63), 2**63 - 1))
        return float(FIXED_INT)

    def random_value(self) -> object:
        """Pick a scalar push value."""
        kind = self.rng.randint(0, 6)
        if kind == 0:
            return UNDEFINED
        if kind == 1:
            return None
        if kind == 2:
            return self._random_int()
        if kind == 3:
            return self.rng.random() < 0.5
        if kind == 4:
            return self._random_double()
        if kind == 5:
            return Float32(math.nan)
        return self._random_string()

    def push_random_composite(self, depth: int = 0) -> None:
        """Push a scalar, or build an object/array from nested random values."""
        kind = self.rng.randint(0, 8)
        if kind < 7:
            self.w.push(self.random_value())
            return
        if depth > MAX_VALUE_DEPTH:
            self.w.push(None)
            return
        count = self.rng.randint(0, 4)
        for _ in range(count):
            if kind == 7:
                self.push_random_composite(depth + 1)  # member name
            self.push_random_composite(depth + 1)
        self.w.push(count)
        self.w.write(ActionCode.INIT_OBJECT if kind == 7 else ActionCode.INIT_ARRAY)

    # --- Case families ---

    def dump_stack(self) -> None:
        """Trace every stack value until the prefix marker is consumed."""
        loop_start = len(self.w)
        self.w.write(ActionCode.PUSH_DUPLICATE)
        self.w.write(ActionCode.TRACE)
        self.w.push(PREFIX_MARKER)
        self.w.write(ActionCode.EQUALS2)
        self.w.write(ActionCode.NOT)
        # Branch offsets are relative to the end of the 5-byte If action.
        self.w.branch_if(loop_start - (len(self.w) + 5))

    def dynamic_function_case(self) -> None:
        self.w.push(PREFIX_MARKER)
        class_name, max_ctor_args, methods = self.rng.choice(DYNAMIC_CLASSES)
        ctor_args = self.rng.randint(0, max_ctor_args)
        self.w.push("foo")
        for _ in range(ctor_args):
            self.w.push(self.random_value())
        self.w.push(ctor_args, class_name)
        self.w.write(ActionCode.NEW_OBJECT)
        self.w.write(ActionCode.DEFINE_LOCAL)

        method_name, max_method_args = self.rng.choice(methods)
        method_args = self.rng.randint(0, max_method_args)
        for _ in range(method_args):
            self.w.push(self.random_value())
        self.w.push(method_args, "foo")
        self.w.write(ActionCode.GET_VARIABLE)
        self.w.push(method_name)
        self.w.write(ActionCode.CALL_METHOD)
        self.dump_stack()

    def static_function_case(self) -> None:
        self.w.push(PREFIX_MARKER)
        class_name, method_name, max_args = self.rng.choice(STATIC_METHODS)
        arg_count = self.rng.randint(0, max_args)
        for _ in range(arg_count):
            self.w.push(self.random_value())
        self.w.push(arg_count, class_name)
        self.w.write(ActionCode.GET_VARIABLE)
        self.w.push(method_name)
        self.w.write(ActionCode.CALL_METHOD)
        self.dump_stack()

    def opcode_case(self) -> None:
        self.w.push(PREFIX_MARKER)
        opcode, operand_count = self.rng.choice(OPCODES)
        for _ in range(operand_count):
            self.push_random_composite()
        self.w.write(opcode)
        self.dump_stack()

    def write_cases(self, count: int) -> None:
        for _ in range(count):
            if self.config.dynamic_function_fuzz:
                self.dynamic_function_case()
            if self.config.static_function_fuzz:
                self.static_function_case()
            if self.config.opcode_fuzz:
                self.opcode_case()

    def write_epilogue(self) -> None:
        self.w.push(CASE_COMPLETE_MARKER)
        self.w.write(ActionCode.TRACE)
        self.w.get_url("fscommand:quit", "_root")


class SwfGenerator:
    """Builds one candidate document per call from a seeded RNG."""

    def __init__(self, config: GeneratorConfig):
        self.config = config

    def _header(self, rng: random.Random) -> Header:
        cfg = self.config
        lo_rate, hi_rate = cfg.frame_rate_range
        # Frame rate is stored as 8.8 fixed point; pick a representable value in range.
        raw_lo, raw_hi = math.ceil(lo_rate * 256), math.floor(hi_rate * 256)
        if raw_lo > raw_hi:
            raise SwfStructureError(f"No 8.8 fixed-point frame rate in [{lo_rate}, {hi_rate}]")
        return Header(
            version=rng.randint(*cfg.version_range),
            width_px=rng.randint(*cfg.frame_size_range),
            height_px=rng.randint(*cfg.frame_size_range),
            frame_rate=rng.randint(raw_lo, raw_hi) / 256,
            frame_count=1,
        )

    def _optional_tag(self, name: str, rng: random.Random) -> Tag:
        if name == "DO_ACTION":
            if self.config.edge_cases and rng.random() < 0.25:
                return Tag(TagCode.DO_ACTION, b"")  # empty tag
            builder = DoActionBuilder(rng, self.config)
            builder.write_cases(1)
            return Tag(TagCode.DO_ACTION, builder.w.finish())
        if name == "SET_BACKGROUND_COLOR":
            return Tag(TagCode.SET_BACKGROUND_COLOR, bytes(rng.randint(0, 255) for _ in range(3)))
        if name == "FRAME_LABEL":
            label = "" if self.config.edge_cases and rng.random() < 0.25 else f"f{rng.randint(0, 999)}"
            return Tag(TagCode.FRAME_LABEL, label.encode() + b"\x00")
        if name == "SCRIPT_LIMITS":
            max_recursion = rng.choice((256, 1, 0xFFFF)) if self.config.edge_cases else 256
            timeout = rng.randint(1, 60)
            payload = max_recursion.to_bytes(2, "little") + timeout.to_bytes(2, "little")
            return Tag(TagCode.SCRIPT_LIMITS, payload)
        if name == "METADATA":
            return Tag(TagCode.METADATA, b"<rdf:RDF/>\x00")
        raise ValueError(f"Unknown optional tag type: {name}")

    def build(self, rng: random.Random) -> SwfDocument:
        cfg = self.config
        header = self._header(rng)

        prelude: list[Tag] = []
        if header.version >= 8:
            prelude.append(Tag(TagCode.FILE_ATTRIBUTES, b"\x00\x00\x00\x00"))
        if header.version >= 6:
            password = DEBUGGER_PASSWORD.encode() + b"\x00"
            prelude.append(Tag(TagCode.ENABLE_DEBUGGER_2, b"\x00\x00" + password))
        else:
            prelude.append(Tag(TagCode.ENABLE_DEBUGGER, DEBUGGER_PASSWORD.encode() + b"\x00"))

        pool = cfg.enabled_tags()
        room = cfg.max_tag_count - MANDATORY_TAG_COUNT - (header.version >= 8)
        optional: list[Tag] = []
        if pool and room > 0:
            names = list(pool)
            weights = [pool[n] for n in names]
            for name in rng.choices(names, weights=weights, k=rng.randint(0, room)):
                optional.append(self._optional_tag(name, rng))

        main = DoActionBuilder(rng, cfg)
        main.write_cases(cfg.tests_per_case)
        main.write_epilogue()

        tags = (
            prelude
            + optional
            + [Tag(TagCode.DO_ACTION, main.w.finish()), Tag(TagCode.SHOW_FRAME), Tag(TagCode.END)]
        )
        return SwfDocument(header=header, tags=tuple(tags))


def validate_document(data: bytes, config: GeneratorConfig) -> None:
    """Validate serialized bytes against the generator's configured bounds."""
    validate_structure(
        data,
        version_range=config.version_range,
        frame_rate_range=config.frame_rate_range,
        frame_size_range=config.frame_size_range,
        max_size=config.max_document_size,
        max_tags=config.max_tag_count,
    )


def generate(seed: int | bytes, config: GeneratorConfig) -> SwfDocument:
    """
    Deterministically generate a structurally valid document from a seed.

    If a candidate violates a structural constraint (e.g. it is larger than
    max_document_size), a sub-seed derived from the seed is tried instead,
    up to config.max_retries additional attempts.

    Raises:
        GenerationExhausted: if no attempt produced a valid document.
    """
    generator = SwfGenerator(config)
    last_error = "no attempts made"
    attempts = config.max_retries + 1
    for attempt in range(attempts):
        rng = random.Random(seed if attempt == 0 else derive_sub_seed(seed, attempt))
        try:
            document = generator.build(rng)
            validate_document(document.to_bytes(), config)
            return document
        except SwfStructureError as e:
            last_error = str(e)
    raise GenerationExhausted(seed, attempts, last_error)
