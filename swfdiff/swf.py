"""
Minimal SWF document model and serializer for swfdiff.

This module provides:
- SwfDocument / Header / Tag: the in-memory form of a generated test case
- ActionWriter: an AVM1 byte-code writer for DoAction payloads
- serialize(): SwfDocument -> uncompressed ("FWS") bytes
- validate_structure(): structural well-formedness check over raw bytes

Only the subset of the format needed to build fuzz cases is supported.
"""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass, field
from enum import IntEnum

TWIPS_PER_PIXEL = 20
MAX_SHORT_TAG_LENGTH = 0x3E
LONG_TAG_MARKER = 0x3F
SIGNATURE_UNCOMPRESSED = b"FWS"
MIN_VERSION = 1
MAX_VERSION = 50
MAX_FRAME_RATE = 255 + 255 / 256


class SwfStructureError(ValueError):
    """Raised when SWF bytes violate a structural constraint."""


class TagCode(IntEnum):
    END = 0
    SHOW_FRAME = 1
    SET_BACKGROUND_COLOR = 9
    DO_ACTION = 12
    FRAME_LABEL = 43
    ENABLE_DEBUGGER = 58
    ENABLE_DEBUGGER_2 = 64
    SCRIPT_LIMITS = 65
    FILE_ATTRIBUTES = 69
    METADATA = 77


class ActionCode(IntEnum):
    END = 0x00
    ADD = 0x0A
    SUBTRACT = 0x0B
    MULTIPLY = 0x0C
    EQUALS = 0x0E
    LESS = 0x0F
    AND = 0x10
    OR = 0x11
    NOT = 0x12
    STRING_EQUALS = 0x13
    STRING_LENGTH = 0x14
    STRING_EXTRACT = 0x15
    POP = 0x17
    TO_INTEGER = 0x18
    GET_VARIABLE = 0x1C
    STRING_ADD = 0x21
    TRACE = 0x26
    STRING_LESS = 0x29
    CAST_OP = 0x2B
    MB_STRING_LENGTH = 0x31
    CHAR_TO_ASCII = 0x32
    ASCII_TO_CHAR = 0x33
    MB_STRING_EXTRACT = 0x35
    MB_CHAR_TO_ASCII = 0x36
    MB_ASCII_TO_CHAR = 0x37
    DEFINE_LOCAL = 0x3C
    MODULO = 0x3F
    NEW_OBJECT = 0x40
    INIT_ARRAY = 0x42
    INIT_OBJECT = 0x43
    TYPE_OF = 0x44
    TARGET_PATH = 0x45
    ADD2 = 0x47
    LESS2 = 0x48
    EQUALS2 = 0x49
    TO_NUMBER = 0x4A
    TO_STRING = 0x4B
    PUSH_DUPLICATE = 0x4C
    STACK_SWAP = 0x4D
    INCREMENT = 0x50
    DECREMENT = 0x51
    CALL_METHOD = 0x52
    INSTANCE_OF = 0x54
    BIT_AND = 0x60
    BIT_OR = 0x61
    BIT_XOR = 0x62
    BIT_LSHIFT = 0x63
    BIT_RSHIFT = 0x64
    BIT_URSHIFT = 0x65
    STRICT_EQUALS = 0x66
    GREATER = 0x67
    STRING_GREATER = 0x68
    GET_URL = 0x83
    PUSH = 0x96
    IF = 0x9D


class Undefined:
    """Marker for the AVM1 `undefined` push value."""

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = Undefined()


@dataclass(frozen=True)
class Float32:
    """A push value encoded as a 32-bit float rather than a double."""

    value: float


# Push value type tags
_PUSH_STRING = 0
_PUSH_FLOAT = 1
_PUSH_NULL = 2
_PUSH_UNDEFINED = 3
_PUSH_BOOL = 5
_PUSH_DOUBLE = 6
_PUSH_INT = 7


def encode_push_value(value: object) -> bytes:
    """Encode one ActionPush value (str/bytes, int, float, bool, None, UNDEFINED, Float32)."""
    if value is None:
        return bytes([_PUSH_NULL])
    if value is UNDEFINED:
        return bytes([_PUSH_UNDEFINED])
    if isinstance(value, bool):
        return bytes([_PUSH_BOOL, int(value)])
    if isinstance(value, int):
        return bytes([_PUSH_INT]) + struct.pack("<i", value)
    if isinstance(value, Float32):
        return bytes([_PUSH_FLOAT]) + struct.pack("<f", value.value)
    if isinstance(value, float):
        # Doubles are stored as two little-endian words, high word first.
        raw = struct.pack("<d", value)
        return bytes([_PUSH_DOUBLE]) + raw[4:] + raw[:4]
    if isinstance(value, str):
        value = value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        if b"\x00" in value:
            raise SwfStructureError("Push string may not contain NUL bytes")
        return bytes([_PUSH_STRING]) + bytes(value) + b"\x00"
    raise TypeError(f"Unsupported push value type: {type(value).__name__}")


class ActionWriter:
    """Accumulates AVM1 actions into a DoAction payload."""

    def __init__(self) -> None:
        self.output = bytearray()

    def __len__(self) -> int:
        return len(self.output)

    def write(self, code: ActionCode, payload: bytes = b"") -> None:
        self.output.append(int(code))
        if code >= 0x80:
            self.output += struct.pack("<H", len(payload)) + payload
        elif payload:
            raise SwfStructureError(f"Action {code.name} takes no payload")

    def push(self, *values: object) -> None:
        self.write(ActionCode.PUSH, b"".join(encode_push_value(v) for v in values))

    def branch_if(self, offset: int) -> None:
        self.write(ActionCode.IF, struct.pack("<h", offset))

    def get_url(self, url: str, target: str) -> None:
        payload = url.encode("utf-8") + b"\x00" + target.encode("utf-8") + b"\x00"
        self.write(ActionCode.GET_URL, payload)

    def finish(self) -> bytes:
        """Return the payload terminated by ActionEnd."""
        return bytes(self.output) + b"\x00"


@dataclass(frozen=True)
class Header:
    version: int = 32
    width_px: int = 10
    height_px: int = 10
    frame_rate: float = 60.0
    frame_count: int = 1


@dataclass(frozen=True)
class Tag:
    code: int
    payload: bytes = b""

    @property
    def name(self) -> str:
        try:
            return TagCode(self.code).name
        except ValueError:
            return f"UNKNOWN_{self.code}"


@dataclass(frozen=True)
class SwfDocument:
    """An ordered list of tags plus the movie header."""

    header: Header
    tags: tuple[Tag, ...] = field(default_factory=tuple)

    def to_bytes(self) -> bytes:
        return serialize(self)


# --- Encoding helpers ---


def _signed_bit_count(value: int) -> int:
    if value == 0:
        return 1
    if value > 0:
        return value.bit_length() + 1
    return (~value).bit_length() + 1


def encode_rect(x_min: int, x_max: int, y_min: int, y_max: int) -> bytes:
    """Encode a RECT record; coordinates are in twips."""
    values = (x_min, x_max, y_min, y_max)
    nbits = max(_signed_bit_count(v) for v in values)
    if nbits > 31:
        raise SwfStructureError("RECT coordinate out of range")
    bits = format(nbits, "05b")
    for v in values:
        bits += format(v & ((1 << nbits) - 1), f"0{nbits}b")
    bits += "0" * (-len(bits) % 8)
    return int(bits, 2).to_bytes(len(bits) // 8, "big")


def encode_fixed8(value: float) -> bytes:
    raw = int(round(value * 256))
    if not 0 <= raw <= 0xFFFF:
        raise SwfStructureError(f"Frame rate {value} out of range")
    return struct.pack("<H", raw)


def encode_tag(tag: Tag) -> bytes:
    length = len(tag.payload)
    if not 0 <= tag.code < 1024:
        raise SwfStructureError(f"Tag code {tag.code} out of range")
    if length <= MAX_SHORT_TAG_LENGTH:
        return struct.pack("<H", (tag.code << 6) | length) + tag.payload
    return struct.pack("<HI", (tag.code << 6) | LONG_TAG_MARKER, length) + tag.payload


def serialize(document: SwfDocument) -> bytes:
    """Serialize a document to an uncompressed SWF byte string."""
    header = document.header
    if not MIN_VERSION <= header.version <= MAX_VERSION:
        raise SwfStructureError(f"SWF version {header.version} out of range")
    body = bytearray()
    body += encode_rect(0, header.width_px * TWIPS_PER_PIXEL, 0, header.height_px * TWIPS_PER_PIXEL)
    body += encode_fixed8(header.frame_rate)
    body += struct.pack("<H", header.frame_count)
    tags = list(document.tags)
    if not tags or tags[-1].code != TagCode.END:
        tags.append(Tag(TagCode.END))
    for tag in tags:
        body += encode_tag(tag)
    total_length = 8 + len(body)
    return SIGNATURE_UNCOMPRESSED + bytes([header.version]) + struct.pack("<I", total_length) + body


# --- Decoding / validation ---


@dataclass(frozen=True)
class ParsedSwf:
    version: int
    file_length: int
    frame_size_twips: tuple[int, int, int, int]
    frame_rate: float
    frame_count: int
    tags: tuple[Tag, ...]


def _read_rect(data: bytes, offset: int) -> tuple[tuple[int, int, int, int], int]:
    if offset >= len(data):
        raise SwfStructureError("Truncated RECT")
    nbits = data[offset] >> 3
    total_bits = 5 + 4 * nbits
    nbytes = (total_bits + 7) // 8
    if offset + nbytes > len(data):
        raise SwfStructureError("Truncated RECT")
    as_int = int.from_bytes(data[offset : offset + nbytes], "big")
    bits = format(as_int, f"0{nbytes * 8}b")
    values = []
    pos = 5
    for _ in range(4):
        field_bits = bits[pos : pos + nbits]
        pos += nbits
        if nbits == 0:
            values.append(0)
            continue
        v = int(field_bits, 2)
        if field_bits[0] == "1":
            v -= 1 << nbits
        values.append(v)
    return (values[0], values[1], values[2], values[3]), offset + nbytes


def parse_swf(data: bytes) -> ParsedSwf:
    """Parse uncompressed SWF bytes, raising SwfStructureError on any inconsistency."""
    if len(data) < 8:
        raise SwfStructureError("File shorter than the fixed header")
    if data[:3] != SIGNATURE_UNCOMPRESSED:
        raise SwfStructureError(f"Unsupported signature {data[:3]!r}")
    version = data[3]
    (file_length,) = struct.unpack_from("<I", data, 4)
    if file_length != len(data):
        raise SwfStructureError(f"Header length {file_length} != actual length {len(data)}")
    rect, offset = _read_rect(data, 8)
    if offset + 4 > len(data):
        raise SwfStructureError("Truncated frame rate/count")
    (raw_rate, frame_count) = struct.unpack_from("<HH", data, offset)
    offset += 4

    tags: list[Tag] = []
    saw_end = False
    while offset < len(data):
        if offset + 2 > len(data):
            raise SwfStructureError(f"Truncated tag header at offset {offset}")
        (code_and_length,) = struct.unpack_from("<H", data, offset)
        offset += 2
        code = code_and_length >> 6
        length = code_and_length & LONG_TAG_MARKER
        if length == LONG_TAG_MARKER:
            if offset + 4 > len(data):
                raise SwfStructureError(f"Truncated long tag length at offset {offset}")
            (length,) = struct.unpack_from("<I", data, offset)
            offset += 4
        if offset + length > len(data):
            raise SwfStructureError(
                f"Tag {code} declares {length} bytes but only {len(data) - offset} remain"
            )
        tags.append(Tag(code, bytes(data[offset : offset + length])))
        offset += length
        if code == TagCode.END:
            saw_end = True
            break
    if not saw_end:
        raise SwfStructureError("Missing End tag")
    if offset != len(data):
        raise SwfStructureError(f"{len(data) - offset} trailing bytes after End tag")

    return ParsedSwf(
        version=version,
        file_length=file_length,
        frame_size_twips=rect,
        frame_rate=raw_rate / 256,
        frame_count=frame_count,
        tags=tuple(tags),
    )


def validate_structure(
    data: bytes,
    *,
    version_range: tuple[int, int] = (MIN_VERSION, MAX_VERSION),
    frame_rate_range: tuple[float, float] = (0.0, MAX_FRAME_RATE),
    frame_size_range: tuple[int, int] = (0, 8191),
    max_size: int | None = None,
    max_tags: int | None = None,
) -> ParsedSwf:
    """
    Check that SWF bytes are structurally well formed and within bounds.

    Tag length fields must match the payload, and header fields must fall
    inside the given ranges (frame size bounds are in pixels).

    Returns:
        The parsed document.

    Raises:
        SwfStructureError: describing the first violation found.
    """
    if max_size is not None and len(data) > max_size:
        raise SwfStructureError(f"Document is {len(data)} bytes, limit is {max_size}")
    parsed = parse_swf(data)
    lo, hi = version_range
    if not lo <= parsed.version <= hi:
        raise SwfStructureError(f"Version {parsed.version} outside [{lo}, {hi}]")
    lo_rate, hi_rate = frame_rate_range
    if math.isnan(parsed.frame_rate) or not lo_rate <= parsed.frame_rate <= hi_rate:
        raise SwfStructureError(f"Frame rate {parsed.frame_rate} outside [{lo_rate}, {hi_rate}]")
    x_min, x_max, y_min, y_max = parsed.frame_size_twips
    if x_min != 0 or y_min != 0:
        raise SwfStructureError("Frame origin must be (0, 0)")
    lo_px, hi_px = frame_size_range
    for label, twips in (("width", x_max), ("height", y_max)):
        if twips % TWIPS_PER_PIXEL or not lo_px <= twips // TWIPS_PER_PIXEL <= hi_px:
            raise SwfStructureError(f"Frame {label} {twips} twips outside [{lo_px}, {hi_px}] px")
    if max_tags is not None and len(parsed.tags) > max_tags:
        raise SwfStructureError(f"{len(parsed.tags)} tags exceeds limit of {max_tags}")
    return parsed
