"""
Decoders for the binary encodings found in containerd's bolt databases.

Every function takes the raw bytes of one value and returns its display
string, raising ValueError when the bytes do not have the expected shape.
Callers attach the bucket path and key to that error.
"""

import json
import re
import struct
from datetime import datetime, timedelta

from google.protobuf import any_pb2, empty_pb2
from google.protobuf.message import DecodeError as ProtobufDecodeError
from google.protobuf.unknown_fields import UnknownFieldSet

from boltkit.records import render_bytes

MAX_VARINT_LEN = 10

# Go's time.Time.MarshalBinary: version, seconds since 0001-01-01 UTC,
# nanoseconds, zone offset in minutes (-1 for UTC), and for version 2 the
# remaining offset seconds.
GO_TIME_V1 = 1
GO_TIME_V2 = 2
GO_TIME = struct.Struct(">BqiH")
GO_TIME_UTC_OFFSET = 0xFFFF
GO_EPOCH = datetime(1, 1, 1)

DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$")
DIGEST_HEX_LENGTHS = {"sha256": 64, "sha384": 96, "sha512": 128}
HEX_PATTERN = re.compile(r"^[a-f0-9]+$")

SNAPSHOT_KINDS = {1: "view", 2: "active", 3: "committed"}

WIRE_LENGTH_DELIMITED = 2
WIRE_START_GROUP = 3


def decode_uvarint(data: bytes, offset: int = 0):
    """
    Reads one unsigned LEB128 varint starting at `offset`.

    Returns:
        tuple: (value, offset just past the varint)
    """
    value = 0
    shift = 0
    for i in range(MAX_VARINT_LEN):
        if offset + i >= len(data):
            raise ValueError("truncated varint")
        b = data[offset + i]
        if i == MAX_VARINT_LEN - 1 and b > 1:
            raise ValueError("varint overflows 64 bits")
        value |= (b & 0x7F) << shift
        if b < 0x80:
            return value, offset + i + 1
        shift += 7
    raise ValueError("varint overflows 64 bits")


def decode_varint(data: bytes) -> int:
    """Decodes a zigzag-encoded signed varint (Go's binary.PutVarint) that fills `data` exactly."""
    if not data:
        raise ValueError("empty varint")
    ux, end = decode_uvarint(data)
    if end != len(data):
        raise ValueError(f"{len(data) - end} trailing bytes after varint")
    x = ux >> 1
    if ux & 1:
        x = ~x
    return x


def decode_uvarint_exact(data: bytes) -> int:
    if not data:
        raise ValueError("empty varint")
    value, end = decode_uvarint(data)
    if end != len(data):
        raise ValueError(f"{len(data) - end} trailing bytes after varint")
    return value


def decode_uint_be(data: bytes) -> int:
    if len(data) != 8:
        raise ValueError(f"expected 8 bytes for a big-endian integer, got {len(data)}")
    return struct.unpack(">Q", data)[0]


def decode_varint_pair(data: bytes) -> str:
    """Decodes two back-to-back unsigned varints, rendered `<first>/<second>`."""
    first, end = decode_uvarint(data)
    second, end = decode_uvarint(data, end)
    if end != len(data):
        raise ValueError(f"{len(data) - end} trailing bytes after varint pair")
    return f"{first}/{second}"


def decode_go_time(data: bytes) -> str:
    """
    Decodes a Go `time.Time` marshaled with MarshalBinary.

    The result is RFC 3339 with nanoseconds, e.g. `2024-03-01T08:15:00.000000000Z`
    or `2024-03-01T16:15:00.000000000+08:00` for a non-UTC zone.
    """
    if not data:
        raise ValueError("empty time value")
    version = data[0]
    if version == GO_TIME_V1:
        expected = GO_TIME.size
    elif version == GO_TIME_V2:
        expected = GO_TIME.size + 1
    else:
        raise ValueError(f"unsupported time encoding version {version}")
    if len(data) != expected:
        raise ValueError(f"time encoding version {version} needs {expected} bytes, got {len(data)}")

    _, seconds, nanos, offset_minutes = GO_TIME.unpack_from(data, 0)
    if not 0 <= nanos < 1_000_000_000:
        raise ValueError(f"nanoseconds {nanos} out of range")

    if offset_minutes == GO_TIME_UTC_OFFSET:
        offset = None
    else:
        offset = struct.unpack(">h", struct.pack(">H", offset_minutes))[0] * 60
        if version == GO_TIME_V2:
            offset += data[-1]

    try:
        wall = GO_EPOCH + timedelta(seconds=seconds + (offset or 0))
    except OverflowError as e:
        raise ValueError(f"time {seconds}s since year 1 is out of range") from e

    text = (f"{wall.year:04d}-{wall.month:02d}-{wall.day:02d}T"
            f"{wall.hour:02d}:{wall.minute:02d}:{wall.second:02d}.{nanos:09d}")
    return text + _format_offset(offset)


def _format_offset(offset):
    if offset is None:
        return "Z"
    sign = "-" if offset < 0 else "+"
    hours, rest = divmod(abs(offset), 3600)
    minutes, seconds = divmod(rest, 60)
    text = f"{sign}{hours:02d}:{minutes:02d}"
    if seconds:
        text += f":{seconds:02d}"
    return text


def normalize_digest(data: bytes) -> str:
    """Validates an OCI content digest (`algorithm:encoded`) and returns it as text."""
    try:
        text = data.decode("ascii")
    except UnicodeDecodeError as e:
        raise ValueError("digest is not ASCII") from e
    if not DIGEST_PATTERN.match(text):
        raise ValueError(f"malformed digest {text!r}")
    algorithm, encoded = text.split(":", 1)
    length = DIGEST_HEX_LENGTHS.get(algorithm)
    if length is not None and (len(encoded) != length or not HEX_PATTERN.match(encoded)):
        raise ValueError(f"{algorithm} digest must be {length} lowercase hex characters")
    return text


def decode_snapshot_kind(data: bytes) -> str:
    if len(data) != 1:
        raise ValueError(f"snapshot kind must be a single byte, got {len(data)}")
    kind = SNAPSHOT_KINDS.get(data[0])
    if kind is None:
        raise ValueError(f"unknown snapshot kind {data[0]}")
    return kind


def decode_any(data: bytes) -> str:
    """
    Decodes a `google.protobuf.Any` as `type_url=<url> value=<payload>`.

    JSON payloads (typeurl's encoding for OCI specs) are shown compacted;
    anything else is shown as its protobuf fields.
    """
    try:
        message = any_pb2.Any.FromString(data)
    except ProtobufDecodeError as e:
        raise ValueError(f"not a protobuf Any: {e}") from e
    if not message.type_url:
        raise ValueError("protobuf Any has no type_url")
    return f"type_url={message.type_url} value={render_payload(message.value)}"


def render_payload(payload: bytes) -> str:
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        parsed = None
    if isinstance(parsed, (dict, list)):
        return json.dumps(parsed, separators=(",", ":"))
    try:
        return render_proto_fields(payload)
    except ValueError:
        return render_bytes(payload)


def render_proto_fields(data: bytes) -> str:
    """Renders a protobuf message of unknown type as `{<field number>=<value> ...}`."""
    message = empty_pb2.Empty()
    try:
        message.ParseFromString(data)
    except ProtobufDecodeError as e:
        raise ValueError(f"not a protobuf message: {e}") from e
    return _render_field_set(UnknownFieldSet(message))


def _render_field_set(fields) -> str:
    parts = []
    for i in range(len(fields)):
        field = fields[i]
        if field.wire_type == WIRE_LENGTH_DELIMITED:
            value = render_bytes(field.data)
        elif field.wire_type == WIRE_START_GROUP:
            value = _render_field_set(field.data)
        else:
            value = str(field.data)
        parts.append(f"{field.field_number}={value}")
    return "{" + " ".join(parts) + "}"
