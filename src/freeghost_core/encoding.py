"""
Versioned, length-prefixed binary encoding for FREEGHOST objects.

Every cryptographic object crossing a module or process boundary is wrapped
in an envelope::

    b"FG" | type tag (u8) | format version (u8) | level bits (u16) | u32 length | body

so that scheme upgrades (a new security level or a replaced primitive) stay
distinguishable on the wire. Bodies are built with `BinaryWriter` and read
back with `BinaryReader`, which rejects truncation and trailing bytes.
"""

import struct
from enum import IntEnum
from typing import List, Optional, Tuple

from .exceptions import EncodingError

MAGIC = b"FG"
FORMAT_VERSION = 1

_HEADER = struct.Struct(">2sBBHI")


class ObjectType(IntEnum):
    """Type tags of the envelope header."""

    TEMPLATE = 1
    PUBLIC_KEY = 2
    KEY_PAIR = 3
    SIGNATURE = 4
    CHALLENGE = 5
    STATEMENT = 6
    ZK_PROOF = 7
    VERIFICATION_RESPONSE = 8
    ENCRYPTED_ARTIFACT = 9
    KEY_BACKUP = 10
    ATTRIBUTE_ATTESTATION = 11


class BinaryWriter:
    """Accumulates a length-prefixed body."""

    def __init__(self) -> None:
        self._parts: List[bytes] = []

    def write_u8(self, value: int) -> "BinaryWriter":
        self._parts.append(struct.pack(">B", value))
        return self

    def write_u16(self, value: int) -> "BinaryWriter":
        self._parts.append(struct.pack(">H", value))
        return self

    def write_u32(self, value: int) -> "BinaryWriter":
        self._parts.append(struct.pack(">I", value))
        return self

    def write_u64(self, value: int) -> "BinaryWriter":
        self._parts.append(struct.pack(">Q", value))
        return self

    def write_f64(self, value: float) -> "BinaryWriter":
        self._parts.append(struct.pack(">d", value))
        return self

    def write_bytes(self, value: bytes) -> "BinaryWriter":
        self._parts.append(struct.pack(">I", len(value)))
        self._parts.append(bytes(value))
        return self

    def write_optional_bytes(self, value: Optional[bytes]) -> "BinaryWriter":
        if value is None:
            return self.write_u8(0)
        self.write_u8(1)
        return self.write_bytes(value)

    def write_str(self, value: str) -> "BinaryWriter":
        return self.write_bytes(value.encode("utf-8"))

    def write_int(self, value: int) -> "BinaryWriter":
        """Write a non-negative integer as length-prefixed big-endian bytes."""
        if value < 0:
            raise EncodingError("Cannot encode negative integer", object_type="int")
        length = max(1, (value.bit_length() + 7) // 8)
        return self.write_bytes(value.to_bytes(length, "big"))

    def write_int_list(self, values) -> "BinaryWriter":
        values = list(values)
        self.write_u16(len(values))
        for value in values:
            self.write_int(value)
        return self

    def getvalue(self) -> bytes:
        return b"".join(self._parts)


class BinaryReader:
    """Reads a body produced by `BinaryWriter`."""

    def __init__(self, data: bytes, object_type: str = "body") -> None:
        self._data = memoryview(bytes(data))
        self._offset = 0
        self._object_type = object_type

    def _take(self, size: int) -> bytes:
        end = self._offset + size
        if size < 0 or end > len(self._data):
            raise EncodingError(
                f"Truncated data: need {size} bytes at offset {self._offset}",
                object_type=self._object_type,
            )
        chunk = self._data[self._offset : end].tobytes()
        self._offset = end
        return chunk

    def read_u8(self) -> int:
        return struct.unpack(">B", self._take(1))[0]

    def read_u16(self) -> int:
        return struct.unpack(">H", self._take(2))[0]

    def read_u32(self) -> int:
        return struct.unpack(">I", self._take(4))[0]

    def read_u64(self) -> int:
        return struct.unpack(">Q", self._take(8))[0]

    def read_f64(self) -> float:
        return struct.unpack(">d", self._take(8))[0]

    def read_bytes(self) -> bytes:
        return self._take(self.read_u32())

    def read_optional_bytes(self) -> Optional[bytes]:
        flag = self.read_u8()
        if flag == 0:
            return None
        if flag != 1:
            raise EncodingError(
                f"Invalid optional flag {flag}", object_type=self._object_type
            )
        return self.read_bytes()

    def read_str(self) -> str:
        raw = self.read_bytes()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EncodingError(
                "Invalid UTF-8 string", object_type=self._object_type
            ) from e

    def read_int(self) -> int:
        raw = self.read_bytes()
        if not raw:
            raise EncodingError("Empty integer encoding", object_type=self._object_type)
        if len(raw) > 1 and raw[0] == 0:
            raise EncodingError(
                "Non-minimal integer encoding", object_type=self._object_type
            )
        return int.from_bytes(raw, "big")

    def read_int_list(self) -> Tuple[int, ...]:
        count = self.read_u16()
        return tuple(self.read_int() for _ in range(count))

    def expect_end(self) -> None:
        if self._offset != len(self._data):
            raise EncodingError(
                f"{len(self._data) - self._offset} trailing bytes",
                object_type=self._object_type,
            )


def encode_envelope(object_type: ObjectType, level_bits: int, body: bytes) -> bytes:
    """
    Wrap a body into the versioned envelope.

    Parameters
    ----------
    object_type : ObjectType
        Type tag of the encoded object.
    level_bits : int
        Security level of the object (0 when not applicable).
    body : bytes
        Encoded body.

    Returns
    -------
    bytes
        Envelope bytes.
    """
    return _HEADER.pack(MAGIC, int(object_type), FORMAT_VERSION, level_bits, len(body)) + body


def decode_envelope(
    data: bytes, expected_type: ObjectType, level_bits: Optional[int] = None
) -> Tuple[int, BinaryReader]:
    """
    Unwrap an envelope and return its level and a reader over the body.

    Parameters
    ----------
    data : bytes
        Envelope bytes.
    expected_type : ObjectType
        Type tag the envelope must carry.
    level_bits : int, optional
        Level the header must carry. Objects encoded without a level expect 0.

    Raises
    ------
    EncodingError
        On bad magic, wrong type, unknown version, unexpected level, or a
        length mismatch.
    """
    name = expected_type.name.lower()
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise EncodingError(f"Expected bytes, got {type(data).__name__}", object_type=name)

    data = bytes(data)
    if len(data) < _HEADER.size:
        raise EncodingError("Data too short for envelope header", object_type=name)

    magic, tag, version, header_bits, length = _HEADER.unpack_from(data)
    if magic != MAGIC:
        raise EncodingError("Bad envelope magic", object_type=name)
    if tag != int(expected_type):
        raise EncodingError(f"Unexpected type tag {tag}", object_type=name)
    if version != FORMAT_VERSION:
        raise EncodingError(f"Unsupported format version {version}", object_type=name)
    if level_bits is not None and header_bits != level_bits:
        raise EncodingError(f"Unexpected level {header_bits} in header", object_type=name)
    if len(data) != _HEADER.size + length:
        raise EncodingError("Envelope length mismatch", object_type=name)

    return header_bits, BinaryReader(data[_HEADER.size :], object_type=name)
