"""Protobuf wire-format and Connect envelope primitives."""

import struct
from typing import Iterator, Tuple, Union

VARINT = 0
FIXED64 = 1
LENGTH_DELIMITED = 2
FIXED32 = 5

# Connect envelope: 1 flag byte followed by a big-endian uint32 payload length.
ENVELOPE_HEADER_SIZE = 5
FLAG_COMPRESSED = 0x01
FLAG_END_STREAM = 0x02
KNOWN_FLAGS = FLAG_COMPRESSED | FLAG_END_STREAM
MAX_ENVELOPE_PAYLOAD = 0xFFFFFFFF

_HEADER = struct.Struct(">BI")


def encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError("varint must be non-negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def encode_key(field_number: int, wire_type: int) -> bytes:
    return encode_varint((field_number << 3) | wire_type)


def encode_varint_field(field_number: int, value: int) -> bytes:
    return encode_key(field_number, VARINT) + encode_varint(value)


def encode_bytes_field(field_number: int, value: bytes) -> bytes:
    return encode_key(field_number, LENGTH_DELIMITED) + encode_varint(len(value)) + value


def encode_string_field(field_number: int, value: str) -> bytes:
    return encode_bytes_field(field_number, value.encode("utf-8"))


def decode_varint(data: bytes, offset: int) -> Tuple[int, int]:
    """Read a varint at `offset`. Returns (value, new_offset)."""
    result = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise ValueError("truncated varint")
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, offset
        shift += 7
        if shift >= 64:
            raise ValueError("varint too long")


def iter_fields(data: bytes) -> Iterator[Tuple[int, int, Union[int, bytes]]]:
    """
    Iterate over the top-level fields of a protobuf message.

    Yields (field_number, wire_type, value) where value is an int for varint
    fields and raw bytes for every other wire type.

    Raises:
        ValueError: if the message is truncated or uses a group wire type
    """
    offset = 0
    end = len(data)
    while offset < end:
        key, offset = decode_varint(data, offset)
        field_number, wire_type = key >> 3, key & 0x07
        if field_number == 0:
            raise ValueError("invalid field number 0")
        if wire_type == VARINT:
            value, offset = decode_varint(data, offset)
            yield field_number, wire_type, value
        elif wire_type == LENGTH_DELIMITED:
            length, offset = decode_varint(data, offset)
            if offset + length > end:
                raise ValueError("truncated length-delimited field")
            yield field_number, wire_type, bytes(data[offset : offset + length])
            offset += length
        elif wire_type in (FIXED64, FIXED32):
            size = 8 if wire_type == FIXED64 else 4
            if offset + size > end:
                raise ValueError("truncated fixed-width field")
            yield field_number, wire_type, bytes(data[offset : offset + size])
            offset += size
        else:
            raise ValueError(f"unsupported wire type {wire_type}")


def pack_envelope(payload: bytes, flags: int = 0) -> bytes:
    if len(payload) > MAX_ENVELOPE_PAYLOAD:
        raise ValueError("payload too large for a Connect envelope")
    return _HEADER.pack(flags, len(payload)) + payload


def unpack_envelope_header(data: Union[bytes, bytearray]) -> Tuple[int, int]:
    """Return (flags, payload_length) from the first 5 bytes of `data`."""
    return _HEADER.unpack_from(data, 0)
