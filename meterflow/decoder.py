"""Decoding of the XDevice binary payload."""

from __future__ import annotations

import struct
from dataclasses import dataclass

#: UID (4) + five big-endian float32 values (4 each).
PAYLOAD_LENGTH = 24

_UID_LENGTH = 4
_FLOATS = struct.Struct(">5f")
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


class PayloadDecodeError(ValueError):
    """Raised when a raw device payload cannot be decoded."""


@dataclass(frozen=True)
class DecodedPayload:
    """The fields carried in one XDevice payload."""

    uid: str
    reading: float
    average_current: float
    max_current: float
    max_voltage: float
    average_voltage: float


def _unhex(text: str) -> bytes:
    bad = next((ch for ch in text if ch not in _HEX_DIGITS), None)
    if bad is not None:
        raise PayloadDecodeError(f"failed to decode hex payload: invalid byte: {bad!r}")
    if len(text) % 2:
        raise PayloadDecodeError("failed to decode hex payload: odd length hex string")
    return bytes.fromhex(text)


def decode_payload(raw_payload_hex: str) -> DecodedPayload:
    """Decode a hex-encoded XDevice payload."""
    data = _unhex(raw_payload_hex)
    if len(data) != PAYLOAD_LENGTH:
        raise PayloadDecodeError(
            f"invalid payload length: expected {PAYLOAD_LENGTH} bytes, got {len(data)} bytes"
        )
    uid = data[:_UID_LENGTH].decode("utf-8", "surrogateescape")
    return DecodedPayload(uid, *_FLOATS.unpack_from(data, _UID_LENGTH))


def encode_payload(payload: DecodedPayload) -> str:
    """Encode a payload into the hex form that decode_payload reads."""
    uid = payload.uid.encode("utf-8", "surrogateescape")
    if len(uid) != _UID_LENGTH:
        raise ValueError(f"UID must be 4 characters long, got {len(uid)} bytes")
    values = _FLOATS.pack(
        payload.reading,
        payload.average_current,
        payload.max_current,
        payload.max_voltage,
        payload.average_voltage,
    )
    return (uid + values).hex()