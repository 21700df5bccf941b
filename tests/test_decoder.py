import math

import pytest

from meterflow.decoder import (
    PAYLOAD_LENGTH,
    DecodedPayload,
    PayloadDecodeError,
    decode_payload,
    encode_payload,
)


def _hex(uid, reading, avg_current, max_current, max_voltage, avg_voltage):
    return encode_payload(
        DecodedPayload(uid, reading, avg_current, max_current, max_voltage, avg_voltage)
    )


def test_decode_valid_payload():
    decoded = decode_payload(_hex("XUID", 25.67, 1.23, 2.55, 240.5, 230.1))
    assert decoded.uid == "XUID"
    assert decoded.reading == pytest.approx(25.67, abs=0.001)
    assert decoded.average_current == pytest.approx(1.23, abs=0.001)
    assert decoded.max_current == pytest.approx(2.55, abs=0.001)
    assert decoded.max_voltage == pytest.approx(240.5, abs=0.001)
    assert decoded.average_voltage == pytest.approx(230.1, abs=0.001)


@pytest.mark.parametrize(
    "hex_payload, expected",
    [
        ("010203040", "failed to decode hex payload"),
        ("010203040506070G", "failed to decode hex payload"),
        ("01 02", "failed to decode hex payload"),
        ("", "invalid payload length"),
    ],
)
def test_decode_invalid_hex(hex_payload, expected):
    with pytest.raises(PayloadDecodeError, match=expected):
        decode_payload(hex_payload)


@pytest.mark.parametrize("length", [PAYLOAD_LENGTH - 1, PAYLOAD_LENGTH + 1, 0])
def test_decode_invalid_length(length):
    with pytest.raises(PayloadDecodeError, match="invalid payload length"):
        decode_payload(bytes(length).hex())


def test_decode_error_is_value_error():
    with pytest.raises(ValueError):
        decode_payload("zz")


def test_zero_values():
    decoded = decode_payload(_hex("EDGE", 0.0, 0.0, 0.0, 0.0, 0.0))
    assert decoded.reading == 0.0
    assert decoded.uid == "EDGE"


def test_negative_values():
    decoded = decode_payload(_hex("EDGE", -123.45, -0.5, -10.0, -300.0, -200.0))
    assert decoded.reading == pytest.approx(-123.45, abs=0.001)
    assert decoded.average_current == -0.5
    assert decoded.max_voltage == -300.0
    assert decoded.uid == "EDGE"


def test_nan_value():
    decoded = decode_payload(_hex("EDGE", math.nan, 1.0, 2.0, 3.0, 4.0))
    assert math.isnan(decoded.reading)
    assert decoded.uid == "EDGE"


def test_inf_value():
    decoded = decode_payload(_hex("EDGE", math.inf, 1.0, 2.0, 3.0, 4.0))
    assert math.isinf(decoded.reading) and decoded.reading > 0
    assert decoded.uid == "EDGE"


def test_round_trip():
    original = decode_payload(_hex("P001", 123.45, 1.2, 2.3, 240.1, 230.5))
    assert decode_payload(encode_payload(original)) == original


def test_encoded_length():
    assert len(_hex("ABCD", 1, 1, 1, 1, 1)) == PAYLOAD_LENGTH * 2


def test_uid_bytes_lead_payload():
    assert _hex("ABCD", 0, 0, 0, 0, 0).startswith("ABCD".encode().hex())


@pytest.mark.parametrize("uid", ["ABC", "ABCDE"])
def test_encode_rejects_wrong_uid_length(uid):
    with pytest.raises(ValueError, match="UID must be 4 characters long"):
        _hex(uid, 1, 1, 1, 1, 1)