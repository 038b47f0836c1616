from __future__ import annotations

import struct

import pytest

from aiomicrelay.models import (
    CONTROL_HEADER_SIZE,
    ControlMessage,
    ControlMessageType,
    decode_message,
    encode_message,
    unpack_control_header,
)


def test_control_header_layout() -> None:
    data = encode_message(ControlMessage(type=ControlMessageType.START_STREAM, payload="5000"))
    assert CONTROL_HEADER_SIZE == 5
    assert data == struct.pack("<BI", 2, 4) + b"5000"
    assert unpack_control_header(data) == (2, 4)


@pytest.mark.parametrize(
    "message_type", [t for t in ControlMessageType if t is not ControlMessageType.UNKNOWN]
)
def test_every_known_type_roundtrips(message_type: ControlMessageType) -> None:
    message = ControlMessage(type=message_type, payload="héllo wörld")
    decoded = decode_message(encode_message(message))
    assert decoded == message


def test_type_bytes_match_wire_values() -> None:
    expected = {
        ControlMessageType.PING: 0,
        ControlMessageType.PONG: 1,
        ControlMessageType.START_STREAM: 2,
        ControlMessageType.STOP_STREAM: 3,
        ControlMessageType.STREAM_STARTED: 4,
        ControlMessageType.STREAM_STOPPED: 5,
        ControlMessageType.DISCOVERY_REQUEST: 10,
        ControlMessageType.DISCOVERY_RESPONSE: 11,
        ControlMessageType.ERROR: 255,
    }
    for message_type, value in expected.items():
        assert encode_message(ControlMessage(type=message_type))[0] == value


def test_empty_payload() -> None:
    data = encode_message(ControlMessage(type=ControlMessageType.PING))
    assert data == b"\x00\x00\x00\x00\x00"
    assert decode_message(data) == ControlMessage(type=ControlMessageType.PING)


def test_unknown_type_is_preserved() -> None:
    data = struct.pack("<BI", 42, 3) + b"abc"
    message = decode_message(data)
    assert message is not None
    assert message.type is ControlMessageType.UNKNOWN
    assert message.raw_type == 42
    assert message.payload == "abc"
    assert encode_message(message) == data


def test_unknown_type_without_raw_byte_cannot_be_encoded() -> None:
    with pytest.raises(ValueError):
        encode_message(ControlMessage(type=ControlMessageType.UNKNOWN))


def test_decode_rejects_short_header() -> None:
    assert decode_message(b"") is None
    assert decode_message(b"\x00\x00\x00\x00") is None


def test_decode_rejects_overlong_declared_length() -> None:
    data = struct.pack("<BI", 0, 10) + b"short"
    assert decode_message(data) is None


def test_decode_ignores_trailing_bytes() -> None:
    data = encode_message(ControlMessage(type=ControlMessageType.ERROR, payload="boom")) + b"extra"
    message = decode_message(data)
    assert message == ControlMessage(type=ControlMessageType.ERROR, payload="boom")


def test_decode_rejects_invalid_utf8() -> None:
    data = struct.pack("<BI", 0, 2) + b"\xff\xfe"
    assert decode_message(data) is None


def test_payload_length_counts_bytes_not_characters() -> None:
    data = encode_message(ControlMessage(type=ControlMessageType.ERROR, payload="ü"))
    assert unpack_control_header(data) == (255, 2)
