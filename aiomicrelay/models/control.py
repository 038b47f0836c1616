"""
Control messages for the aiomicrelay protocol.

Control messages drive the session (keepalive, stream start/stop) over the
reliable channel and carry device descriptors over the discovery broadcast.
On the wire a message is a one byte type, a four byte little-endian payload
length and the UTF-8 payload.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass

from .types import ControlMessageType

logger = logging.getLogger(__name__)

# Control header (little-endian): type(1) + payload_length(4) = 5 bytes
CONTROL_HEADER_FORMAT = "<BI"
CONTROL_HEADER_SIZE = struct.calcsize(CONTROL_HEADER_FORMAT)


@dataclass(slots=True)
class ControlMessage:
    """A single control channel message."""

    type: ControlMessageType
    payload: str = ""
    """UTF-8 text payload, empty for most message types."""
    raw_type: int | None = None
    """Type byte as received; only set for ControlMessageType.UNKNOWN."""

    @property
    def type_byte(self) -> int:
        """Return the byte written for this message's type."""
        if self.type is ControlMessageType.UNKNOWN:
            if self.raw_type is None:
                raise ValueError("UNKNOWN control messages need a raw_type to be encoded")
            return self.raw_type
        return self.type.value


def unpack_control_header(data: bytes) -> tuple[int, int]:
    """
    Unpack the control header into ``(type_byte, payload_length)``.

    Raises:
        ValueError: If data is shorter than the header
    """
    if len(data) < CONTROL_HEADER_SIZE:
        raise ValueError(f"Expected at least {CONTROL_HEADER_SIZE} bytes, got {len(data)}")
    type_byte, length = struct.unpack_from(CONTROL_HEADER_FORMAT, data)
    return type_byte, length


def parse_message_type(type_byte: int) -> ControlMessageType:
    """Map a wire byte to its message type, UNKNOWN if not recognized."""
    try:
        return ControlMessageType(type_byte)
    except ValueError:
        return ControlMessageType.UNKNOWN


def encode_message(message: ControlMessage) -> bytes:
    """Serialize a control message: type, payload length, payload."""
    payload = message.payload.encode("utf-8")
    return struct.pack(CONTROL_HEADER_FORMAT, message.type_byte, len(payload)) + payload


def build_message(type_byte: int, payload: bytes) -> ControlMessage | None:
    """Build a message from an already framed type byte and payload."""
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        logger.debug("Dropping control message with invalid UTF-8 payload")
        return None
    message_type = parse_message_type(type_byte)
    return ControlMessage(
        type=message_type,
        payload=text,
        raw_type=type_byte if message_type is ControlMessageType.UNKNOWN else None,
    )


def decode_message(data: bytes) -> ControlMessage | None:
    """
    Parse a control message from the start of ``data``.

    Returns None if fewer than five bytes are available, the declared payload
    length exceeds the remaining bytes, or the payload is not valid UTF-8.
    Bytes after the declared payload are ignored.
    """
    if len(data) < CONTROL_HEADER_SIZE:
        return None
    type_byte, length = unpack_control_header(data)
    if length > len(data) - CONTROL_HEADER_SIZE:
        return None
    return build_message(type_byte, bytes(data[CONTROL_HEADER_SIZE : CONTROL_HEADER_SIZE + length]))
