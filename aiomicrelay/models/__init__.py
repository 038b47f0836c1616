"""Models and wire codecs for the aiomicrelay protocols."""

from __future__ import annotations

__all__ = [
    "AUDIO_HEADER_FORMAT",
    "AUDIO_HEADER_SIZE",
    "AUDIO_MAGIC",
    "CONTROL_HEADER_FORMAT",
    "CONTROL_HEADER_SIZE",
    "DEFAULT_AUDIO_PORT",
    "DEFAULT_CONTROL_PORT",
    "DEFAULT_DISCOVERY_PORT",
    "SEQUENCE_MODULUS",
    "AudioHeader",
    "AudioPacket",
    "AudioSettings",
    "ChannelState",
    "ConnectionState",
    "ConnectionStatus",
    "ControlMessage",
    "ControlMessageType",
    "DeviceDescriptor",
    "audio",
    "control",
    "decode_message",
    "decode_packet",
    "device",
    "encode_message",
    "encode_packet",
    "pack_audio_header",
    "sequence_distance",
    "state",
    "types",
    "unpack_audio_header",
    "unpack_control_header",
]

from . import audio, control, device, state, types
from .audio import (
    AUDIO_HEADER_FORMAT,
    AUDIO_HEADER_SIZE,
    AUDIO_MAGIC,
    SEQUENCE_MODULUS,
    AudioHeader,
    AudioPacket,
    AudioSettings,
    decode_packet,
    encode_packet,
    pack_audio_header,
    sequence_distance,
    unpack_audio_header,
)
from .control import (
    CONTROL_HEADER_FORMAT,
    CONTROL_HEADER_SIZE,
    ControlMessage,
    decode_message,
    encode_message,
    unpack_control_header,
)
from .device import DeviceDescriptor
from .state import ConnectionState
from .types import ChannelState, ConnectionStatus, ControlMessageType

# Default ports
DEFAULT_AUDIO_PORT = 5000
DEFAULT_CONTROL_PORT = 5001
DEFAULT_DISCOVERY_PORT = 5002
