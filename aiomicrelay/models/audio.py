"""
Audio messages for the aiomicrelay protocol.

Audio travels as one datagram per packet: a fixed 16-byte little-endian header
followed by raw PCM. The header carries a magic constant, a per-encoder sequence
number that wraps at 2**32, a timestamp and the PCM format of the payload.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import NamedTuple

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

# Audio header (little-endian):
# magic(4) + sequence(4) + timestamp(4) + sample_rate(2) + channels(1) + bits_per_sample(1)
AUDIO_HEADER_FORMAT = "<IIIHBB"
AUDIO_HEADER_SIZE = struct.calcsize(AUDIO_HEADER_FORMAT)
AUDIO_MAGIC = 0x414D5359
"""ASCII 'AMSY' read as a 32-bit integer."""

SEQUENCE_MODULUS = 1 << 32
FRAMES_PER_SECOND = 50
"""Packets per second produced by the encoder (20 ms frames)."""


@dataclass
class AudioSettings(DataClassORJSONMixin):
    """PCM format of an audio stream plus the sender side gain."""

    sample_rate: int = 48000
    """Sample rate in Hz (e.g., 44100, 48000)."""
    channels: int = 1
    """Number of channels (1 = mono, 2 = stereo)."""
    bits_per_sample: int = 16
    """Bits per sample (e.g., 16, 24)."""
    gain: float = 1.0
    """Gain multiplier applied to 16-bit samples before sending."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if not 0 < self.sample_rate <= 0xFFFF:
            raise ValueError(f"sample_rate must be in 1..65535, got {self.sample_rate}")
        if self.channels not in (1, 2):
            raise ValueError(f"channels must be 1 or 2, got {self.channels}")
        if self.bits_per_sample not in (8, 16, 24, 32):
            raise ValueError(f"bits_per_sample must be 8, 16, 24 or 32, got {self.bits_per_sample}")
        if self.gain < 0:
            raise ValueError(f"gain must not be negative, got {self.gain}")

    @property
    def bytes_per_second(self) -> int:
        """Return the PCM byte rate."""
        return self.sample_rate * self.channels * (self.bits_per_sample // 8)

    @property
    def frame_size(self) -> int:
        """Return bytes per 20 ms frame."""
        samples_per_frame = self.sample_rate // FRAMES_PER_SECOND
        return samples_per_frame * (self.bits_per_sample // 8) * self.channels

    @property
    def format_description(self) -> str:
        """Return a short human readable format string."""
        return f"{self.sample_rate}Hz {self.channels}ch {self.bits_per_sample}bit"

    class Config(BaseConfig):
        """Config for parsing json settings."""

        forbid_extra_keys = True


class AudioHeader(NamedTuple):
    """Header structure for audio packets."""

    magic: int
    sequence: int
    timestamp: int
    sample_rate: int
    channels: int
    bits_per_sample: int


@dataclass(slots=True)
class AudioPacket:
    """One sequenced chunk of raw PCM audio."""

    sequence: int
    """Per-encoder sequence number, wraps at 2**32."""
    timestamp: int
    """Sender timestamp in milliseconds, truncated to 32 bits."""
    sample_rate: int
    channels: int
    bits_per_sample: int
    payload: bytes = b""
    """Raw PCM samples."""
    magic: int = AUDIO_MAGIC

    @property
    def settings(self) -> AudioSettings:
        """Return the PCM format carried by this packet."""
        return AudioSettings(
            sample_rate=self.sample_rate,
            channels=self.channels,
            bits_per_sample=self.bits_per_sample,
        )


def unpack_audio_header(data: bytes) -> AudioHeader:
    """
    Unpack an audio header from bytes.

    Args:
        data: At least 16 bytes starting with the audio header

    Returns:
        AudioHeader with typed fields

    Raises:
        ValueError: If data is shorter than the header
    """
    if len(data) < AUDIO_HEADER_SIZE:
        raise ValueError(f"Expected at least {AUDIO_HEADER_SIZE} bytes, got {len(data)}")
    return AudioHeader(*struct.unpack_from(AUDIO_HEADER_FORMAT, data))


def pack_audio_header(header: AudioHeader) -> bytes:
    """
    Pack an audio header into bytes.

    Raises:
        struct.error: If a field does not fit its wire width
    """
    return struct.pack(AUDIO_HEADER_FORMAT, *header)


def encode_packet(packet: AudioPacket) -> bytes:
    """Serialize an audio packet: 16-byte header followed by the payload verbatim."""
    header = AudioHeader(
        magic=packet.magic,
        sequence=packet.sequence,
        timestamp=packet.timestamp,
        sample_rate=packet.sample_rate,
        channels=packet.channels,
        bits_per_sample=packet.bits_per_sample,
    )
    return pack_audio_header(header) + bytes(packet.payload)


def decode_packet(data: bytes) -> AudioPacket | None:
    """
    Parse an audio packet.

    Returns None if the buffer is shorter than the header or the magic does not match.
    """
    if len(data) < AUDIO_HEADER_SIZE:
        return None
    header = unpack_audio_header(data)
    if header.magic != AUDIO_MAGIC:
        return None
    return AudioPacket(
        sequence=header.sequence,
        timestamp=header.timestamp,
        sample_rate=header.sample_rate,
        channels=header.channels,
        bits_per_sample=header.bits_per_sample,
        payload=bytes(data[AUDIO_HEADER_SIZE:]),
    )


def sequence_distance(start: int, end: int) -> int:
    """
    Return how far ``end`` is ahead of ``start`` on the 32-bit sequence circle.

    The result is always in ``0 .. 2**32 - 1``; a value close to 2**32 means
    ``end`` is actually a little behind ``start``.
    """
    return (end - start) % SEQUENCE_MODULUS
