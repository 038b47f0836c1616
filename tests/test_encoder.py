from __future__ import annotations

import struct

from aiomicrelay.audio import AudioEncoder
from aiomicrelay.models import AudioSettings


def _pcm16(*samples: int) -> bytes:
    return struct.pack(f"<{len(samples)}h", *samples)


def test_frame_size_is_20ms() -> None:
    assert AudioEncoder().frame_size() == 1920
    assert AudioEncoder(AudioSettings(sample_rate=16000, channels=2)).frame_size() == 1280


def test_sequence_increments_and_wraps() -> None:
    encoder = AudioEncoder(initial_sequence=4294967294)
    sequences = [encoder.create_packet(b"", 0).sequence for _ in range(4)]
    assert sequences == [4294967294, 4294967295, 0, 1]
    assert encoder.next_sequence == 2


def test_packet_carries_format_and_payload() -> None:
    encoder = AudioEncoder(AudioSettings(sample_rate=44100, channels=2, bits_per_sample=16))
    packet = encoder.create_packet(b"\x01\x02\x03\x04", 2**32 + 5)
    assert packet.sample_rate == 44100
    assert packet.channels == 2
    assert packet.bits_per_sample == 16
    assert packet.payload == b"\x01\x02\x03\x04"
    assert packet.timestamp == 5


def test_downmix_averages_pairs() -> None:
    encoder = AudioEncoder(AudioSettings(channels=2), downmix=True)
    data = _pcm16(32767, 32767, -32768, -32768, 100, 200, -1, 0)
    assert encoder.downmix_stereo_to_mono(data) == _pcm16(32767, -32768, 150, -1)


def test_downmix_ignores_incomplete_pair() -> None:
    encoder = AudioEncoder(AudioSettings(channels=2))
    data = _pcm16(10, 20, 30)
    assert encoder.downmix_stereo_to_mono(data) == _pcm16(15)


def test_downmix_passthrough_for_mono() -> None:
    encoder = AudioEncoder(AudioSettings(channels=1), downmix=True)
    data = _pcm16(1, 2, 3)
    assert encoder.downmix_stereo_to_mono(data) == data
    assert encoder.output_settings.channels == 1


def test_encode_frame_downmixes_and_stamps_mono() -> None:
    encoder = AudioEncoder(AudioSettings(channels=2), downmix=True)
    assert encoder.output_settings.channels == 1
    packet = encoder.encode_frame(_pcm16(1000, 3000), 0)
    assert packet.channels == 1
    assert packet.payload == _pcm16(2000)


def test_gain_clamps_to_int16_range() -> None:
    encoder = AudioEncoder()
    assert encoder.apply_gain(_pcm16(20000, -20000), 2.0) == _pcm16(32767, -32768)
    assert encoder.apply_gain(_pcm16(10000, -10000), 0.5) == _pcm16(5000, -5000)


def test_gain_truncates_toward_zero() -> None:
    encoder = AudioEncoder()
    assert encoder.apply_gain(_pcm16(3, -3), 0.5) == _pcm16(1, -1)


def test_gain_passthrough_for_non_16_bit() -> None:
    encoder = AudioEncoder(AudioSettings(bits_per_sample=24))
    data = b"\x01\x02\x03\x04\x05\x06"
    assert encoder.apply_gain(data, 3.0) == data


def test_encode_frame_applies_configured_gain() -> None:
    encoder = AudioEncoder(AudioSettings(gain=2.0))
    packet = encoder.encode_frame(_pcm16(100, 30000), 0)
    assert packet.payload == _pcm16(200, 32767)
