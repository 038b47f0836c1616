"""Sender side packetizer turning captured PCM into sequenced audio packets."""

from __future__ import annotations

import logging
from dataclasses import replace

import numpy as np

from aiomicrelay.models.audio import SEQUENCE_MODULUS, AudioPacket, AudioSettings

logger = logging.getLogger(__name__)

INT16_MIN = -32768
INT16_MAX = 32767


class AudioEncoder:
    """
    Packetizes raw PCM frames for one outgoing stream.

    The capture format is locked in at construction. Sequence numbers start at
    ``initial_sequence`` and wrap at 2**32; wrapping is expected for long
    streams and is handled by the receiver with modular arithmetic.
    """

    def __init__(
        self,
        settings: AudioSettings | None = None,
        *,
        downmix: bool = False,
        initial_sequence: int = 0,
    ) -> None:
        """
        Create an encoder for one stream.

        Args:
            settings: Format of the captured PCM. Defaults to 48 kHz mono 16-bit.
            downmix: Average 16-bit stereo input down to mono before sending.
                Ignored for any other input format.
            initial_sequence: Sequence number of the first packet.
        """
        self._settings = settings if settings is not None else AudioSettings()
        self._downmix = (
            downmix and self._settings.channels == 2 and self._settings.bits_per_sample == 16
        )
        self._sequence = initial_sequence % SEQUENCE_MODULUS
        if downmix and not self._downmix:
            logger.debug(
                "Downmix requested for %s input, sending unchanged",
                self._settings.format_description,
            )

    @property
    def settings(self) -> AudioSettings:
        """Return the capture format."""
        return self._settings

    @property
    def output_settings(self) -> AudioSettings:
        """Return the format stamped on outgoing packets."""
        if self._downmix:
            return replace(self._settings, channels=1)
        return self._settings

    @property
    def next_sequence(self) -> int:
        """Return the sequence number the next packet will get."""
        return self._sequence

    def frame_size(self) -> int:
        """Return bytes of captured PCM per 20 ms frame."""
        return self._settings.frame_size

    def create_packet(self, pcm: bytes, timestamp: int) -> AudioPacket:
        """Wrap ``pcm`` in a packet with the next sequence number."""
        output = self.output_settings
        packet = AudioPacket(
            sequence=self._sequence,
            timestamp=timestamp % SEQUENCE_MODULUS,
            sample_rate=output.sample_rate,
            channels=output.channels,
            bits_per_sample=output.bits_per_sample,
            payload=bytes(pcm),
        )
        self._sequence = (self._sequence + 1) % SEQUENCE_MODULUS
        return packet

    def encode_frame(self, pcm: bytes, timestamp: int) -> AudioPacket:
        """Apply downmix and gain as configured, then packetize."""
        if self._downmix:
            pcm = self.downmix_stereo_to_mono(pcm)
        if self._settings.gain != 1.0:
            pcm = self.apply_gain(pcm, self._settings.gain)
        return self.create_packet(pcm, timestamp)

    def downmix_stereo_to_mono(self, data: bytes) -> bytes:
        """
        Average interleaved 16-bit stereo pairs into mono samples.

        The sum of each pair is floor-divided by two. Input that is not 16-bit
        stereo is returned unchanged.
        """
        if self._settings.channels != 2 or self._settings.bits_per_sample != 16:
            return data
        usable = len(data) - len(data) % 4
        pairs = np.frombuffer(bytes(data[:usable]), dtype="<i2").reshape(-1, 2)
        mono = (pairs[:, 0].astype(np.int32) + pairs[:, 1].astype(np.int32)) // 2
        return mono.astype("<i2").tobytes()

    def apply_gain(self, data: bytes, multiplier: float) -> bytes:
        """
        Scale every 16-bit sample by ``multiplier``, saturating at the int16 range.

        Input that is not 16-bit is returned unchanged.
        """
        if self._settings.bits_per_sample != 16:
            return data
        usable = len(data) - len(data) % 2
        samples = np.frombuffer(bytes(data[:usable]), dtype="<i2")
        scaled = np.trunc(samples.astype(np.float64) * multiplier)
        clamped = np.clip(scaled, INT16_MIN, INT16_MAX).astype("<i2")
        return clamped.tobytes() + bytes(data[usable:])
