"""
Receiver side jitter buffer.

Packets arrive on the network receive path in any order, possibly duplicated or
not at all. The buffer holds them by sequence number, waits for an initial
lookahead, then releases them strictly in sequence order. A gap that stays
open while newer packets are waiting is declared lost and skipped.

All sequence comparisons use modular distance on the 32-bit circle, so a stream
that wraps from 4294967295 to 0 keeps playing in order.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from mashumaro.mixins.orjson import DataClassORJSONMixin

from aiomicrelay.models.audio import SEQUENCE_MODULUS, AudioPacket, AudioSettings, sequence_distance

logger = logging.getLogger(__name__)


@dataclass
class JitterBufferConfig(DataClassORJSONMixin):
    """Tuning of the jitter buffer. No single value suits every network."""

    target_depth: int = 5
    """Packets to accumulate before the first release (playout depth)."""
    ahead_window: int = 10
    """Largest gap, in packets, that is skipped as loss instead of waited for."""
    behind_window: int = 100
    """Packets this far behind the last released one are purged on arrival."""
    max_depth: int = 15
    """Pending packets tolerated while waiting on a gap wider than ahead_window.

    Beyond this the gap is written off and playout resumes from the newest
    target_depth packets.
    """

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.target_depth < 1:
            raise ValueError(f"target_depth must be at least 1, got {self.target_depth}")
        if self.ahead_window < 1:
            raise ValueError(f"ahead_window must be at least 1, got {self.ahead_window}")
        if self.behind_window < 1:
            raise ValueError(f"behind_window must be at least 1, got {self.behind_window}")
        if self.max_depth < self.target_depth:
            raise ValueError(
                f"max_depth must be at least target_depth ({self.target_depth}), got {self.max_depth}"
            )


class JitterBuffer:
    """
    Reordering buffer for one incoming audio stream.

    ``receive`` is called from the network receive path and ``next`` from the
    playback side, possibly on another thread. Both take an internal lock, so
    callers need no locking of their own.
    """

    def __init__(self, config: JitterBufferConfig | None = None) -> None:
        """Create an empty buffer; the first received packet defines the stream."""
        self._config = config if config is not None else JitterBufferConfig()
        self._lock = threading.Lock()
        self._pending: dict[int, AudioPacket] = {}
        self._settings: AudioSettings | None = None
        self._expected_sequence = 0
        self._last_released_sequence: int | None = None
        self._filling = True
        self._received_count = 0
        self._lost_count = 0
        self._duplicate_count = 0

    @property
    def config(self) -> JitterBufferConfig:
        """Return the buffer tuning."""
        return self._config

    @property
    def settings(self) -> AudioSettings | None:
        """Return the stream format locked in by the first packet."""
        return self._settings

    @property
    def expected_sequence(self) -> int:
        """Return the sequence number the next release is waiting for."""
        return self._expected_sequence

    @property
    def last_released_sequence(self) -> int | None:
        """Return the sequence number of the last released packet."""
        return self._last_released_sequence

    @property
    def received_count(self) -> int:
        """Return packets received, duplicates included."""
        return self._received_count

    @property
    def lost_count(self) -> int:
        """Return packets skipped as lost."""
        return self._lost_count

    @property
    def duplicate_count(self) -> int:
        """Return packets that replaced a pending packet with the same sequence."""
        return self._duplicate_count

    @property
    def pending_count(self) -> int:
        """Return packets currently held."""
        with self._lock:
            return len(self._pending)

    @property
    def is_filling(self) -> bool:
        """Return True until the initial playout depth has been reached."""
        return self._filling

    def loss_rate(self) -> float:
        """Return lost / (lost + received), 0.0 before any traffic."""
        total = self._lost_count + self._received_count
        if total == 0:
            return 0.0
        return self._lost_count / total

    def receive(self, packet: AudioPacket) -> None:
        """Insert an arriving packet."""
        with self._lock:
            self._received_count += 1
            if self._settings is None:
                self._expected_sequence = packet.sequence
                self._settings = packet.settings
                logger.debug(
                    "Stream locked to %s starting at sequence %d",
                    self._settings.format_description,
                    packet.sequence,
                )
            if packet.sequence in self._pending:
                # Last copy wins
                self._duplicate_count += 1
                logger.debug("Duplicate audio packet %d replaces pending copy", packet.sequence)
            self._pending[packet.sequence] = packet
            self._purge_stale()

    def next(self) -> AudioPacket | None:
        """Release the next packet in sequence order, or None if not ready."""
        with self._lock:
            if self._filling:
                if len(self._pending) < self._config.target_depth:
                    return None
                self._filling = False

            packet = self._pending.pop(self._expected_sequence, None)
            if packet is not None:
                self._release(packet.sequence)
                return packet

            if not self._pending:
                return None

            oldest = min(
                self._pending, key=lambda seq: sequence_distance(self._expected_sequence, seq)
            )
            gap = sequence_distance(self._expected_sequence, oldest)
            if 0 < gap < self._config.ahead_window:
                self._lost_count += gap
                logger.debug(
                    "Skipping %d lost packet(s) before sequence %d", gap, oldest
                )
                packet = self._pending.pop(oldest)
                self._release(oldest)
                return packet
            if len(self._pending) > self._config.max_depth:
                return self._resync()
            return None

    def drain(self) -> list[AudioPacket]:
        """Release every packet that is ready right now."""
        released = []
        while (packet := self.next()) is not None:
            released.append(packet)
        return released

    def reset(self) -> None:
        """Forget the current stream; the next packet starts a new one."""
        with self._lock:
            self._pending.clear()
            self._settings = None
            self._expected_sequence = 0
            self._last_released_sequence = None
            self._filling = True
            self._received_count = 0
            self._lost_count = 0
            self._duplicate_count = 0

    def _resync(self) -> AudioPacket | None:
        """Write off an unrecoverable gap and restart playout at the newest packets."""
        half = SEQUENCE_MODULUS // 2
        expected = self._expected_sequence
        behind = [seq for seq in self._pending if sequence_distance(expected, seq) >= half]
        for seq in behind:
            del self._pending[seq]
        ahead = sorted(self._pending, key=lambda seq: sequence_distance(expected, seq))
        if not ahead:
            return None
        keep = ahead[-self._config.target_depth :]
        for seq in ahead[: len(ahead) - len(keep)]:
            del self._pending[seq]
        first = keep[0]
        skipped = sequence_distance(expected, first)
        self._lost_count += skipped
        logger.info(
            "Jitter buffer resynced at sequence %d, %d packet(s) written off", first, skipped
        )
        packet = self._pending.pop(first)
        self._release(first)
        return packet

    def _release(self, sequence: int) -> None:
        self._last_released_sequence = sequence
        self._expected_sequence = (sequence + 1) % SEQUENCE_MODULUS

    def _purge_stale(self) -> None:
        """Drop packets that arrived too late to ever be released."""
        if self._last_released_sequence is None:
            return
        last = self._last_released_sequence
        stale = [
            seq
            for seq in self._pending
            if sequence_distance(seq, last) < self._config.behind_window
        ]
        for seq in stale:
            del self._pending[seq]
        if stale:
            logger.debug("Purged %d late audio packet(s)", len(stale))
