"""
Interfaces of the platform audio collaborators.

Capture (microphone) and injection (virtual microphone) live outside this
package. The session talks to them only through these protocols.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from aiomicrelay.models.audio import AudioSettings

# Callback invoked by a capture device with each fixed-duration PCM buffer.
FrameCallback = Callable[[bytes], None]


class StreamStartupError(RuntimeError):
    """A capture or injection device could not be initialized or started."""


class AudioCapture(Protocol):
    """Source of raw PCM frames, e.g. a microphone."""

    async def initialize(self, settings: AudioSettings) -> bool:
        """Prepare the device for ``settings``; return False if unavailable."""

    async def start(self, on_frame: FrameCallback) -> bool:
        """Start pushing 20 ms frames to ``on_frame``; return False on failure."""

    async def stop(self) -> None:
        """Stop capturing."""


class AudioInjector(Protocol):
    """Sink for decoded PCM, e.g. a virtual microphone."""

    @property
    def device_name(self) -> str:
        """Name of the device audio is written to."""

    async def initialize(self, settings: AudioSettings) -> bool:
        """Prepare the sink for ``settings``; return False if unavailable."""

    async def start(self) -> bool:
        """Open the sink; return False on failure."""

    async def stop(self) -> None:
        """Close the sink."""

    def write(self, pcm: bytes) -> None:
        """Queue ``pcm`` for playback. Must return promptly."""
