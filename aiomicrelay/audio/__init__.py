"""Audio packetizing and playout for aiomicrelay."""

from .devices import AudioCapture, AudioInjector, FrameCallback, StreamStartupError
from .encoder import AudioEncoder
from .jitter_buffer import JitterBuffer, JitterBufferConfig

__all__ = [
    "AudioCapture",
    "AudioEncoder",
    "AudioInjector",
    "FrameCallback",
    "JitterBuffer",
    "JitterBufferConfig",
    "StreamStartupError",
]
