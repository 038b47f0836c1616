"""Session orchestration for aiomicrelay."""

from .orchestrator import (
    AudioCallback,
    ConnectionStateChangedEvent,
    DeviceDiscoveredEvent,
    DeviceLostEvent,
    SessionErrorEvent,
    SessionEvent,
    SessionOrchestrator,
)

__all__ = [
    "AudioCallback",
    "ConnectionStateChangedEvent",
    "DeviceDiscoveredEvent",
    "DeviceLostEvent",
    "SessionErrorEvent",
    "SessionEvent",
    "SessionOrchestrator",
]
