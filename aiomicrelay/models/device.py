"""
Device descriptors exchanged by the discovery protocol.

Descriptors are the only structured payload in aiomicrelay. They are carried as
JSON inside DISCOVERY_REQUEST/DISCOVERY_RESPONSE control messages and never on
the audio or control hot path.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Annotated

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Alias


@dataclass
class DeviceDescriptor(DataClassORJSONMixin):
    """A peer announced on the local network."""

    device_id: Annotated[str, Alias("deviceId")]
    """Stable identifier used as the registry key."""
    device_name: Annotated[str, Alias("deviceName")] = ""
    """Friendly name of the device."""
    ip_address: Annotated[str, Alias("ipAddress")] = ""
    """Address the device's control channel listens on."""
    port: int = 0
    """Control channel port of the device."""
    last_seen: Annotated[datetime | None, Alias("lastSeen")] = None
    """When this descriptor was last received; stamped by the receiver."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if not self.device_id:
            raise ValueError("device_id must not be empty")
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port must be in 0..65535, got {self.port}")

    def seen_at(self, when: datetime) -> DeviceDescriptor:
        """Return a copy of this descriptor with last_seen set to ``when``."""
        return replace(self, last_seen=when)

    class Config(BaseConfig):
        """Config for parsing json descriptors."""

        serialize_by_alias = True
        omit_none = True
