"""Utility functions for aiomicrelay."""

from __future__ import annotations

import socket
import uuid

from aiomicrelay.models.device import DeviceDescriptor


def get_local_ip() -> str | None:
    """Get the local IP address peers on the LAN can reach us at.

    Returns the IP address of the interface that would be used to connect
    to an external address, or None if no network is available.
    """
    try:
        # Connecting a UDP socket sends nothing, it only selects the interface
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            result: str = s.getsockname()[0]
            return result
    except OSError:
        return None


def local_device_descriptor(
    port: int, *, device_name: str | None = None, device_id: str | None = None
) -> DeviceDescriptor:
    """Build a descriptor for this host's control channel on ``port``."""
    return DeviceDescriptor(
        device_id=device_id or uuid.uuid4().hex,
        device_name=device_name or socket.gethostname(),
        ip_address=get_local_ip() or "127.0.0.1",
        port=port,
    )
