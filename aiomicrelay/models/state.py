"""Session connection state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from .types import ConnectionStatus


@dataclass
class ConnectionState:
    """Connection status and traffic counters of a session."""

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    remote_address: str | None = None
    """Address audio is sent to while streaming."""
    remote_port: int = 0
    """Audio port of the peer."""
    connected_at: datetime | None = None
    """Set once when the session first reaches CONNECTED."""
    error_message: str | None = None
    """Last error reported while entering ERROR."""

    bytes_sent: int = 0
    bytes_received: int = 0
    packets_sent: int = 0
    packets_received: int = 0
    packet_loss_rate: float = 0.0

    @property
    def is_connected(self) -> bool:
        """Return True while a peer is attached (connected or streaming)."""
        return self.status in (ConnectionStatus.CONNECTED, ConnectionStatus.STREAMING)

    @property
    def connection_duration(self) -> float | None:
        """Return seconds since the connection was established, if connected."""
        if self.connected_at is None:
            return None
        return (datetime.now(UTC) - self.connected_at).total_seconds()

    def reset_counters(self) -> None:
        """Zero all traffic counters."""
        self.bytes_sent = 0
        self.bytes_received = 0
        self.packets_sent = 0
        self.packets_received = 0
        self.packet_loss_rate = 0.0
