"""Models for enum types used by aiomicrelay."""

from enum import Enum


class ControlMessageType(Enum):
    """Enum for control channel message types (one byte on the wire)."""

    PING = 0
    """Keepalive request, answered with PONG."""
    PONG = 1
    """Keepalive answer."""
    START_STREAM = 2
    """Ask the peer to start receiving audio. Payload is the audio port packets go to."""
    STOP_STREAM = 3
    """Ask the peer to stop receiving audio."""
    STREAM_STARTED = 4
    """Acknowledges START_STREAM."""
    STREAM_STOPPED = 5
    """Acknowledges STOP_STREAM."""
    DISCOVERY_REQUEST = 10
    """Presence broadcast. Payload is a serialized DeviceDescriptor."""
    DISCOVERY_RESPONSE = 11
    """Answer to a presence broadcast. Payload is a serialized DeviceDescriptor."""
    ERROR = 255
    """Peer reports an error. Payload is a human readable message."""

    UNKNOWN = -1
    """
    Type byte not recognized by this implementation.

    The received byte is kept in ControlMessage.raw_type.
    """


class ConnectionStatus(Enum):
    """Enum for session connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STREAMING = "streaming"
    ERROR = "error"


class ChannelState(Enum):
    """Enum for control channel states."""

    IDLE = "idle"
    """Never started."""
    LISTENING = "listening"
    """Waiting for exactly one inbound peer."""
    CONNECTING = "connecting"
    """Dialing an outbound peer."""
    CONNECTED = "connected"
    """Peer attached and read loop running."""
    DISCONNECTED = "disconnected"
    """Stopped. The channel can be started again."""
