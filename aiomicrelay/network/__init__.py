"""Network channels for aiomicrelay: audio datagrams, control and discovery."""

from .control import ControlChannel
from .discovery import DiscoveryService
from .mdns import MdnsAdvertiser
from .udp import UdpAudioTransport

__all__ = [
    "ControlChannel",
    "DiscoveryService",
    "MdnsAdvertiser",
    "UdpAudioTransport",
]
