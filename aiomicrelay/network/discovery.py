"""
Broadcast presence protocol for finding peers on the local network.

Peers announce themselves with a DISCOVERY_REQUEST carrying their descriptor as
JSON, sent to the broadcast address. Anyone listening records the descriptor
and may answer with a DISCOVERY_RESPONSE carrying its own. Descriptors that are
not refreshed within the timeout are evicted by a periodic sweep.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Callable, Mapping
from contextlib import suppress
from datetime import UTC, datetime, timedelta
from types import MappingProxyType

from aiomicrelay.models import DEFAULT_DISCOVERY_PORT
from aiomicrelay.models.control import ControlMessage, decode_message, encode_message
from aiomicrelay.models.device import DeviceDescriptor
from aiomicrelay.models.types import ControlMessageType

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_BROADCAST_ADDRESS = "255.255.255.255"
DEFAULT_SWEEP_INTERVAL = 5.0
DEFAULT_DEVICE_TIMEOUT = 30.0

_DISCOVERY_TYPES = (ControlMessageType.DISCOVERY_REQUEST, ControlMessageType.DISCOVERY_RESPONSE)

# Callback invoked with the descriptor of a newly discovered device.
DeviceDiscoveredCallback = Callable[[DeviceDescriptor], None]

# Callback invoked with the id of a device evicted after the timeout.
DeviceLostCallback = Callable[[str], None]

# Callback invoked when a socket operation fails.
ErrorCallback = Callable[[Exception], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    """Forwards datagram events to the owning discovery service."""

    def __init__(self, owner: DiscoveryService, closed: asyncio.Future[None]) -> None:
        self._owner = owner
        self._closed = closed

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self._owner._handle_datagram(data, addr)  # noqa: SLF001

    def error_received(self, exc: Exception) -> None:
        self._owner._notify_error(exc)  # noqa: SLF001

    def connection_lost(self, exc: Exception | None) -> None:
        if not self._closed.done():
            self._closed.set_result(None)


class DiscoveryService:
    """Maintains the registry of peers seen on the discovery port."""

    _transport: asyncio.DatagramTransport | None = None
    _closed: asyncio.Future[None] | None = None
    _sweep_task: asyncio.Task[None] | None = None
    """Background task evicting silent devices."""

    def __init__(
        self,
        port: int = DEFAULT_DISCOVERY_PORT,
        *,
        host: str = DEFAULT_HOST,
        broadcast_address: str = DEFAULT_BROADCAST_ADDRESS,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        device_timeout: float = DEFAULT_DEVICE_TIMEOUT,
        local_device: DeviceDescriptor | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Create a discovery service; nothing is bound until start_listening().

        Args:
            port: Discovery UDP port, used both to listen and as broadcast target.
            host: Local address to bind to.
            broadcast_address: Destination of presence broadcasts.
            sweep_interval: Seconds between expiry sweeps.
            device_timeout: Seconds of silence after which a device is evicted.
            local_device: This device's descriptor. When set, received requests
                are answered with it and our own broadcasts are ignored.
            clock: Source of the current time, used for last_seen and expiry.
        """
        self._port = port
        self._host = host
        self._broadcast_address = broadcast_address
        self._sweep_interval = sweep_interval
        self._device_timeout = timedelta(seconds=device_timeout)
        self._local_device = local_device
        self._clock = clock
        self._devices: dict[str, DeviceDescriptor] = {}
        self._discovered_callbacks: list[DeviceDiscoveredCallback] = []
        self._lost_callbacks: list[DeviceLostCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._response_tasks: set[asyncio.Task[None]] = set()

    @property
    def devices(self) -> Mapping[str, DeviceDescriptor]:
        """Return a read-only view of the registry keyed by device id."""
        return MappingProxyType(self._devices)

    @property
    def port(self) -> int:
        """Return the bound port while listening, else the configured port."""
        if self._transport is not None:
            sockname = self._transport.get_extra_info("sockname")
            if sockname is not None:
                return int(sockname[1])
        return self._port

    @property
    def listening(self) -> bool:
        """Return True while the discovery socket is open."""
        return self._transport is not None and not self._transport.is_closing()

    @property
    def local_device(self) -> DeviceDescriptor | None:
        """Return the descriptor used to answer discovery requests."""
        return self._local_device

    @local_device.setter
    def local_device(self, descriptor: DeviceDescriptor | None) -> None:
        self._local_device = descriptor

    def add_device_discovered_listener(
        self, callback: DeviceDiscoveredCallback
    ) -> Callable[[], None]:
        """Add a listener for newly discovered devices.

        Returns:
            A function that removes this listener when called.
        """
        self._discovered_callbacks.append(callback)
        return lambda: (
            self._discovered_callbacks.remove(callback)
            if callback in self._discovered_callbacks
            else None
        )

    def add_device_lost_listener(self, callback: DeviceLostCallback) -> Callable[[], None]:
        """Add a listener for devices evicted after the timeout.

        Returns:
            A function that removes this listener when called.
        """
        self._lost_callbacks.append(callback)
        return lambda: (
            self._lost_callbacks.remove(callback) if callback in self._lost_callbacks else None
        )

    def add_error_listener(self, callback: ErrorCallback) -> Callable[[], None]:
        """Add a listener for socket errors.

        Returns:
            A function that removes this listener when called.
        """
        self._error_callbacks.append(callback)
        return lambda: (
            self._error_callbacks.remove(callback) if callback in self._error_callbacks else None
        )

    async def start_listening(self) -> None:
        """
        Bind the discovery socket and start the expiry sweep.

        Raises:
            OSError: If the socket cannot be bound.
        """
        if self.listening:
            return
        loop = asyncio.get_running_loop()
        self._closed = loop.create_future()
        closed = self._closed
        try:
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: _DiscoveryProtocol(self, closed),
                local_addr=(self._host, self._port),
                allow_broadcast=True,
            )
        except OSError as err:
            logger.error("Failed to bind discovery socket on %s:%d: %s", self._host, self._port, err)
            self._closed = None
            raise
        self._sweep_task = loop.create_task(self._sweep_loop())
        logger.info("Discovery listening on UDP port %d", self.port)

    async def stop(self) -> None:
        """Stop the sweep and pending responses, close the socket and wait for all of them."""
        sweep_task, self._sweep_task = self._sweep_task, None
        if sweep_task is not None:
            sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await sweep_task
        response_tasks = list(self._response_tasks)
        for task in response_tasks:
            task.cancel()
        if response_tasks:
            await asyncio.gather(*response_tasks, return_exceptions=True)
        transport, closed = self._transport, self._closed
        self._transport = None
        self._closed = None
        if transport is not None:
            transport.close()
            if closed is not None:
                await closed
            logger.info("Discovery stopped")

    async def broadcast_presence(self, descriptor: DeviceDescriptor) -> bool:
        """Announce ``descriptor`` to the broadcast address.

        Returns:
            True if the datagram was handed to the socket.
        """
        message = ControlMessage(
            type=ControlMessageType.DISCOVERY_REQUEST, payload=descriptor.to_json()
        )
        return await self._send(message, (self._broadcast_address, self._port))

    async def send_discovery_response(
        self, descriptor: DeviceDescriptor, address: tuple[str, int]
    ) -> bool:
        """Answer a discovery request from ``address`` with ``descriptor``.

        Returns:
            True if the datagram was handed to the socket.
        """
        message = ControlMessage(
            type=ControlMessageType.DISCOVERY_RESPONSE, payload=descriptor.to_json()
        )
        return await self._send(message, address)

    def sweep(self) -> list[str]:
        """Evict devices silent for longer than the timeout.

        Returns:
            Ids of the evicted devices.
        """
        now = self._clock()
        lost = [
            device_id
            for device_id, device in self._devices.items()
            if device.last_seen is None or now - device.last_seen > self._device_timeout
        ]
        for device_id in lost:
            del self._devices[device_id]
            logger.info("Device %s lost", device_id)
            for callback in list(self._lost_callbacks):
                try:
                    callback(device_id)
                except Exception:
                    logger.exception("Error in device lost callback %s", callback)
        return lost

    def handle_message(self, message: ControlMessage, addr: tuple[str, int]) -> None:
        """Record the descriptor carried by a discovery message."""
        if message.type not in _DISCOVERY_TYPES:
            logger.debug("Ignoring %s on discovery port from %s", message.type.name, addr)
            return
        try:
            descriptor = DeviceDescriptor.from_json(message.payload)
        except Exception:  # noqa: BLE001
            logger.debug("Dropping malformed device descriptor from %s", addr)
            return
        if self._local_device is not None and descriptor.device_id == self._local_device.device_id:
            return

        descriptor = descriptor.seen_at(self._clock())
        is_new = descriptor.device_id not in self._devices
        self._devices[descriptor.device_id] = descriptor
        if is_new:
            logger.info(
                "Discovered device %s (%s) at %s:%d",
                descriptor.device_name,
                descriptor.device_id,
                descriptor.ip_address,
                descriptor.port,
            )
            for callback in list(self._discovered_callbacks):
                try:
                    callback(descriptor)
                except Exception:
                    logger.exception("Error in device discovered callback %s", callback)

        if message.type is ControlMessageType.DISCOVERY_REQUEST and self._local_device is not None:
            task = asyncio.get_running_loop().create_task(
                self._respond(self._local_device, addr)
            )
            self._response_tasks.add(task)
            task.add_done_callback(self._response_tasks.discard)

    async def _respond(self, descriptor: DeviceDescriptor, addr: tuple[str, int]) -> None:
        await self.send_discovery_response(descriptor, addr)

    async def _send(self, message: ControlMessage, address: tuple[str, int]) -> bool:
        data = encode_message(message)
        transport = self._transport
        owns_transport = transport is None or transport.is_closing()
        try:
            if owns_transport:
                loop = asyncio.get_running_loop()
                transport, _ = await loop.create_datagram_endpoint(
                    asyncio.DatagramProtocol, family=_address_family(address), allow_broadcast=True
                )
            assert transport is not None
            transport.sendto(data, address)
        except OSError as err:
            logger.warning("Failed to send %s to %s: %s", message.type.name, address, err)
            self._notify_error(err)
            return False
        finally:
            if owns_transport and transport is not None:
                transport.close()
        return True

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Discovery sweep failed")

    def _handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        message = decode_message(data)
        if message is None:
            logger.debug("Dropping malformed discovery datagram from %s", addr)
            return
        self.handle_message(message, addr)

    def _notify_error(self, err: Exception) -> None:
        for callback in list(self._error_callbacks):
            try:
                callback(err)
            except Exception:
                logger.exception("Error in discovery error callback %s", callback)


def _address_family(address: tuple[str, int]) -> int:
    return socket.AF_INET6 if ":" in address[0] else socket.AF_INET
