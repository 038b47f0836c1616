"""Unreliable datagram transport for audio packets."""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Callable
from contextlib import suppress

from aiomicrelay.audio.encoder import AudioEncoder
from aiomicrelay.models import DEFAULT_AUDIO_PORT
from aiomicrelay.models.audio import AudioPacket, decode_packet, encode_packet

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_RECEIVE_BUFFER_SIZE = 1024 * 1024

# Callback invoked with (packet, (host, port)) for each valid audio datagram.
PacketCallback = Callable[[AudioPacket, tuple[str, int]], None]

# Callback invoked when the transport hits a socket error.
ErrorCallback = Callable[[Exception], None]


class _AudioDatagramProtocol(asyncio.DatagramProtocol):
    """Forwards datagram events to the owning transport."""

    def __init__(self, owner: UdpAudioTransport, closed: asyncio.Future[None]) -> None:
        self._owner = owner
        self._closed = closed

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self._owner._handle_datagram(data, addr)  # noqa: SLF001

    def error_received(self, exc: Exception) -> None:
        self._owner._notify_error(exc)  # noqa: SLF001

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            self._owner._notify_error(exc)  # noqa: SLF001
        if not self._closed.done():
            self._closed.set_result(None)


class UdpAudioTransport:
    """
    Sends and receives audio packets over UDP.

    Received datagrams are decoded and handed to packet listeners inline, on the
    event loop, as they arrive. Listeners must return promptly. Datagrams that
    fail to decode are dropped.
    """

    def __init__(
        self,
        port: int = DEFAULT_AUDIO_PORT,
        *,
        host: str = DEFAULT_HOST,
        receive_buffer_size: int = DEFAULT_RECEIVE_BUFFER_SIZE,
    ) -> None:
        """
        Create a transport; nothing is bound until start_receiving().

        Args:
            port: Local UDP port to receive audio on. 0 picks a free port.
            host: Local address to bind to.
            receive_buffer_size: Requested socket receive buffer in bytes.
        """
        self._port = port
        self._host = host
        self._receive_buffer_size = receive_buffer_size
        self._transport: asyncio.DatagramTransport | None = None
        self._closed: asyncio.Future[None] | None = None
        self._send_transport: asyncio.DatagramTransport | None = None
        self._send_closed: asyncio.Future[None] | None = None
        self._packet_callbacks: list[PacketCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self.packets_received = 0
        self.packets_dropped = 0
        self.packets_sent = 0

    @property
    def port(self) -> int:
        """Return the bound port while receiving, else the configured port."""
        if self._transport is not None:
            sockname = self._transport.get_extra_info("sockname")
            if sockname is not None:
                return int(sockname[1])
        return self._port

    @property
    def receiving(self) -> bool:
        """Return True while the receive socket is open."""
        return self._transport is not None and not self._transport.is_closing()

    def add_packet_listener(self, callback: PacketCallback) -> Callable[[], None]:
        """Add a listener for decoded audio packets.

        Returns:
            A function that removes this listener when called.
        """
        self._packet_callbacks.append(callback)
        return lambda: (
            self._packet_callbacks.remove(callback) if callback in self._packet_callbacks else None
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

    async def start_receiving(self) -> None:
        """
        Bind the receive socket. Calling this while already receiving is a no-op.

        Raises:
            OSError: If the socket cannot be bound.
        """
        if self.receiving:
            return
        loop = asyncio.get_running_loop()
        self._closed = loop.create_future()
        closed = self._closed
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _AudioDatagramProtocol(self, closed),
                local_addr=(self._host, self._port),
            )
        except OSError as err:
            logger.error("Failed to bind audio socket on %s:%d: %s", self._host, self._port, err)
            self._closed = None
            raise
        self._transport = transport
        sock = transport.get_extra_info("socket")
        if sock is not None:
            with suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, self._receive_buffer_size)
        logger.info("Receiving audio on UDP port %d", self.port)

    async def stop_receiving(self) -> None:
        """Close the receive socket and wait until it is released."""
        transport, closed = self._transport, self._closed
        self._transport = None
        self._closed = None
        if transport is None:
            return
        transport.close()
        if closed is not None:
            await closed
        logger.info("Stopped receiving audio")

    async def send_packet(self, packet: AudioPacket, address: tuple[str, int]) -> bool:
        """
        Send one packet to ``address``.

        Send failures are reported to error listeners and not retried.

        Returns:
            True if the datagram was handed to the socket.
        """
        data = encode_packet(packet)
        try:
            transport = await self._get_send_transport()
            transport.sendto(data, address)
        except OSError as err:
            logger.warning("Failed to send audio packet to %s:%d: %s", *address, err)
            self._notify_error(err)
            return False
        self.packets_sent += 1
        return True

    async def send_audio(
        self, pcm: bytes, encoder: AudioEncoder, address: tuple[str, int]
    ) -> AudioPacket | None:
        """Packetize ``pcm`` with ``encoder`` and send it.

        Returns:
            The packet that was sent, or None if sending failed.
        """
        timestamp = int(asyncio.get_running_loop().time() * 1_000)
        packet = encoder.encode_frame(pcm, timestamp)
        if await self.send_packet(packet, address):
            return packet
        return None

    async def close(self) -> None:
        """Release both the receive and the send socket."""
        await self.stop_receiving()
        transport, closed = self._send_transport, self._send_closed
        self._send_transport = None
        self._send_closed = None
        if transport is not None:
            transport.close()
            if closed is not None:
                await closed

    async def _get_send_transport(self) -> asyncio.DatagramTransport:
        """Return a socket to send from, reusing the receive socket when bound."""
        if self.receiving:
            assert self._transport is not None
            return self._transport
        if self._send_transport is None or self._send_transport.is_closing():
            loop = asyncio.get_running_loop()
            self._send_closed = loop.create_future()
            closed = self._send_closed
            self._send_transport, _ = await loop.create_datagram_endpoint(
                lambda: _AudioDatagramProtocol(self, closed),
                family=socket.AF_INET,
            )
        return self._send_transport

    def _handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        packet = decode_packet(data)
        if packet is None:
            self.packets_dropped += 1
            logger.debug("Dropping malformed audio datagram (%d bytes) from %s", len(data), addr)
            return
        self.packets_received += 1
        for callback in list(self._packet_callbacks):
            try:
                callback(packet, addr)
            except Exception:
                logger.exception("Error in audio packet callback %s", callback)

    def _notify_error(self, err: Exception) -> None:
        for callback in list(self._error_callbacks):
            try:
                callback(err)
            except Exception:
                logger.exception("Error in audio error callback %s", callback)
