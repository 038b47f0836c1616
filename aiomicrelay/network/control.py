"""Reliable, ordered control channel between exactly two peers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress

from aiomicrelay.models import DEFAULT_CONTROL_PORT
from aiomicrelay.models.control import (
    CONTROL_HEADER_SIZE,
    ControlMessage,
    build_message,
    encode_message,
    unpack_control_header,
)
from aiomicrelay.models.types import ChannelState, ControlMessageType

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_CONNECT_TIMEOUT = 10.0
MAX_PAYLOAD_SIZE = 1024 * 1024
"""Largest payload accepted before the stream is considered out of sync."""

# Callback invoked for every decoded control message.
MessageCallback = Callable[[ControlMessage], None]

# Callback invoked with the peer (host, port) when a peer attaches.
ConnectedCallback = Callable[[tuple[str, int]], None]

# Callback invoked when the peer detaches for any reason.
DisconnectedCallback = Callable[[], None]

# Callback invoked when a socket operation fails.
ErrorCallback = Callable[[Exception], None]


class ControlChannel:
    """
    Single-peer control channel over TCP.

    The channel either listens and accepts one inbound peer at a time, or dials
    out to a peer. Once attached, a background task reads length-prefixed
    messages and hands each one to the message listeners inline. A stopped
    channel can be started again.
    """

    _server: asyncio.Server | None = None
    """Listening socket, only in the listen role."""
    _reader: asyncio.StreamReader | None = None
    _writer: asyncio.StreamWriter | None = None
    _reader_task: asyncio.Task[None] | None = None
    """Background task reading messages from the peer."""
    _peer: tuple[str, int] | None = None

    def __init__(
        self,
        port: int = DEFAULT_CONTROL_PORT,
        *,
        host: str = DEFAULT_HOST,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_payload_size: int = MAX_PAYLOAD_SIZE,
    ) -> None:
        """
        Create a control channel; no socket is opened until started.

        Args:
            port: Local port for the listen role. 0 picks a free port.
            host: Local address for the listen role.
            connect_timeout: Seconds to wait for an outbound connection.
            max_payload_size: Largest declared payload length accepted.
        """
        self._port = port
        self._host = host
        self._connect_timeout = connect_timeout
        self._max_payload_size = max_payload_size
        self._state = ChannelState.IDLE
        self._send_lock = asyncio.Lock()
        self._message_callbacks: list[MessageCallback] = []
        self._connected_callbacks: list[ConnectedCallback] = []
        self._disconnected_callbacks: list[DisconnectedCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

    @property
    def state(self) -> ChannelState:
        """Return the current channel state."""
        return self._state

    @property
    def connected(self) -> bool:
        """Return True while a peer is attached."""
        return (
            self._state is ChannelState.CONNECTED
            and self._writer is not None
            and not self._writer.is_closing()
        )

    @property
    def peer(self) -> tuple[str, int] | None:
        """Return the attached peer's (host, port)."""
        return self._peer

    @property
    def port(self) -> int:
        """Return the listening port while listening, else the configured port."""
        if self._server is not None and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    def add_message_listener(self, callback: MessageCallback) -> Callable[[], None]:
        """Add a listener for received control messages.

        Returns:
            A function that removes this listener when called.
        """
        self._message_callbacks.append(callback)
        return lambda: (
            self._message_callbacks.remove(callback)
            if callback in self._message_callbacks
            else None
        )

    def add_connected_listener(self, callback: ConnectedCallback) -> Callable[[], None]:
        """Add a listener for peer attach events.

        Returns:
            A function that removes this listener when called.
        """
        self._connected_callbacks.append(callback)
        return lambda: (
            self._connected_callbacks.remove(callback)
            if callback in self._connected_callbacks
            else None
        )

    def add_disconnected_listener(self, callback: DisconnectedCallback) -> Callable[[], None]:
        """Add a listener for peer detach events.

        Returns:
            A function that removes this listener when called.
        """
        self._disconnected_callbacks.append(callback)
        return lambda: (
            self._disconnected_callbacks.remove(callback)
            if callback in self._disconnected_callbacks
            else None
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
        Listen for one inbound peer. Calling this while listening is a no-op.

        Raises:
            OSError: If the listening socket cannot be bound.
        """
        if self._server is not None:
            return
        try:
            self._server = await asyncio.start_server(
                self._handle_connection, host=self._host, port=self._port
            )
        except OSError as err:
            logger.error("Failed to listen for control on %s:%d: %s", self._host, self._port, err)
            self._state = ChannelState.DISCONNECTED
            raise
        self._state = ChannelState.LISTENING
        logger.info("Control channel listening on port %d", self.port)

    async def connect(self, host: str, port: int = DEFAULT_CONTROL_PORT) -> None:
        """
        Dial a peer's control channel.

        Raises:
            RuntimeError: If a peer is already attached.
            OSError: If the connection fails.
            TimeoutError: If the connection does not complete in time.
        """
        if self.connected:
            raise RuntimeError("Control channel is already connected")
        self._state = ChannelState.CONNECTING
        logger.info("Connecting control channel to %s:%d", host, port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self._connect_timeout
            )
        except (OSError, TimeoutError) as err:
            logger.warning("Control connection to %s:%d failed: %s", host, port, err)
            self._state = ChannelState.DISCONNECTED
            raise
        self._attach(reader, writer)

    async def send(self, message: ControlMessage) -> bool:
        """
        Encode, write and flush one message. Failures are reported, not retried.

        Raises:
            RuntimeError: If no peer is attached.

        Returns:
            True if the message was written.
        """
        if not self.connected:
            raise RuntimeError("Control channel is not connected")
        assert self._writer is not None
        data = encode_message(message)
        try:
            async with self._send_lock:
                self._writer.write(data)
                await self._writer.drain()
        except (ConnectionError, OSError) as err:
            logger.warning("Failed to send %s: %s", message.type.name, err)
            self._notify_error(err)
            return False
        logger.debug("Sent %s (%d payload bytes)", message.type.name, len(message.payload))
        return True

    async def disconnect(self) -> None:
        """Detach the current peer. Does nothing if no peer is attached."""
        current_task = asyncio.current_task()
        reader_task = self._reader_task
        self._reader_task = None
        if reader_task is not None and reader_task is not current_task:
            reader_task.cancel()
            with suppress(asyncio.CancelledError):
                await reader_task
        await self._detach()

    async def stop(self) -> None:
        """Detach the peer and close the listening socket."""
        server = self._server
        self._server = None
        await self.disconnect()
        if server is not None:
            server.close()
            await server.wait_closed()
            logger.info("Control channel stopped listening")
        self._state = ChannelState.DISCONNECTED

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Accept an inbound peer unless one is already attached."""
        peer = writer.get_extra_info("peername")
        if self._writer is not None:
            logger.warning("Rejecting control connection from %s, peer already attached", peer)
            writer.close()
            with suppress(ConnectionError, OSError):
                await writer.wait_closed()
            return
        self._attach(reader, writer)

    def _attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peername = writer.get_extra_info("peername")
        self._peer = (str(peername[0]), int(peername[1])) if peername else None
        self._reader = reader
        self._writer = writer
        self._state = ChannelState.CONNECTED
        self._reader_task = asyncio.get_running_loop().create_task(self._reader_loop())
        logger.info("Control channel connected to %s", self._peer)
        for callback in list(self._connected_callbacks):
            try:
                callback(self._peer or ("", 0))
            except Exception:
                logger.exception("Error in connected callback %s", callback)

    async def _detach(self) -> None:
        writer = self._writer
        if writer is None:
            return
        self._reader = None
        self._writer = None
        peer, self._peer = self._peer, None
        writer.close()
        self._state = (
            ChannelState.LISTENING if self._server is not None else ChannelState.DISCONNECTED
        )
        logger.info("Control channel disconnected from %s", peer)
        for callback in list(self._disconnected_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Error in disconnected callback %s", callback)
        with suppress(ConnectionError, OSError):
            await writer.wait_closed()

    async def _reader_loop(self) -> None:
        reader = self._reader
        assert reader is not None
        try:
            while True:
                header = await reader.readexactly(CONTROL_HEADER_SIZE)
                type_byte, length = unpack_control_header(header)
                if length > self._max_payload_size:
                    logger.warning(
                        "Control message declares %d payload bytes, closing channel", length
                    )
                    break
                payload = await reader.readexactly(length) if length else b""
                message = build_message(type_byte, payload)
                if message is None:
                    continue
                if message.type is ControlMessageType.UNKNOWN:
                    logger.debug("Received unknown control message type %d", type_byte)
                self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except asyncio.IncompleteReadError:
            logger.info("Control peer closed the connection")
        except (ConnectionError, OSError) as err:
            logger.warning("Control channel read failed: %s", err)
            self._notify_error(err)
        except Exception:
            logger.exception("Control channel reader encountered an error")
        # Loop ended on its own: peer closed or protocol failure
        if self._reader_task is asyncio.current_task():
            self._reader_task = None
        await self._detach()

    def _dispatch(self, message: ControlMessage) -> None:
        for callback in list(self._message_callbacks):
            try:
                callback(message)
            except Exception:
                logger.exception("Error in control message callback %s", callback)

    def _notify_error(self, err: Exception) -> None:
        for callback in list(self._error_callbacks):
            try:
                callback(err)
            except Exception:
                logger.exception("Error in control error callback %s", callback)
