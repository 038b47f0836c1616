"""Session orchestration: one connection state machine over all channels."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Coroutine, Mapping
from contextlib import suppress
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from aiomicrelay.audio.devices import AudioCapture, AudioInjector, StreamStartupError
from aiomicrelay.audio.encoder import AudioEncoder
from aiomicrelay.audio.jitter_buffer import JitterBuffer, JitterBufferConfig
from aiomicrelay.models import DEFAULT_AUDIO_PORT, DEFAULT_CONTROL_PORT, DEFAULT_DISCOVERY_PORT
from aiomicrelay.models.audio import AudioPacket, AudioSettings
from aiomicrelay.models.control import ControlMessage
from aiomicrelay.models.device import DeviceDescriptor
from aiomicrelay.models.state import ConnectionState
from aiomicrelay.models.types import ConnectionStatus, ControlMessageType
from aiomicrelay.network.control import ControlChannel
from aiomicrelay.network.discovery import DEFAULT_BROADCAST_ADDRESS, DiscoveryService
from aiomicrelay.network.mdns import MdnsAdvertiser
from aiomicrelay.network.udp import UdpAudioTransport
from aiomicrelay.util import local_device_descriptor

logger = logging.getLogger(__name__)


class SessionEvent:
    """Base event type used by SessionOrchestrator.add_event_listener()."""


@dataclass
class ConnectionStateChangedEvent(SessionEvent):
    """The session moved to a new status. ``state`` is a snapshot."""

    state: ConnectionState


@dataclass
class DeviceDiscoveredEvent(SessionEvent):
    """A new peer was seen on the discovery port."""

    device: DeviceDescriptor


@dataclass
class DeviceLostEvent(SessionEvent):
    """A peer stopped announcing itself and was evicted."""

    device_id: str


@dataclass
class SessionErrorEvent(SessionEvent):
    """A channel reported an error."""

    source: str
    """Channel that failed: "audio", "control", "discovery" or "device"."""
    error: Exception


# Callback invoked with released PCM from the peer, in sequence order.
AudioCallback = Callable[[bytes], None]


class SessionOrchestrator:
    """
    Composes the audio, control and discovery channels into one session.

    All state changes go through a single transition method and are guarded by
    one lock, so counters stay consistent whether they are touched from the
    event loop or from a playback thread polling audio. Nothing reconnects on
    its own; call connect_to_peer() or start_as_server() again after a failure.
    """

    _loop: asyncio.AbstractEventLoop | None = None
    _event_cbs: list[Callable[[SessionOrchestrator, SessionEvent], None]]
    _audio_cbs: list[AudioCallback]

    def __init__(
        self,
        *,
        audio_port: int = DEFAULT_AUDIO_PORT,
        control_port: int = DEFAULT_CONTROL_PORT,
        discovery_port: int = DEFAULT_DISCOVERY_PORT,
        host: str = "0.0.0.0",
        broadcast_address: str = DEFAULT_BROADCAST_ADDRESS,
        settings: AudioSettings | None = None,
        jitter_config: JitterBufferConfig | None = None,
        downmix: bool = False,
        release_on_arrival: bool = True,
        local_device: DeviceDescriptor | None = None,
        capture: AudioCapture | None = None,
        injector: AudioInjector | None = None,
        advertise_mdns: bool = False,
        discovery_kwargs: Mapping[str, Any] | None = None,
    ) -> None:
        """
        Create a session. No socket is opened until a start method is called.

        Args:
            audio_port: Local UDP port for incoming audio.
            control_port: Local TCP port for the control channel (listen role).
            discovery_port: UDP port for presence broadcasts.
            host: Local address every channel binds to.
            broadcast_address: Destination of presence broadcasts.
            settings: Format of captured audio sent by this session.
            jitter_config: Tuning of the receive side jitter buffer.
            downmix: Send 16-bit stereo capture as mono.
            release_on_arrival: Release at most one packet to audio listeners per
                arriving packet. When False, the consumer calls poll_audio().
            local_device: Descriptor announced by broadcast_presence() and used to
                answer discovery requests. Built from the host when omitted.
            capture: Microphone collaborator started by start_streaming().
            injector: Playback collaborator started on the peer's START_STREAM.
            advertise_mdns: Also advertise the control channel via mDNS while serving.
            discovery_kwargs: Extra keyword arguments for DiscoveryService, e.g.
                sweep_interval or device_timeout.
        """
        self._settings = settings if settings is not None else AudioSettings()
        self._audio = UdpAudioTransport(audio_port, host=host)
        self._control = ControlChannel(control_port, host=host)
        self._discovery = DiscoveryService(
            discovery_port,
            host=host,
            broadcast_address=broadcast_address,
            local_device=local_device,
            **dict(discovery_kwargs or {}),
        )
        self._encoder = AudioEncoder(self._settings, downmix=downmix)
        self._jitter = JitterBuffer(jitter_config)
        self._release_on_arrival = release_on_arrival
        self._local_device = local_device
        self._capture = capture
        self._injector = injector
        self._mdns = (
            MdnsAdvertiser(local_device.device_id, local_device.device_name)
            if advertise_mdns and local_device is not None
            else None
        )
        self._advertise_mdns = advertise_mdns

        self._state = ConnectionState()
        self._state_lock = threading.RLock()
        self._event_cbs = []
        self._audio_cbs = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._capturing = False
        self._injecting = False
        self._last_pong: datetime | None = None
        self._control_failed = False

        self._audio.add_packet_listener(self._on_audio_packet)
        self._audio.add_error_listener(lambda err: self._on_transport_error("audio", err))
        self._control.add_message_listener(self._on_control_message)
        self._control.add_connected_listener(self._on_peer_connected)
        self._control.add_disconnected_listener(self._on_peer_disconnected)
        self._control.add_error_listener(lambda err: self._on_transport_error("control", err))
        self._discovery.add_device_discovered_listener(
            lambda device: self._signal_event(DeviceDiscoveredEvent(device))
        )
        self._discovery.add_device_lost_listener(
            lambda device_id: self._signal_event(DeviceLostEvent(device_id))
        )
        self._discovery.add_error_listener(lambda err: self._on_transport_error("discovery", err))

    @property
    def state(self) -> ConnectionState:
        """Return a snapshot of the connection state."""
        with self._state_lock:
            return replace(self._state)

    @property
    def status(self) -> ConnectionStatus:
        """Return the current connection status."""
        return self._state.status

    @property
    def settings(self) -> AudioSettings:
        """Return the format of audio sent by this session."""
        return self._settings

    @property
    def audio_transport(self) -> UdpAudioTransport:
        """Return the audio transport."""
        return self._audio

    @property
    def control_channel(self) -> ControlChannel:
        """Return the control channel."""
        return self._control

    @property
    def discovery(self) -> DiscoveryService:
        """Return the discovery service."""
        return self._discovery

    @property
    def jitter_buffer(self) -> JitterBuffer:
        """Return the receive side jitter buffer."""
        return self._jitter

    @property
    def encoder(self) -> AudioEncoder:
        """Return the send side encoder."""
        return self._encoder

    @property
    def last_pong(self) -> datetime | None:
        """Return when the peer last answered a ping."""
        return self._last_pong

    def add_event_listener(
        self, callback: Callable[[SessionOrchestrator, SessionEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback for session events.

        Events include state changes, discovered and lost devices and errors.
        Callbacks run inline on the context that produced the event.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def add_audio_listener(self, callback: AudioCallback) -> Callable[[], None]:
        """
        Register a playback callback receiving released PCM in sequence order.

        The callback runs on the receive path and must return promptly.

        Returns a function to remove the listener.
        """
        self._audio_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._audio_cbs.remove(callback)

        return _remove

    async def start_as_server(self) -> None:
        """
        Start receiving audio, listening for a control peer and for discovery.

        Raises:
            OSError: If any channel fails to bind. Channels already started are
                stopped again and the session moves to ERROR.
        """
        self._loop = asyncio.get_running_loop()
        try:
            await self._audio.start_receiving()
            await self._control.start_listening()
            await self._discovery.start_listening()
        except OSError as err:
            await self._stop_channels()
            self._transition(ConnectionStatus.ERROR, error_message=f"Failed to start server: {err}")
            raise
        if self._advertise_mdns:
            await self._start_mdns()
        self._transition(ConnectionStatus.CONNECTING)
        logger.info(
            "Session serving: audio %d, control %d, discovery %d",
            self._audio.port,
            self._control.port,
            self._discovery.port,
        )

    async def connect_to_peer(self, host: str, port: int = DEFAULT_CONTROL_PORT) -> bool:
        """
        Dial a peer's control channel.

        Returns:
            True once connected, False if the connection failed (session in ERROR).
        """
        self._loop = asyncio.get_running_loop()
        self._transition(ConnectionStatus.CONNECTING)
        try:
            await self._control.connect(host, port)
        except (OSError, TimeoutError, RuntimeError) as err:
            self._transition(ConnectionStatus.ERROR, error_message=f"Connection failed: {err}")
            self._signal_event(SessionErrorEvent("control", err))
            return False
        return True

    async def connect_to_device(self, device_id: str) -> bool:
        """
        Connect to a device from the discovery registry.

        Raises:
            KeyError: If the device is not in the registry.
        """
        device = self._discovery.devices[device_id]
        return await self.connect_to_peer(device.ip_address, device.port)

    async def start_streaming(
        self, destination_host: str | None = None, audio_port: int = DEFAULT_AUDIO_PORT
    ) -> None:
        """
        Ask the peer to receive audio and start sending captured frames.

        Args:
            destination_host: Host audio is sent to; defaults to the control peer.
            audio_port: Peer's audio UDP port.

        Raises:
            RuntimeError: If the control channel is not connected.
            StreamStartupError: If the capture device fails to initialize or start.
        """
        if not self._control.connected:
            raise RuntimeError("Cannot start streaming without a connected peer")
        host = destination_host or (self._control.peer or ("", 0))[0]
        if self._capture is not None and not self._capturing:
            await self._start_capture()

        sent = await self._control.send(
            ControlMessage(type=ControlMessageType.START_STREAM, payload=str(audio_port))
        )
        if not sent:
            await self._stop_capture()
            self._transition(ConnectionStatus.ERROR, error_message="Failed to start streaming")
            return
        with self._state_lock:
            self._state.remote_address = host
            self._state.remote_port = audio_port
        self._transition(ConnectionStatus.STREAMING)
        logger.info("Streaming %s to %s:%d", self._settings.format_description, host, audio_port)

    async def stop_streaming(self) -> None:
        """Ask the peer to stop receiving audio and stop sending."""
        await self._stop_capture()
        if self._control.connected:
            await self._control.send(ControlMessage(type=ControlMessageType.STOP_STREAM))
        if self._state.status is ConnectionStatus.STREAMING:
            self._transition(ConnectionStatus.CONNECTED)

    async def send_audio(self, pcm: bytes) -> bool:
        """
        Packetize and send one captured frame. Ignored unless streaming.

        Returns:
            True if a packet was sent.
        """
        with self._state_lock:
            if self._state.status is not ConnectionStatus.STREAMING:
                return False
            address = self._state.remote_address
            port = self._state.remote_port
        if address is None:
            return False
        packet = await self._audio.send_audio(pcm, self._encoder, (address, port))
        if packet is None:
            return False
        with self._state_lock:
            self._state.bytes_sent += len(packet.payload)
            self._state.packets_sent += 1
        return True

    async def send_ping(self) -> bool:
        """Send a keepalive ping to the peer."""
        return await self._control.send(ControlMessage(type=ControlMessageType.PING))

    def poll_audio(self) -> bytes | None:
        """
        Release the next packet's PCM from the jitter buffer, if ready.

        Safe to call from a playback thread. Audio listeners are not invoked.
        """
        packet = self._jitter.next()
        if packet is None:
            return None
        self._count_released(packet)
        return packet.payload

    async def broadcast_presence(self, descriptor: DeviceDescriptor | None = None) -> bool:
        """Announce ``descriptor`` (this device by default) on the discovery port."""
        if descriptor is None:
            descriptor = self.local_device
        return await self._discovery.broadcast_presence(descriptor)

    @property
    def local_device(self) -> DeviceDescriptor:
        """Return this device's descriptor, building it on first use."""
        if self._local_device is None:
            self._local_device = local_device_descriptor(self._control.port)
            self._discovery.local_device = self._local_device
        return self._local_device

    def discovered_devices(self) -> Mapping[str, DeviceDescriptor]:
        """Return the discovery registry keyed by device id."""
        return self._discovery.devices

    async def disconnect(self) -> None:
        """Stop every channel and collaborator and move to DISCONNECTED."""
        await self._stop_capture()
        await self._stop_injector()
        await self._stop_channels()
        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._jitter.reset()
        self._transition(ConnectionStatus.DISCONNECTED)

    def _transition(self, status: ConnectionStatus, *, error_message: str | None = None) -> None:
        """Apply a status change; the only place ConnectionState.status is written."""
        with self._state_lock:
            state = self._state
            previous = state.status
            state.status = status
            if status is ConnectionStatus.ERROR:
                state.error_message = error_message
            elif status is ConnectionStatus.CONNECTING:
                state.error_message = None
            if status is ConnectionStatus.CONNECTED and state.connected_at is None:
                state.connected_at = datetime.now(UTC)
            elif status is ConnectionStatus.DISCONNECTED:
                state.connected_at = None
                state.remote_address = None
                state.remote_port = 0
                state.reset_counters()
            snapshot = replace(state)
        if previous is not status:
            logger.info("Session %s -> %s", previous.value, status.value)
        if status is ConnectionStatus.ERROR:
            logger.error("Session error: %s", error_message)
        self._signal_event(ConnectionStateChangedEvent(snapshot))

    def _signal_event(self, event: SessionEvent) -> None:
        """Signal an event to all registered listeners."""
        for cb in list(self._event_cbs):
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        """Run ``coro`` as a background task on the session's loop."""
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_audio_packet(self, packet: AudioPacket, addr: tuple[str, int]) -> None:
        self._jitter.receive(packet)
        if not self._release_on_arrival:
            return
        released = self._jitter.next()
        if released is None:
            return
        self._count_released(released)
        for callback in list(self._audio_cbs):
            try:
                callback(released.payload)
            except Exception:
                logger.exception("Error in audio callback %s", callback)
        if self._injector is not None and self._injecting:
            try:
                self._injector.write(released.payload)
            except Exception as err:
                logger.exception("Audio injector write failed")
                self._signal_event(SessionErrorEvent("device", err))

    def _count_released(self, packet: AudioPacket) -> None:
        with self._state_lock:
            self._state.bytes_received += len(packet.payload)
            self._state.packets_received += 1
            self._state.packet_loss_rate = self._jitter.loss_rate()

    def _on_control_message(self, message: ControlMessage) -> None:
        match message.type:
            case ControlMessageType.PING:
                self._spawn(self._reply(ControlMessageType.PONG))
            case ControlMessageType.PONG:
                self._last_pong = datetime.now(UTC)
                logger.debug("Keepalive answered by peer")
            case ControlMessageType.START_STREAM:
                self._spawn(self._handle_start_stream(message))
            case ControlMessageType.STOP_STREAM:
                self._spawn(self._handle_stop_stream())
            case ControlMessageType.STREAM_STARTED | ControlMessageType.STREAM_STOPPED:
                logger.info("Peer acknowledged %s", message.type.name)
            case ControlMessageType.ERROR:
                self._transition(
                    ConnectionStatus.ERROR, error_message=f"Peer error: {message.payload}"
                )
            case _:
                logger.debug("Ignoring control message %s", message.type.name)

    async def _handle_start_stream(self, message: ControlMessage) -> None:
        logger.info("Peer starts streaming to audio port %s", message.payload or "?")
        self._jitter.reset()
        if self._injector is not None and not self._injecting:
            try:
                await self._start_injector()
            except StreamStartupError as err:
                self._signal_event(SessionErrorEvent("device", err))
                self._transition(ConnectionStatus.ERROR, error_message=str(err))
                await self._reply(ControlMessageType.ERROR, str(err))
                return
        self._transition(ConnectionStatus.STREAMING)
        await self._reply(ControlMessageType.STREAM_STARTED)

    async def _handle_stop_stream(self) -> None:
        await self._stop_injector()
        if self._state.status is ConnectionStatus.STREAMING:
            self._transition(ConnectionStatus.CONNECTED)
        await self._reply(ControlMessageType.STREAM_STOPPED)

    async def _reply(self, message_type: ControlMessageType, payload: str = "") -> None:
        """Send a message to the peer unless it has already gone away."""
        if not self._control.connected:
            logger.debug("Not sending %s, peer is gone", message_type.name)
            return
        await self._control.send(ControlMessage(type=message_type, payload=payload))

    def _on_peer_connected(self, peer: tuple[str, int]) -> None:
        self._control_failed = False
        with self._state_lock:
            self._state.remote_address = peer[0]
        self._transition(ConnectionStatus.CONNECTED)

    def _on_peer_disconnected(self) -> None:
        if self._capturing:
            self._spawn(self._stop_capture())
        if self._injecting:
            self._spawn(self._stop_injector())
        if self._control_failed:
            # ERROR stands until the next connect or disconnect()
            self._control_failed = False
            logger.info("Control peer detached after an error, session stays in error")
            return
        self._transition(ConnectionStatus.DISCONNECTED)

    def _on_transport_error(self, source: str, err: Exception) -> None:
        self._signal_event(SessionErrorEvent(source, err))
        if source == "control":
            self._control_failed = True
        self._transition(ConnectionStatus.ERROR, error_message=f"{source} error: {err}")
        if source == "audio":
            self._spawn(self._audio.stop_receiving())
        elif source == "discovery":
            self._spawn(self._discovery.stop())

    def _on_captured_frame(self, pcm: bytes) -> None:
        """Capture callback; may be invoked from the capture device's thread."""
        loop = self._loop
        if loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._spawn(self.send_audio(pcm))
        else:
            asyncio.run_coroutine_threadsafe(self.send_audio(pcm), loop)

    async def _start_capture(self) -> None:
        assert self._capture is not None
        if not await self._capture.initialize(self._settings):
            raise StreamStartupError("Audio capture could not be initialized")
        if not await self._capture.start(self._on_captured_frame):
            raise StreamStartupError("Audio capture could not be started")
        self._capturing = True
        logger.info("Audio capture started (%s)", self._settings.format_description)

    async def _stop_capture(self) -> None:
        if self._capture is None or not self._capturing:
            return
        self._capturing = False
        try:
            await self._capture.stop()
        except Exception as err:
            logger.exception("Audio capture failed to stop")
            self._signal_event(SessionErrorEvent("device", err))

    async def _start_injector(self) -> None:
        assert self._injector is not None
        settings = self._jitter.settings or self._settings
        if not await self._injector.initialize(settings):
            raise StreamStartupError("Audio injector could not be initialized")
        if not await self._injector.start():
            raise StreamStartupError("Audio injector could not be started")
        self._injecting = True
        logger.info("Injecting audio into %s", self._injector.device_name)

    async def _stop_injector(self) -> None:
        if self._injector is None or not self._injecting:
            return
        self._injecting = False
        try:
            await self._injector.stop()
        except Exception as err:
            logger.exception("Audio injector failed to stop")
            self._signal_event(SessionErrorEvent("device", err))

    async def _start_mdns(self) -> None:
        if self._mdns is None:
            device = self.local_device
            self._mdns = MdnsAdvertiser(device.device_id, device.device_name)
        try:
            await self._mdns.start(self._control.port, self._audio.port)
        except OSError as err:
            logger.warning("mDNS advertising unavailable: %s", err)

    async def _stop_channels(self) -> None:
        if self._mdns is not None:
            await self._mdns.stop()
        await self._control.stop()
        await self._audio.close()
        await self._discovery.stop()
