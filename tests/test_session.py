from __future__ import annotations

import asyncio
import socket
from collections.abc import Callable

import pytest

from aiomicrelay.audio import FrameCallback, JitterBufferConfig, StreamStartupError
from aiomicrelay.models import (
    AudioPacket,
    AudioSettings,
    ConnectionStatus,
    ControlMessage,
    ControlMessageType,
    DeviceDescriptor,
)
from aiomicrelay.session import (
    ConnectionStateChangedEvent,
    SessionErrorEvent,
    SessionEvent,
    SessionOrchestrator,
)


def _get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def _session(**kwargs) -> SessionOrchestrator:
    return SessionOrchestrator(
        audio_port=0, control_port=0, discovery_port=0, host="127.0.0.1", **kwargs
    )


class _FakeCapture:
    def __init__(self, *, available: bool = True) -> None:
        self.available = available
        self.on_frame: FrameCallback | None = None
        self.stopped = False

    async def initialize(self, settings: AudioSettings) -> bool:
        return self.available

    async def start(self, on_frame: FrameCallback) -> bool:
        self.on_frame = on_frame
        return True

    async def stop(self) -> None:
        self.stopped = True


class _FakeInjector:
    def __init__(self) -> None:
        self.settings: AudioSettings | None = None
        self.written: list[bytes] = []
        self.running = False

    @property
    def device_name(self) -> str:
        return "Virtual Mic"

    async def initialize(self, settings: AudioSettings) -> bool:
        self.settings = settings
        return True

    async def start(self) -> bool:
        self.running = True
        return True

    async def stop(self) -> None:
        self.running = False

    def write(self, pcm: bytes) -> None:
        self.written.append(pcm)


async def _connected_pair(
    server: SessionOrchestrator, client: SessionOrchestrator
) -> None:
    await server.start_as_server()
    assert server.status is ConnectionStatus.CONNECTING
    assert await client.connect_to_peer("127.0.0.1", server.control_channel.port)
    await _wait_for(lambda: server.status is ConnectionStatus.CONNECTED)
    assert client.status is ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_stream_audio_between_sessions() -> None:
    server = _session(jitter_config=JitterBufferConfig(target_depth=2))
    client = _session()
    played: list[bytes] = []
    server.add_audio_listener(played.append)
    try:
        await _connected_pair(server, client)
        assert client.state.connected_at is not None

        await client.start_streaming("127.0.0.1", server.audio_transport.port)
        assert client.status is ConnectionStatus.STREAMING
        await _wait_for(lambda: server.status is ConnectionStatus.STREAMING)

        frames = [bytes([index, 0]) * 960 for index in range(5)]
        for frame in frames:
            assert await client.send_audio(frame)
        await _wait_for(lambda: len(played) == 4)
        assert played == frames[:4]

        client_state = client.state
        assert client_state.packets_sent == 5
        assert client_state.bytes_sent == 5 * 1920
        assert client_state.remote_port == server.audio_transport.port
        server_state = server.state
        assert server_state.packets_received == 4
        assert server_state.bytes_received == 4 * 1920
        assert server_state.packet_loss_rate == 0.0

        await client.stop_streaming()
        assert client.status is ConnectionStatus.CONNECTED
        await _wait_for(lambda: server.status is ConnectionStatus.CONNECTED)
        assert not await client.send_audio(frames[0])
    finally:
        await client.disconnect()
        await server.disconnect()


@pytest.mark.asyncio
async def test_ping_is_answered() -> None:
    server = _session()
    client = _session()
    try:
        await _connected_pair(server, client)
        assert client.last_pong is None
        assert await client.send_ping()
        await _wait_for(lambda: client.last_pong is not None)
    finally:
        await client.disconnect()
        await server.disconnect()


@pytest.mark.asyncio
async def test_peer_disconnect_resets_counters() -> None:
    server = _session(jitter_config=JitterBufferConfig(target_depth=1))
    client = _session()
    events: list[SessionEvent] = []
    server.add_event_listener(lambda _session, event: events.append(event))
    try:
        await _connected_pair(server, client)
        await client.start_streaming("127.0.0.1", server.audio_transport.port)
        await _wait_for(lambda: server.status is ConnectionStatus.STREAMING)
        assert await client.send_audio(b"\x01\x00" * 960)
        await _wait_for(lambda: server.state.packets_received == 1)

        await client.disconnect()
        assert client.status is ConnectionStatus.DISCONNECTED
        await _wait_for(lambda: server.status is ConnectionStatus.DISCONNECTED)
        state = server.state
        assert state.packets_received == 0
        assert state.bytes_received == 0
        assert state.connected_at is None
        assert client.state.packets_sent == 0

        statuses = [
            event.state.status for event in events if isinstance(event, ConnectionStateChangedEvent)
        ]
        assert statuses[:3] == [
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
            ConnectionStatus.STREAMING,
        ]
        assert statuses[-1] is ConnectionStatus.DISCONNECTED
    finally:
        await client.disconnect()
        await server.disconnect()


@pytest.mark.asyncio
async def test_peer_error_message_moves_to_error() -> None:
    server = _session()
    client = _session()
    try:
        await _connected_pair(server, client)
        await server.control_channel.send(
            ControlMessage(type=ControlMessageType.ERROR, payload="microphone busy")
        )
        await _wait_for(lambda: client.status is ConnectionStatus.ERROR)
        assert client.state.error_message is not None
        assert "microphone busy" in client.state.error_message
    finally:
        await client.disconnect()
        await server.disconnect()


@pytest.mark.asyncio
async def test_connect_failure_reports_error() -> None:
    client = _session()
    errors: list[SessionEvent] = []

    def _on_event(_session: SessionOrchestrator, event: SessionEvent) -> None:
        if isinstance(event, SessionErrorEvent):
            errors.append(event)

    client.add_event_listener(_on_event)
    assert not await client.connect_to_peer("127.0.0.1", _get_free_port())
    assert client.status is ConnectionStatus.ERROR
    assert client.state.error_message is not None
    assert len(errors) == 1
    await client.disconnect()
    assert client.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_start_streaming_requires_connection() -> None:
    client = _session()
    with pytest.raises(RuntimeError):
        await client.start_streaming("127.0.0.1")
    assert client.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_capture_failure_blocks_streaming() -> None:
    server = _session()
    capture = _FakeCapture(available=False)
    client = _session(capture=capture)
    try:
        await _connected_pair(server, client)
        with pytest.raises(StreamStartupError):
            await client.start_streaming("127.0.0.1", server.audio_transport.port)
        assert client.status is ConnectionStatus.CONNECTED
        await asyncio.sleep(0.1)
        assert server.status is ConnectionStatus.CONNECTED
    finally:
        await client.disconnect()
        await server.disconnect()


@pytest.mark.asyncio
async def test_captured_frames_reach_the_injector() -> None:
    injector = _FakeInjector()
    server = _session(jitter_config=JitterBufferConfig(target_depth=1), injector=injector)
    capture = _FakeCapture()
    client = _session(capture=capture)
    try:
        await _connected_pair(server, client)
        await client.start_streaming("127.0.0.1", server.audio_transport.port)
        await _wait_for(lambda: server.status is ConnectionStatus.STREAMING)
        assert injector.running
        assert injector.settings == AudioSettings()

        assert capture.on_frame is not None
        capture.on_frame(b"\x05\x00" * 960)
        await _wait_for(lambda: len(injector.written) == 1)
        assert injector.written == [b"\x05\x00" * 960]

        await client.stop_streaming()
        assert capture.stopped
        await _wait_for(lambda: not injector.running)
    finally:
        await client.disconnect()
        await server.disconnect()


@pytest.mark.asyncio
async def test_audio_transport_error_leaves_control_running() -> None:
    server = _session()
    client = _session()
    try:
        await _connected_pair(server, client)
        server.audio_transport._notify_error(OSError("network unreachable"))  # noqa: SLF001
        assert server.status is ConnectionStatus.ERROR
        assert server.state.error_message is not None
        assert "network unreachable" in server.state.error_message
        await _wait_for(lambda: not server.audio_transport.receiving)
        assert server.control_channel.connected
    finally:
        await client.disconnect()
        await server.disconnect()


@pytest.mark.asyncio
async def test_polled_playout() -> None:
    server = _session(jitter_config=JitterBufferConfig(target_depth=2), release_on_arrival=False)
    client = _session()
    played: list[bytes] = []
    server.add_audio_listener(played.append)
    try:
        await _connected_pair(server, client)
        await client.start_streaming("127.0.0.1", server.audio_transport.port)
        await _wait_for(lambda: server.status is ConnectionStatus.STREAMING)
        for index in range(3):
            assert await client.send_audio(bytes([index, 0]) * 10)
        await _wait_for(lambda: server.jitter_buffer.received_count == 3)
        assert played == []

        polled = [server.poll_audio() for _ in range(4)]
        assert polled == [bytes([0, 0]) * 10, bytes([1, 0]) * 10, bytes([2, 0]) * 10, None]
        assert server.state.packets_received == 3
    finally:
        await client.disconnect()
        await server.disconnect()


@pytest.mark.asyncio
async def test_connect_to_discovered_device() -> None:
    server = _session()
    client = _session()
    try:
        await server.start_as_server()
        descriptor = DeviceDescriptor(
            device_id="desk",
            device_name="Desk",
            ip_address="127.0.0.1",
            port=server.control_channel.port,
        )
        announcement = ControlMessage(
            type=ControlMessageType.DISCOVERY_RESPONSE, payload=descriptor.to_json()
        )
        client.discovery.handle_message(announcement, ("127.0.0.1", 5002))
        assert "desk" in client.discovered_devices()
        assert await client.connect_to_device("desk")
        await _wait_for(lambda: server.status is ConnectionStatus.CONNECTED)
        with pytest.raises(KeyError):
            await client.connect_to_device("missing")
    finally:
        await client.disconnect()
        await server.disconnect()


@pytest.mark.asyncio
async def test_local_device_is_built_from_control_port() -> None:
    session = _session()
    device = session.local_device
    assert device.port == session.control_channel.port
    assert session.discovery.local_device is device


@pytest.mark.asyncio
async def test_control_failure_stays_in_error_after_detach() -> None:
    server = _session()
    client = _session()
    try:
        await _connected_pair(server, client)
        server.control_channel._notify_error(ConnectionResetError("reset by peer"))  # noqa: SLF001
        assert server.status is ConnectionStatus.ERROR

        await client.disconnect()
        await _wait_for(lambda: not server.control_channel.connected)
        await asyncio.sleep(0.05)
        assert server.status is ConnectionStatus.ERROR
        assert server.state.error_message is not None
        assert "reset by peer" in server.state.error_message

        assert await client.connect_to_peer("127.0.0.1", server.control_channel.port)
        await _wait_for(lambda: server.status is ConnectionStatus.CONNECTED)
    finally:
        await client.disconnect()
        await server.disconnect()


def test_playback_resumes_after_burst_loss() -> None:
    server = _session(
        jitter_config=JitterBufferConfig(target_depth=5, ahead_window=10, max_depth=15)
    )
    played: list[bytes] = []
    server.add_audio_listener(played.append)
    for seq in [*range(5), *range(17, 1017)]:
        packet = AudioPacket(
            sequence=seq,
            timestamp=seq * 20,
            sample_rate=48000,
            channels=1,
            bits_per_sample=16,
            payload=seq.to_bytes(4, "little"),
        )
        server._on_audio_packet(packet, ("127.0.0.1", 5000))  # noqa: SLF001
    before_gap = 5
    sequences = [int.from_bytes(pcm, "little") for pcm in played]
    assert sequences[:before_gap] == [0, 1, 2, 3, 4]
    assert len(sequences) - before_gap > 900
    assert sequences == sorted(sequences)
    assert server.jitter_buffer.pending_count <= 15
    assert server.state.packet_loss_rate > 0
