from __future__ import annotations

from datetime import UTC, datetime, timedelta

import orjson
import pytest

from aiomicrelay.models import ConnectionState, ConnectionStatus, DeviceDescriptor


def test_descriptor_serializes_with_wire_keys() -> None:
    descriptor = DeviceDescriptor(
        device_id="phone-1", device_name="Pixel", ip_address="192.168.1.20", port=5001
    )
    data = orjson.loads(descriptor.to_json())
    assert data == {
        "deviceId": "phone-1",
        "deviceName": "Pixel",
        "ipAddress": "192.168.1.20",
        "port": 5001,
    }


def test_descriptor_parses_peer_json() -> None:
    payload = (
        '{"deviceId": "desk-7", "deviceName": "Desktop", "ipAddress": "10.0.0.2",'
        ' "port": 5001, "lastSeen": "2026-01-02T03:04:05+00:00"}'
    )
    descriptor = DeviceDescriptor.from_json(payload)
    assert descriptor.device_id == "desk-7"
    assert descriptor.device_name == "Desktop"
    assert descriptor.ip_address == "10.0.0.2"
    assert descriptor.port == 5001
    assert descriptor.last_seen == datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


def test_descriptor_last_seen_is_optional() -> None:
    descriptor = DeviceDescriptor.from_json('{"deviceId": "x"}')
    assert descriptor.last_seen is None
    assert descriptor.port == 0


def test_descriptor_rejects_empty_id() -> None:
    with pytest.raises(ValueError):
        DeviceDescriptor(device_id="")


def test_descriptor_rejects_invalid_port() -> None:
    with pytest.raises(ValueError):
        DeviceDescriptor(device_id="x", port=70000)


def test_seen_at_returns_stamped_copy() -> None:
    original = DeviceDescriptor(device_id="x")
    when = datetime(2026, 5, 1, tzinfo=UTC)
    stamped = original.seen_at(when)
    assert stamped.last_seen == when
    assert original.last_seen is None


def test_connection_state_derived_values() -> None:
    state = ConnectionState()
    assert not state.is_connected
    assert state.connection_duration is None

    state.status = ConnectionStatus.STREAMING
    state.connected_at = datetime.now(UTC) - timedelta(seconds=5)
    assert state.is_connected
    assert state.connection_duration is not None
    assert state.connection_duration >= 5


def test_connection_state_reset_counters() -> None:
    state = ConnectionState(bytes_sent=10, packets_received=3, packet_loss_rate=0.5)
    state.reset_counters()
    assert state.bytes_sent == 0
    assert state.packets_received == 0
    assert state.packet_loss_rate == 0.0
