"""
Tests for the /ws/updates broadcast hub.
"""

import asyncio
import json

import pytest

from common.models import StatusEvent, StatusEventType
from gateway.connection_manager import DROPPED_CLOSE_CODE, ConnectionManager


class RecordingTransport:
    def __init__(self):
        self.sent = []
        self.closed_with = None

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    def types(self):
        return [json.loads(payload)["type"] for payload in self.sent]

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code


class FailingTransport(RecordingTransport):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def send_text(self, data: str) -> None:
        self.attempts += 1
        raise RuntimeError("socket closed")


class StalledTransport(RecordingTransport):
    """Never completes a write."""

    async def send_text(self, data: str) -> None:
        await asyncio.Event().wait()


class UnencodableEvent:
    type = StatusEventType.STATUS_UPDATE

    def to_json(self) -> str:
        raise ValueError("cannot encode")


def event(event_type: StatusEventType = StatusEventType.STATUS_UPDATE) -> StatusEvent:
    return StatusEvent(type=event_type)


@pytest.mark.asyncio
async def test_broadcast_reaches_every_connection():
    manager = ConnectionManager()
    first, second = RecordingTransport(), RecordingTransport()
    manager.register("a", first)
    manager.register("b", second)

    delivered = await manager.broadcast(event())

    assert delivered == 2
    assert first.sent == second.sent
    assert first.types() == ["statusUpdate"]
    await manager.close()


@pytest.mark.asyncio
async def test_broadcast_without_connections():
    manager = ConnectionManager()

    assert await manager.broadcast(event()) == 0


@pytest.mark.asyncio
async def test_failed_connection_is_removed_when_broadcast_returns():
    manager = ConnectionManager()
    healthy, broken = RecordingTransport(), FailingTransport()
    manager.register("healthy", healthy)
    manager.register("broken", broken)

    delivered = await manager.broadcast(event())

    assert delivered == 1
    assert manager.connection_ids() == ["healthy"]
    assert not manager.is_registered("broken")

    await manager.broadcast(event())
    assert broken.attempts == 1
    assert len(healthy.sent) == 2
    await manager.close()


@pytest.mark.asyncio
async def test_stalled_connection_times_out_without_blocking_others():
    manager = ConnectionManager(send_timeout=0.05)
    healthy = RecordingTransport()
    manager.register("healthy", healthy)
    manager.register("stalled", StalledTransport())

    delivered = await manager.broadcast(event())

    assert delivered == 1
    assert healthy.types() == ["statusUpdate"]
    assert manager.get_connection_count() == 1
    await manager.close()


@pytest.mark.asyncio
async def test_overflowing_connection_is_dropped():
    manager = ConnectionManager(max_pending=1)
    manager.register("slow", StalledTransport())

    assert manager.publish(event()) == 1
    assert manager.publish(event()) == 0
    assert manager.get_connection_count() == 0
    await manager.close()


@pytest.mark.asyncio
async def test_register_and_unregister():
    manager = ConnectionManager()
    manager.register("a", RecordingTransport())
    manager.register("b", RecordingTransport())

    manager.unregister("a")

    assert manager.get_connection_count() == 1
    assert manager.connection_ids() == ["b"]

    manager.unregister("a")
    manager.unregister("never-registered")
    assert manager.get_connection_count() == 1
    await manager.close()


@pytest.mark.asyncio
async def test_unregistered_connection_receives_nothing():
    manager = ConnectionManager()
    gone = RecordingTransport()
    manager.register("gone", gone)
    manager.unregister("gone")

    assert await manager.broadcast(event()) == 0
    assert gone.sent == []


@pytest.mark.asyncio
async def test_serialization_failure_delivers_nothing():
    manager = ConnectionManager()
    transport = RecordingTransport()
    manager.register("a", transport)

    assert await manager.broadcast(UnencodableEvent()) == 0
    assert manager.publish(UnencodableEvent()) == 0

    await asyncio.sleep(0)
    assert transport.sent == []
    assert manager.is_registered("a")
    await manager.close()


@pytest.mark.asyncio
async def test_greeting_is_first_and_order_is_preserved():
    manager = ConnectionManager()
    transport = RecordingTransport()
    manager.register("a", transport, greeting=event(StatusEventType.CONNECTED))

    manager.publish(event(StatusEventType.HEARTBEAT_FIRED))
    await manager.broadcast(event(StatusEventType.STATUS_UPDATE))

    assert transport.types() == ["connected", "heartbeatFired", "statusUpdate"]
    await manager.close()


@pytest.mark.asyncio
async def test_duplicate_id_replaces_previous_connection():
    manager = ConnectionManager()
    old, new = RecordingTransport(), RecordingTransport()
    manager.register("same", old)
    manager.register("same", new)

    await manager.broadcast(event())

    assert manager.get_connection_count() == 1
    assert old.sent == []
    assert new.types() == ["statusUpdate"]
    await manager.close()


@pytest.mark.asyncio
async def test_concurrent_broadcasts_keep_per_connection_order():
    manager = ConnectionManager()
    transports = [RecordingTransport() for _ in range(3)]
    for index, transport in enumerate(transports):
        manager.register(f"c{index}", transport)

    kinds = [StatusEventType.HEARTBEAT_FIRED, StatusEventType.WEATHER_UPDATED, StatusEventType.STATUS_UPDATE]
    await asyncio.gather(*(manager.broadcast(event(kind)) for kind in kinds))

    for transport in transports:
        assert transport.types() == ["heartbeatFired", "weatherUpdated", "statusUpdate"]
    await manager.close()


@pytest.mark.asyncio
async def test_dropped_connections_are_closed():
    manager = ConnectionManager(send_timeout=0.05)
    healthy, broken, stalled = RecordingTransport(), FailingTransport(), StalledTransport()
    manager.register("healthy", healthy)
    manager.register("broken", broken)
    manager.register("stalled", stalled)

    assert await manager.broadcast(event()) == 1
    await manager.close()

    assert broken.closed_with == DROPPED_CLOSE_CODE
    assert stalled.closed_with == DROPPED_CLOSE_CODE
    assert healthy.closed_with is None


@pytest.mark.asyncio
async def test_overflowing_connection_is_closed():
    manager = ConnectionManager(max_pending=1)
    slow = StalledTransport()
    manager.register("slow", slow)

    manager.publish(event())
    manager.publish(event())
    await manager.close()

    assert slow.closed_with == DROPPED_CLOSE_CODE


@pytest.mark.asyncio
async def test_close_failure_on_dropped_connection_is_contained():
    class UnclosableTransport(FailingTransport):
        async def close(self, code: int = 1000) -> None:
            raise RuntimeError("already gone")

    manager = ConnectionManager()
    manager.register("gone", UnclosableTransport())

    assert await manager.broadcast(event()) == 0
    await manager.close()

    assert manager.get_connection_count() == 0


@pytest.mark.asyncio
async def test_unregister_leaves_socket_to_its_owner():
    manager = ConnectionManager()
    transport = RecordingTransport()
    manager.register("a", transport)

    manager.unregister("a")
    await manager.close()

    assert transport.closed_with is None
