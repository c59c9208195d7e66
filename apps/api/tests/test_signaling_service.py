"""Tests for the signaling manager, in-memory transport and websocket relay."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import ANSWER_SDP, FakeConnectionFactory
from livecast.main import app
from livecast.schemas.signaling import ConnectionState
from livecast.services.peer import PeerOrchestrator
from livecast.services.signaling import SignalingConnection, SignalingManager
from livecast.services.transport import InMemoryTransport, SignalingUnavailableError


class DummyConnection:
    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.messages: list[dict] = []

    async def send(self, message: dict) -> None:
        self.messages.append(message)


@pytest.mark.asyncio
async def test_signaling_manager_join_broadcast_leave():
    manager = SignalingManager()
    conn_a = DummyConnection("a")
    conn_b = DummyConnection("b")

    existing = await manager.join("room-1", SignalingConnection("a", conn_a.send))
    assert existing == []

    existing = await manager.join("room-1", SignalingConnection("b", conn_b.send))
    assert existing == ["a"]
    assert manager.participants("room-1") == ["a", "b"]

    await manager.broadcast("room-1", "b", {"kind": "offer", "payload": "foo"})
    assert conn_a.messages == [{"kind": "offer", "payload": "foo"}]
    assert conn_b.messages == []

    await manager.leave("room-1", "a")
    await manager.broadcast("room-1", "b", {"kind": "ice-candidate"})
    assert conn_a.messages == [{"kind": "offer", "payload": "foo"}]
    assert not manager.is_member("room-1", "a")

    await manager.leave("room-1", "b")
    assert manager.participants("room-1") == []


@pytest.mark.asyncio
async def test_broadcast_survives_a_failing_participant():
    manager = SignalingManager()
    healthy = DummyConnection("ok")

    async def broken(message: dict) -> None:
        raise ConnectionError("socket gone")

    await manager.join("room-1", SignalingConnection("broken", broken))
    await manager.join("room-1", SignalingConnection("ok", healthy.send))

    await manager.broadcast("room-1", "sender", {"kind": "answer"})

    assert healthy.messages == [{"kind": "answer"}]


@pytest.mark.asyncio
async def test_in_memory_transport_requires_subscription_to_publish():
    transport = InMemoryTransport()
    inbox: list[dict] = []

    async def collect(message: dict) -> None:
        inbox.append(message)

    with pytest.raises(SignalingUnavailableError):
        await transport.publish("room-1", {"kind": "offer", "from": "host"})

    host = await transport.subscribe("room-1", "host", collect)
    viewer_inbox: list[dict] = []

    async def collect_viewer(message: dict) -> None:
        viewer_inbox.append(message)

    await transport.subscribe("room-1", "v1", collect_viewer)
    await transport.publish("room-1", {"kind": "offer", "from": "host", "to": "v1"})

    assert viewer_inbox == [{"kind": "offer", "from": "host", "to": "v1"}]
    assert inbox == []

    await transport.unsubscribe(host)
    await transport.unsubscribe(host)
    with pytest.raises(SignalingUnavailableError):
        await transport.publish("room-1", {"kind": "offer", "from": "host"})


@pytest.mark.asyncio
async def test_host_and_viewer_negotiate_over_shared_bus():
    transport = InMemoryTransport()
    wire = DummyConnection("observer")
    await transport.manager.join("room-1", SignalingConnection("observer", wire.send))

    host_factory = FakeConnectionFactory()
    viewer_factory = FakeConnectionFactory()
    host = PeerOrchestrator("room-1", "H", transport, connection_factory=host_factory)
    viewer = PeerOrchestrator("room-1", "V1", transport, connection_factory=viewer_factory)
    await host.start()
    await viewer.start()

    await host.create_offer("V1")

    assert [(m["kind"], m["from"], m["to"]) for m in wire.messages] == [
        ("offer", "H", "V1"),
        ("answer", "V1", "H"),
    ]
    host_connection = host_factory.created[0]
    assert len(host_connection.remote_descriptions) == 1
    assert host_connection.remote_descriptions[0].sdp == ANSWER_SDP

    await host.handle_answer(wire.messages[1]["payload"], "V1")
    assert len(host_connection.remote_descriptions) == 1
    assert host.connection_state_for("V1") is ConnectionState.CONNECTING

    await viewer.cleanup()
    await host.cleanup()
    assert transport.manager.participants("room-1") == ["observer"]


def test_signaling_websocket_relay():
    client = TestClient(app)

    with client.websocket_connect("/api/rtc/signaling/test-room?participant_id=a") as ws_a:
        joined_a = ws_a.receive_json()
        assert joined_a["event"] == "joined"
        assert joined_a["participants"] == []

        with client.websocket_connect("/api/rtc/signaling/test-room?participant_id=b") as ws_b:
            joined_b = ws_b.receive_json()
            assert "a" in joined_b["participants"]

            notice = ws_a.receive_json()
            assert notice["event"] == "participant_joined"
            assert notice["participant_id"] == "b"

            ws_b.send_json({"hello": "there"})
            ws_b.send_json({"kind": "offer", "payload": {"type": "offer", "sdp": "v=0"}, "from": "mallory", "to": "a"})
            forwarded = ws_a.receive_json()
            assert forwarded["kind"] == "offer"
            assert forwarded["from"] == "b"
            assert forwarded["to"] == "a"
            assert forwarded["payload"]["sdp"] == "v=0"

        left_notice = ws_a.receive_json()
        assert left_notice["event"] == "participant_left"
        assert left_notice["participant_id"] == "b"
