"""Shared stand-ins for aiortc peer connections and the signaling bus."""
from __future__ import annotations

import asyncio
import inspect
from uuid import uuid4

import pytest
from aiortc import RTCSessionDescription

from livecast.services.transport import Subscription

OFFER_SDP = "v=0\r\no=- 1 1 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"
ANSWER_SDP = "v=0\r\no=- 2 2 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"
HOST_CANDIDATE = {
    "candidate": "candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


def candidate(port: int) -> dict:
    return {
        "candidate": f"candidate:1 1 udp 2130706431 192.168.1.10 {port} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.id = str(uuid4())


class FakeSender:
    def __init__(self, track) -> None:
        self.track = track

    def replaceTrack(self, track) -> None:
        self.track = track


class FakePeerConnection:
    """Mimics the slice of ``RTCPeerConnection`` the orchestrator touches."""

    def __init__(self, slow_close: bool = False) -> None:
        self.slow_close = slow_close
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceGatheringState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.remote_descriptions: list = []
        self.candidates: list = []
        self.senders: list[FakeSender] = []
        self.closed = False
        self.fail_on: set[str] = set()
        self._handlers: dict[str, list] = {}

    def on(self, event, handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def emit(self, event, *args) -> None:
        for handler in self._handlers.get(event, []):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    async def set_connection_state(self, state: str) -> None:
        self.connectionState = state
        await self.emit("connectionstatechange")

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    async def createOffer(self):
        self._check("createOffer")
        return RTCSessionDescription(sdp=OFFER_SDP, type="offer")

    async def createAnswer(self):
        self._check("createAnswer")
        return RTCSessionDescription(sdp=ANSWER_SDP, type="answer")

    async def setLocalDescription(self, description) -> None:
        self._check("setLocalDescription")
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description) -> None:
        self._check("setRemoteDescription")
        self.remoteDescription = description
        self.remote_descriptions.append(description)
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, ice_candidate) -> None:
        self._check("addIceCandidate")
        self.candidates.append(ice_candidate)

    def getSenders(self) -> list[FakeSender]:
        return list(self.senders)

    def addTrack(self, track) -> FakeSender:
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    async def close(self) -> None:
        if self.slow_close:
            await asyncio.sleep(0)
        self.closed = True
        self.connectionState = "closed"
        self.signalingState = "closed"


class FakeConnectionFactory:
    def __init__(self) -> None:
        self.created: list[FakePeerConnection] = []
        self.slow_close = False

    def __call__(self) -> FakePeerConnection:
        connection = FakePeerConnection(slow_close=self.slow_close)
        self.created.append(connection)
        return connection


class RecordingTransport:
    """Transport double that keeps every published message."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []
        self.subscriptions: list[Subscription] = []
        self.unsubscribed = 0
        self.handler = None

    async def subscribe(self, room, peer_id, on_message) -> Subscription:
        self.handler = on_message
        subscription = Subscription(room=room, peer_id=peer_id)
        self.subscriptions.append(subscription)
        return subscription

    async def publish(self, room, message) -> None:
        self.published.append((room, message))

    async def unsubscribe(self, subscription) -> None:
        subscription.active = False
        self.unsubscribed += 1

    def messages(self, kind: str | None = None) -> list[dict]:
        return [message for _, message in self.published if kind is None or message["kind"] == kind]


@pytest.fixture
def factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()
