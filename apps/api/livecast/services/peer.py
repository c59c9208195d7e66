"""Peer connection orchestration over a shared room signaling channel.

One :class:`PeerOrchestrator` represents this process's participation in a
room. It owns one :class:`PeerSession` per remote peer, buffers ICE candidates
that show up before the description they belong to, keeps every session's
outgoing tracks in line with the local stream, and is the only component that
reads from or writes to the signaling transport.
"""
from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, Optional

from aiortc import RTCPeerConnection
from pydantic import ValidationError

from ..core.config import settings
from ..schemas.signaling import (
    ConnectionState,
    PeerRole,
    PresenceEvent,
    SignalingKind,
    SignalingMessage,
    is_presence,
)
from .candidates import PendingCandidateQueue
from .media import LocalMediaBinding, MediaStream
from .negotiation import PeerSession, build_rtc_configuration
from .transport import SignalingTransport, SignalingUnavailableError, Subscription

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Any]
StateListener = Callable[[ConnectionState], None]
StreamListener = Callable[[Optional[MediaStream]], None]
PresenceListener = Callable[[PresenceEvent], Any]


def default_connection_factory() -> RTCPeerConnection:
    return RTCPeerConnection(configuration=build_rtc_configuration(settings))


class PeerOrchestrator:
    """Negotiate and multiplex peer sessions for one local participant."""

    def __init__(
        self,
        room: str,
        local_id: str,
        transport: SignalingTransport,
        *,
        connection_factory: ConnectionFactory | None = None,
        on_state_change: StateListener | None = None,
        on_remote_stream: StreamListener | None = None,
        on_presence: PresenceListener | None = None,
    ) -> None:
        if not local_id:
            raise ValueError("local_id is required")
        self.room = room
        self.local_id = local_id
        self._transport = transport
        self._connection_factory = connection_factory or default_connection_factory
        self._on_state_change = on_state_change
        self._on_remote_stream = on_remote_stream
        self._on_presence = on_presence

        self._sessions: Dict[str, PeerSession] = {}
        self._pending = PendingCandidateQueue()
        self._media = LocalMediaBinding()
        self._subscription: Optional[Subscription] = None
        self._connection_state = ConnectionState.IDLE
        self._remote_stream: Optional[MediaStream] = None
        self._closed = False

    async def __aenter__(self) -> "PeerOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cleanup()

    @property
    def connection_state(self) -> ConnectionState:
        """Most recent state reported by any session (last write wins)."""

        return self._connection_state

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self._remote_stream

    @property
    def local_stream(self) -> Optional[MediaStream]:
        return self._media.stream

    @property
    def peer_states(self) -> dict[str, ConnectionState]:
        return {peer_id: session.state for peer_id, session in self._sessions.items()}

    @property
    def pending_candidates(self) -> PendingCandidateQueue:
        return self._pending

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def connection_state_for(self, peer_id: str) -> ConnectionState:
        session = self._sessions.get(peer_id)
        return session.state if session is not None else ConnectionState.IDLE

    def session(self, peer_id: str) -> Optional[PeerSession]:
        return self._sessions.get(peer_id)

    async def start(self) -> None:
        """Subscribe to the room channel."""

        if self.subscribed:
            return
        self._closed = False
        logger.info("Setting up signaling channel for room %s as %s", self.room, self.local_id)
        self._subscription = await self._transport.subscribe(self.room, self.local_id, self.dispatch)

    async def dispatch(self, message: Dict[str, Any]) -> None:
        """Route one inbound channel message to the matching handler."""

        if is_presence(message):
            await self._dispatch_presence(message)
            return

        try:
            signal = SignalingMessage.model_validate(message)
        except ValidationError as exc:
            logger.warning("Dropping malformed signaling message: %s", exc.errors(include_url=False))
            return

        if signal.sender == self.local_id:
            logger.debug("Ignoring %s from self", signal.kind.value)
            return
        if signal.to and signal.to != self.local_id:
            logger.debug("Ignoring %s addressed to %s", signal.kind.value, signal.to)
            return

        logger.debug("Received %s from %s", signal.kind.value, signal.sender)
        if signal.kind is SignalingKind.OFFER:
            await self.handle_offer(signal.payload, signal.sender)
        elif signal.kind is SignalingKind.ANSWER:
            await self.handle_answer(signal.payload, signal.sender)
        else:
            await self.handle_ice_candidate(signal.payload, signal.sender)

    async def create_offer(self, remote_id: str) -> None:
        """Start a negotiation as initiator towards ``remote_id``."""

        logger.info("Creating peer connection for %s", remote_id)
        session = await self._create_session(remote_id, PeerRole.INITIATOR)
        if session is None:
            return
        session.transition(ConnectionState.CONNECTING)

        try:
            async with session.lock:
                offer = await session.create_offer()
            if self._sessions.get(remote_id) is not session:
                return
            await self._publish(SignalingKind.OFFER, offer, remote_id)
            logger.info("Offer sent to %s", remote_id)
        except Exception as exc:  # noqa: BLE001 - failure stays local to this peer
            logger.error("Error creating offer for %s: %s", remote_id, exc)
            session.fail()

    async def handle_offer(self, offer: Any, from_id: str) -> None:
        """Answer an offer, replacing any session already held for ``from_id``."""

        session = await self._create_session(from_id, PeerRole.RESPONDER)
        if session is None:
            return
        session.transition(ConnectionState.CONNECTING)

        try:
            async with session.lock:
                await session.set_remote_description(offer)
                await self._flush_pending(session)
                answer = await session.create_answer()
            if self._sessions.get(from_id) is not session:
                return
            await self._publish(SignalingKind.ANSWER, answer, from_id)
            logger.info("Answer sent to %s", from_id)
        except Exception as exc:  # noqa: BLE001 - failure stays local to this peer
            logger.error("Error handling offer from %s: %s", from_id, exc)
            session.fail()

    async def handle_answer(self, answer: Any, from_id: str) -> None:
        """Apply an answer to the offer in flight for ``from_id``, at most once."""

        session = self._sessions.get(from_id)
        if session is None:
            logger.warning("No connection for answer from %s", from_id)
            return

        async with session.lock:
            if not session.awaiting_answer or self._sessions.get(from_id) is not session:
                logger.warning(
                    "Ignoring answer from %s in signaling state %s",
                    from_id,
                    session.connection.signalingState,
                )
                return
            try:
                await session.set_remote_description(answer)
                await self._flush_pending(session)
            except Exception as exc:  # noqa: BLE001 - failure stays local to this peer
                logger.error("Error setting remote description for %s: %s", from_id, exc)
                session.fail()
                return
        logger.info("Answer set for %s", from_id)

    async def handle_ice_candidate(self, candidate: Any, from_id: str) -> None:
        """Apply a remote candidate now, or hold it until a description lands."""

        session = self._sessions.get(from_id)
        if session is None:
            logger.debug("Queueing ICE candidate from %s until an offer arrives", from_id)
            self._pending.enqueue(from_id, candidate)
            return

        async with session.lock:
            if self._sessions.get(from_id) is not session:
                self._pending.enqueue(from_id, candidate)
                return
            if session.has_remote_description:
                await session.add_candidate(candidate)
            else:
                logger.debug("Queueing ICE candidate from %s until its description is set", from_id)
                self._pending.enqueue(from_id, candidate)

    def set_local_stream(self, stream: Optional[MediaStream]) -> list[str]:
        """Swap the local stream on every live session.

        Returns the peers whose negotiated sessions gained a new sender and
        need a fresh offer/answer round to carry it.
        """

        self._media.set(stream)
        stale: list[str] = []
        for peer_id, session in self._sessions.items():
            added = self._media.apply(session.connection, label=peer_id)
            if added and session.has_remote_description:
                logger.warning("Peer %s needs renegotiation for new %s track(s)", peer_id, ", ".join(added))
                session.renegotiation_needed = True
                stale.append(peer_id)
        return stale

    async def close_peer(self, peer_id: str) -> None:
        """Tear down the session for one peer and forget its queued candidates."""

        self._pending.discard(peer_id)
        session = self._sessions.pop(peer_id, None)
        if session is None:
            return
        await session.close()
        logger.info("Closed connection to %s", peer_id)

    async def cleanup(self) -> None:
        """Close every session and leave the room. Safe to call repeatedly."""

        self._closed = True
        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._pending.clear()
        for session in sessions:
            await session.close()

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self._transport.unsubscribe(subscription)

        if sessions or subscription is not None:
            logger.info("Cleaned up %d peer connection(s) in room %s", len(sessions), self.room)
        self._set_remote_stream(None)
        self._set_connection_state(ConnectionState.IDLE)

    async def _create_session(self, remote_id: str, role: PeerRole) -> Optional[PeerSession]:
        """Install a fresh session for ``remote_id``, closing the one it replaces.

        The new session is in the table before anything is awaited, so a
        concurrent replacement or :meth:`cleanup` always finds it and closes
        it. Returns ``None`` when the session was superseded that way, or when
        the orchestrator has been cleaned up and not restarted.
        """

        if self._closed:
            logger.debug("Ignoring new connection to %s after cleanup", remote_id)
            return None

        session = PeerSession(
            self.local_id,
            remote_id,
            role,
            self._connection_factory(),
            on_state=self._session_state_changed,
            on_remote_stream=self._session_stream_changed,
            on_local_candidate=self._send_local_candidate,
        )
        if self._media.stream is not None:
            logger.debug("Adding local tracks to connection for %s", remote_id)
            self._media.apply(session.connection, label=remote_id)

        previous = self._sessions.get(remote_id)
        self._sessions[remote_id] = session
        if previous is not None:
            logger.info("Replacing existing connection to %s", remote_id)
            await previous.close()
            if self._sessions.get(remote_id) is not session:
                logger.debug("Connection to %s superseded while closing the old one", remote_id)
                return None
        return session

    async def _flush_pending(self, session: PeerSession) -> None:
        for candidate in self._pending.flush(session.remote_id):
            await session.add_candidate(candidate)

    async def _publish(self, kind: SignalingKind, payload: Any, to: str) -> None:
        if not self.subscribed:
            raise SignalingUnavailableError("Signaling channel not available")
        message = SignalingMessage(kind=kind, payload=payload, sender=self.local_id, to=to)
        await self._transport.publish(self.room, message.to_wire())

    async def _send_local_candidate(self, session: PeerSession, candidate: Dict[str, Any]) -> None:
        if self._sessions.get(session.remote_id) is not session:
            return
        try:
            await self._publish(SignalingKind.ICE_CANDIDATE, candidate, session.remote_id)
        except SignalingUnavailableError as exc:
            logger.warning("Could not send ICE candidate to %s: %s", session.remote_id, exc)

    async def _dispatch_presence(self, message: Dict[str, Any]) -> None:
        try:
            event = PresenceEvent.model_validate(message)
        except ValidationError as exc:
            logger.warning("Dropping malformed presence event: %s", exc.errors(include_url=False))
            return
        logger.debug("Presence %s: %s", event.event.value, event.participant_id)
        if self._on_presence is None:
            return
        result = self._on_presence(event)
        if inspect.isawaitable(result):
            await result

    def _session_state_changed(self, session: PeerSession, state: ConnectionState) -> None:
        if self._sessions.get(session.remote_id) is not session:
            return
        self._set_connection_state(state)

    def _session_stream_changed(self, session: PeerSession, stream: MediaStream) -> None:
        if self._sessions.get(session.remote_id) is not session:
            return
        logger.info("Setting remote stream from %s with %d tracks", session.remote_id, len(stream.tracks))
        self._set_remote_stream(stream)

    def _set_connection_state(self, state: ConnectionState) -> None:
        self._connection_state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _set_remote_stream(self, stream: Optional[MediaStream]) -> None:
        self._remote_stream = stream
        if self._on_remote_stream is not None:
            self._on_remote_stream(stream)
