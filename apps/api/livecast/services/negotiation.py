"""Per-peer negotiation state around one aiortc peer connection."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..core.config import Settings
from ..schemas.signaling import ConnectionState, PeerRole
from .media import MediaStream

logger = logging.getLogger(__name__)

StateCallback = Callable[["PeerSession", ConnectionState], None]
TrackCallback = Callable[["PeerSession", MediaStream], None]
CandidateCallback = Callable[["PeerSession", Dict[str, Any]], Awaitable[None]]

NATIVE_STATES: Dict[str, ConnectionState] = {
    "connecting": ConnectionState.CONNECTING,
    "connected": ConnectionState.CONNECTED,
    "disconnected": ConnectionState.DISCONNECTED,
    "failed": ConnectionState.FAILED,
}


class NegotiationError(RuntimeError):
    """Raised when a negotiation payload cannot be used."""


def build_rtc_configuration(settings: Settings) -> RTCConfiguration:
    """Translate configured STUN/TURN servers into an aiortc configuration."""

    servers = [RTCIceServer(urls=url) for url in settings.stun_urls]
    if settings.turn_enabled:
        servers.append(
            RTCIceServer(
                urls=settings.turn_url,
                username=settings.turn_username,
                credential=settings.turn_credential,
            )
        )
    return RTCConfiguration(iceServers=servers)


def description_to_payload(description: RTCSessionDescription) -> dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_payload(payload: Any) -> RTCSessionDescription:
    if not isinstance(payload, dict) or not payload.get("sdp"):
        raise NegotiationError("Session description payload is missing sdp")
    try:
        return RTCSessionDescription(sdp=payload["sdp"], type=payload.get("type", ""))
    except ValueError as exc:
        raise NegotiationError(str(exc)) from exc


def candidate_to_payload(candidate: RTCIceCandidate) -> dict[str, Any]:
    return {
        "candidate": f"candidate:{candidate_to_sdp(candidate)}",
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_payload(payload: Any) -> Optional[RTCIceCandidate]:
    """Parse a browser-shaped candidate; ``None`` marks end-of-candidates."""

    if not isinstance(payload, dict):
        raise NegotiationError("ICE candidate payload must be an object")
    line = payload.get("candidate")
    if line is None:
        raise NegotiationError("ICE candidate payload has no candidate line")
    line = str(line).strip()
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as exc:
        raise NegotiationError(f"Malformed ICE candidate: {payload.get('candidate')!r}") from exc
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class PeerSession:
    """One negotiated connection to exactly one remote peer.

    Native events are wired at construction and forwarded to the owner through
    the supplied callbacks, so the owner stays the only writer of shared state.
    """

    def __init__(
        self,
        local_id: str,
        remote_id: str,
        role: PeerRole,
        connection: Any,
        *,
        on_state: StateCallback,
        on_remote_stream: TrackCallback,
        on_local_candidate: CandidateCallback,
    ) -> None:
        self.local_id = local_id
        self.remote_id = remote_id
        self.role = role
        self.connection = connection
        self.state = ConnectionState.IDLE
        self.lock = asyncio.Lock()
        self.remote_stream = MediaStream(id=remote_id)
        self.renegotiation_needed = False
        self.closed = False

        self._on_state = on_state
        self._on_remote_stream = on_remote_stream
        self._on_local_candidate = on_local_candidate

        connection.on("connectionstatechange", self._handle_connection_state)
        connection.on("track", self._handle_track)
        connection.on("icecandidate", self._handle_ice_candidate)
        connection.on("icegatheringstatechange", self._handle_gathering_state)

    def __repr__(self) -> str:
        return f"PeerSession(remote_id={self.remote_id!r}, role={self.role.value}, state={self.state.value})"

    @property
    def has_remote_description(self) -> bool:
        return self.connection.remoteDescription is not None

    @property
    def awaiting_answer(self) -> bool:
        return self.connection.signalingState == "have-local-offer" and not self.has_remote_description

    def transition(self, state: ConnectionState) -> None:
        if self.closed:
            return
        if state != self.state:
            logger.info("Peer %s: %s -> %s", self.remote_id, self.state.value, state.value)
        self.state = state
        self._on_state(self, state)

    def fail(self) -> None:
        self.transition(ConnectionState.FAILED)

    async def create_offer(self) -> dict[str, str]:
        offer = await self.connection.createOffer()
        await self.connection.setLocalDescription(offer)
        return description_to_payload(self.connection.localDescription or offer)

    async def create_answer(self) -> dict[str, str]:
        answer = await self.connection.createAnswer()
        await self.connection.setLocalDescription(answer)
        return description_to_payload(self.connection.localDescription or answer)

    async def set_remote_description(self, payload: Any) -> None:
        await self.connection.setRemoteDescription(description_from_payload(payload))

    async def add_candidate(self, payload: Any) -> bool:
        """Apply one remote candidate; malformed ones are dropped."""

        try:
            candidate = candidate_from_payload(payload)
            if candidate is None:
                logger.debug("Peer %s signalled end of candidates", self.remote_id)
                return False
            await self.connection.addIceCandidate(candidate)
        except Exception as exc:  # noqa: BLE001 - a bad candidate must not break the session
            logger.warning("Dropping ICE candidate from %s: %s", self.remote_id, exc)
            return False
        return True

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.connection.close()
        except Exception as exc:  # noqa: BLE001 - teardown continues for the remaining peers
            logger.warning("Closing connection to %s failed: %s", self.remote_id, exc)

    def _handle_connection_state(self) -> None:
        native = self.connection.connectionState
        state = NATIVE_STATES.get(native)
        if state is None:
            logger.debug("Peer %s native state %s", self.remote_id, native)
            return
        self.transition(state)

    def _handle_track(self, track: Any) -> None:
        if self.closed:
            return
        logger.info("Track received: %s from %s", track.kind, self.remote_id)
        self.remote_stream.add_track(track)
        self._on_remote_stream(self, self.remote_stream)

    async def _handle_ice_candidate(self, candidate: Any = None) -> None:
        if candidate is None or self.closed:
            return
        await self._on_local_candidate(self, candidate_to_payload(candidate))

    def _handle_gathering_state(self) -> None:
        logger.debug("Peer %s ICE gathering state: %s", self.remote_id, self.connection.iceGatheringState)
