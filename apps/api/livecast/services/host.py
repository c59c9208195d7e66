"""Broadcaster-side fan-out of one local stream to approved viewers."""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..schemas.signaling import ConnectionState, PresenceEvent, PresenceEventType
from .media import MediaStream
from .peer import PeerOrchestrator

logger = logging.getLogger(__name__)


class HostSession:
    """Drive a host orchestrator from the room's approved viewer list."""

    def __init__(self, orchestrator: PeerOrchestrator) -> None:
        self.orchestrator = orchestrator
        self._offered: set[str] = set()

    @property
    def viewers(self) -> frozenset[str]:
        return frozenset(self._offered)

    async def sync_viewers(self, approved: Iterable[str]) -> list[str]:
        """Offer to every approved viewer that has not been offered yet."""

        fresh = [viewer_id for viewer_id in dict.fromkeys(approved) if viewer_id not in self._offered]
        logger.info("Approved viewers: %d new, %d connected", len(fresh), len(self._offered))
        for viewer_id in fresh:
            self._offered.add(viewer_id)
            await self.orchestrator.create_offer(viewer_id)
        return fresh

    async def set_stream(self, stream: Optional[MediaStream]) -> list[str]:
        """Publish a new local stream, re-offering viewers that need it."""

        stale = self.orchestrator.set_local_stream(stream)
        for viewer_id in stale:
            logger.info("Renegotiating with %s", viewer_id)
            await self.orchestrator.create_offer(viewer_id)
        return stale

    async def retry_failed(self) -> list[str]:
        failed = [
            peer_id
            for peer_id, state in self.orchestrator.peer_states.items()
            if state is ConnectionState.FAILED
        ]
        for peer_id in failed:
            logger.info("Retrying connection to %s", peer_id)
            await self.orchestrator.create_offer(peer_id)
        return failed

    async def handle_presence(self, event: PresenceEvent) -> None:
        if event.event is not PresenceEventType.PARTICIPANT_LEFT:
            return
        if event.participant_id not in self._offered:
            return
        logger.info("Viewer %s left the room", event.participant_id)
        self._offered.discard(event.participant_id)
        await self.orchestrator.close_peer(event.participant_id)

    async def end(self) -> None:
        self._offered.clear()
        await self.orchestrator.cleanup()
