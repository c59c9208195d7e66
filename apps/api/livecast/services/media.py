"""Local media stream bookkeeping and per-connection track reconciliation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)


@dataclass
class MediaStream:
    """Group of media tracks sent or received together.

    Tracks are aiortc ``MediaStreamTrack`` objects; only their ``kind`` is
    inspected here.
    """

    tracks: List[Any] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid4()))

    def get_tracks(self) -> list[Any]:
        return list(self.tracks)

    def add_track(self, track: Any) -> None:
        if track not in self.tracks:
            self.tracks.append(track)

    def remove_track(self, track: Any) -> None:
        if track in self.tracks:
            self.tracks.remove(track)


class LocalMediaBinding:
    """Holds the local stream and pushes it onto native peer connections."""

    def __init__(self) -> None:
        self._stream: Optional[MediaStream] = None

    @property
    def stream(self) -> Optional[MediaStream]:
        return self._stream

    def set(self, stream: Optional[MediaStream]) -> None:
        if stream is None:
            logger.info("Local stream cleared")
        else:
            logger.info("Local stream set with %d tracks", len(stream.tracks))
        self._stream = stream

    def apply(self, connection: Any, label: str = "") -> list[str]:
        """Reconcile the outgoing senders of ``connection`` with the stream.

        Same-kind senders get their track swapped in place so the negotiated
        transport is kept. Returns the kinds that needed a brand-new sender.
        """

        stream = self._stream
        added: list[str] = []

        if stream is None:
            for sender in connection.getSenders():
                if sender.track is None:
                    continue
                logger.debug("Removing %s track for %s", sender.track.kind, label)
                sender.replaceTrack(None)
            return added

        # each sender carries at most one track of the stream per pass
        claimed: list[Any] = []
        for track in stream.get_tracks():
            free = [
                sender
                for sender in connection.getSenders()
                if sender.track is not None and not any(sender is other for other in claimed)
            ]
            existing = next((sender for sender in free if sender.track is track), None)
            if existing is None:
                existing = next((sender for sender in free if sender.track.kind == track.kind), None)
            if existing is not None:
                claimed.append(existing)
                if existing.track is not track:
                    logger.debug("Replacing %s track for %s", track.kind, label)
                    existing.replaceTrack(track)
                continue

            logger.debug("Adding %s track for %s", track.kind, label)
            claimed.append(connection.addTrack(track))
            added.append(track.kind)
        return added
