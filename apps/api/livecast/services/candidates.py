"""Buffer for ICE candidates that arrive before a remote description."""
from __future__ import annotations

from typing import Any, Dict, List

Candidate = Dict[str, Any]


class PendingCandidateQueue:
    """Per-peer FIFO of early ICE candidates.

    Entries only live until the peer's remote description is set, at which
    point the owner flushes them and applies them in arrival order.
    """

    def __init__(self) -> None:
        self._pending: Dict[str, List[Candidate]] = {}

    def enqueue(self, peer_id: str, candidate: Candidate) -> None:
        self._pending.setdefault(peer_id, []).append(candidate)

    def flush(self, peer_id: str) -> list[Candidate]:
        """Return and forget every candidate buffered for ``peer_id``."""

        return self._pending.pop(peer_id, [])

    def pending(self, peer_id: str) -> int:
        return len(self._pending.get(peer_id, ()))

    def discard(self, peer_id: str) -> None:
        self._pending.pop(peer_id, None)

    def clear(self) -> None:
        self._pending.clear()

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
