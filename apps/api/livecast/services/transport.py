"""Room-scoped publish/subscribe contract used by the peer orchestrator."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

from .signaling import SignalingConnection, SignalingManager

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]

logger = logging.getLogger(__name__)


class SignalingUnavailableError(RuntimeError):
    """Raised when a message is published without a live subscription."""


@dataclass(slots=True)
class Subscription:
    room: str
    peer_id: str
    active: bool = True


class SignalingTransport(Protocol):
    async def subscribe(self, room: str, peer_id: str, on_message: MessageHandler) -> Subscription:
        ...

    async def publish(self, room: str, message: Dict[str, Any]) -> None:
        ...

    async def unsubscribe(self, subscription: Subscription) -> None:
        ...


def sender_of(message: Dict[str, Any]) -> str:
    sender = message.get("from")
    if not sender:
        raise SignalingUnavailableError("Outgoing message has no sender id")
    return str(sender)


class InMemoryTransport:
    """Transport backed by a process-local :class:`SignalingManager`.

    Messages reach every other member of the room; the publisher never
    receives its own message back.
    """

    def __init__(self, manager: Optional[SignalingManager] = None) -> None:
        self.manager = manager or SignalingManager()
        self._subscriptions: Dict[Tuple[str, str], Subscription] = {}

    async def subscribe(self, room: str, peer_id: str, on_message: MessageHandler) -> Subscription:
        subscription = Subscription(room=room, peer_id=peer_id)
        existing = await self.manager.join(room, SignalingConnection(connection_id=peer_id, send=on_message))
        self._subscriptions[(room, peer_id)] = subscription
        logger.info("Peer %s subscribed to room %s (%d already present)", peer_id, room, len(existing))
        return subscription

    async def publish(self, room: str, message: Dict[str, Any]) -> None:
        sender = sender_of(message)
        subscription = self._subscriptions.get((room, sender))
        if subscription is None or not subscription.active:
            raise SignalingUnavailableError(f"Peer {sender} is not subscribed to room {room}")
        await self.manager.broadcast(room, sender, message)

    async def unsubscribe(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        subscription.active = False
        self._subscriptions.pop((subscription.room, subscription.peer_id), None)
        await self.manager.leave(subscription.room, subscription.peer_id)
        logger.info("Peer %s left room %s", subscription.peer_id, subscription.room)
