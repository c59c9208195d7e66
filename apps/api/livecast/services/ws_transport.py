"""Signaling transport over the relay's websocket endpoint."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Dict, Tuple
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed

from ..core.config import settings
from .transport import MessageHandler, SignalingUnavailableError, Subscription, sender_of

logger = logging.getLogger(__name__)


class _RelayChannel:
    """One open relay socket and the task draining it."""

    def __init__(self, subscription: Subscription, ws: Any, on_message: MessageHandler) -> None:
        self.subscription = subscription
        self._ws = ws
        self._on_message = on_message
        self._reader: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._receive_loop())

    async def send(self, message: Dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            self.subscription.active = False
            raise SignalingUnavailableError(f"Signaling socket closed: {exc}") from exc

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader
        await self._ws.close()

    async def _receive_loop(self) -> None:
        try:
            async for frame in self._ws:
                if isinstance(frame, bytes):
                    continue
                try:
                    payload = json.loads(frame)
                except json.JSONDecodeError:
                    logger.warning("Dropping non-JSON signaling frame")
                    continue
                if not isinstance(payload, dict):
                    continue
                try:
                    await self._on_message(payload)
                except Exception:  # noqa: BLE001 - keep reading for the other peers
                    logger.exception("Signaling handler failed")
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            logger.info("Signaling socket for room %s closed: %s", self.subscription.room, exc)
        finally:
            self.subscription.active = False


class WebSocketTransport:
    """One websocket per (room, peer) against ``/api/rtc/signaling/{room}``."""

    def __init__(self, base_url: str | None = None, heartbeat: float | None = None) -> None:
        self.base_url = (base_url or settings.signaling_url).rstrip("/")
        self.heartbeat = heartbeat if heartbeat is not None else settings.signaling_heartbeat
        self._channels: Dict[Tuple[str, str], _RelayChannel] = {}

    def url_for(self, room: str, peer_id: str) -> str:
        return f"{self.base_url}/{quote(room, safe='')}?participant_id={quote(peer_id, safe='')}"

    async def subscribe(self, room: str, peer_id: str, on_message: MessageHandler) -> Subscription:
        ws = await websockets.connect(self.url_for(room, peer_id), ping_interval=self.heartbeat)
        subscription = Subscription(room=room, peer_id=peer_id)
        channel = _RelayChannel(subscription, ws, on_message)
        channel.start()
        self._channels[(room, peer_id)] = channel
        logger.info("Connected to signaling relay for room %s as %s", room, peer_id)
        return subscription

    async def publish(self, room: str, message: Dict[str, Any]) -> None:
        channel = self._channels.get((room, sender_of(message)))
        if channel is None or not channel.subscription.active:
            raise SignalingUnavailableError(f"No open signaling socket for room {room}")
        await channel.send(message)

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        channel = self._channels.pop((subscription.room, subscription.peer_id), None)
        if channel is None:
            return
        await channel.close()
        logger.info("Disconnected from signaling relay for room %s", subscription.room)
