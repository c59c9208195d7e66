"""ICE configuration and room signaling endpoints."""
from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..core.config import settings
from ..schemas.rtc import IceServer, IceServersResponse
from ..schemas.signaling import PresenceEventType
from ..services.signaling import SignalingConnection, manager as signaling_manager

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/ice-servers", response_model=IceServersResponse, response_model_exclude_none=True)
async def ice_servers() -> IceServersResponse:
    """Return the STUN/TURN servers browser peers should use."""

    servers = [IceServer(urls=[url]) for url in settings.stun_urls]
    if settings.turn_enabled:
        servers.append(
            IceServer(
                urls=[settings.turn_url],
                username=settings.turn_username,
                credential=settings.turn_credential,
            )
        )
    return IceServersResponse(ice_servers=servers)


@router.websocket("/signaling/{room}")
async def signaling_endpoint(websocket: WebSocket, room: str) -> None:
    """Relay offers, answers and ICE candidates between room members."""

    participant_id = websocket.query_params.get("participant_id") or str(uuid4())
    await websocket.accept()

    connection = SignalingConnection(connection_id=participant_id, send=websocket.send_json)
    existing = await signaling_manager.join(room, connection)
    logger.info("Participant %s joined room %s (%d present)", participant_id, room, len(existing))

    await websocket.send_json(
        {
            "event": PresenceEventType.JOINED.value,
            "room": room,
            "participant_id": participant_id,
            "participants": existing,
        }
    )

    if existing:
        await signaling_manager.broadcast(
            room,
            participant_id,
            {"event": PresenceEventType.PARTICIPANT_JOINED.value, "participant_id": participant_id, "room": room},
        )

    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict) or "kind" not in message:
                logger.debug("Ignoring non-signaling frame from %s", participant_id)
                continue
            envelope = {**message, "from": participant_id}
            await signaling_manager.broadcast(room, participant_id, envelope)
    except WebSocketDisconnect:
        pass
    finally:
        await signaling_manager.leave(room, participant_id)
        logger.info("Participant %s left room %s", participant_id, room)
        await signaling_manager.broadcast(
            room,
            participant_id,
            {"event": PresenceEventType.PARTICIPANT_LEFT.value, "participant_id": participant_id, "room": room},
        )
