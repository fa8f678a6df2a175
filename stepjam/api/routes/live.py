"""
Live session WebSocket endpoint.

    GET /api/sessions/{session_id}/ws?playerId=&name=&color=

The route owns the socket; the session actor owns everything else.  This
handler only admits the connection, forwards every inbound frame to the
actor's mailbox and reports the close.  Outbound frames are written by the
connection's own writer task.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from stepjam.config import settings
from stepjam.live.actor import ConnectionClosed, MessageReceived
from stepjam.live.connection import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    CLOSE_SESSION_FULL,
    LiveConnection,
)
from stepjam.live.manager import get_session_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/sessions/{session_id}/ws")
async def live_session_socket(
    websocket: WebSocket,
    session_id: str,
    player_id: Optional[str] = Query(None, alias="playerId"),
    name: Optional[str] = Query(None),
    color: Optional[str] = Query(None),
) -> None:
    """
    Live session connection.

    A missing ``playerId`` gets a server-generated UUID4 (returned in the
    initial snapshot).  A full session is refused before upgrade with
    close code 4003.
    """
    player_id = player_id or str(uuid.uuid4())
    manager = get_session_manager()

    existing = manager.get(session_id)
    if existing is not None and not existing.has_capacity_for(player_id):
        logger.warning(f"🚫 Session {session_id} full, refusing {player_id[:8]}")
        await websocket.close(code=CLOSE_SESSION_FULL)
        return

    await websocket.accept()

    connection = LiveConnection(
        str(uuid.uuid4()),
        player_id,
        websocket,
        name=name,
        color=color,
        queue_size=settings.outbound_queue_size,
    )
    writer = asyncio.create_task(connection.run_writer())

    try:
        actor = await manager.connect(session_id, connection)
    except Exception as e:
        logger.exception(f"Failed to open session {session_id}: {e}")
        connection.request_close(CLOSE_INTERNAL_ERROR, "Session unavailable")
        await writer
        return

    logger.info(f"Live connection {connection.connection_id[:8]} → {session_id}")
    close_code = CLOSE_NORMAL
    try:
        while True:
            msg = await websocket.receive()
            if msg["type"] == "websocket.disconnect":
                close_code = msg.get("code", CLOSE_NORMAL)
                break
            frame = msg.get("text")
            if frame is None:
                frame = msg.get("bytes") or b""
            actor.submit(MessageReceived(connection.connection_id, frame))
    except WebSocketDisconnect as e:
        close_code = e.code
    except RuntimeError as e:
        # Starlette raises once the socket was closed from our side.
        logger.debug(f"Receive loop ended for {connection.connection_id[:8]}: {e}")
        close_code = connection.close_code or CLOSE_NORMAL
    except Exception as e:
        logger.exception(f"WebSocket error: {e}")
        close_code = CLOSE_INTERNAL_ERROR
    finally:
        actor.submit(ConnectionClosed(connection.connection_id, close_code))
        connection.finish()
        await writer
        logger.info(f"Live connection {connection.connection_id[:8]} closed ({close_code})")
