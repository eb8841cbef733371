"""Relay WebSocket endpoint.

This module provides:
    - WebSocket /ws: Real-time relay (presence, rooms, messages, receipts)

The transport only moves frames; every protocol decision is made by the
``SessionEngine``.

Protocol Flow:
    1. Client connects with ``/ws?token=<jwt>`` (or sends
       ``{type: "authenticate", payload: {token}}`` as its first frame)
       -> Server sends: auth_success, online_users
       -> Others receive: user_status (online)
    2. Client sends: join_chat {chatId}
       -> Server sends: joined_chat
    3. Client sends: chat_message {chatId, content}
       -> Room receives: receive_message, then message_status_update (delivered)
    4. Client sends: read_receipt {messageId, senderId, chatId}
       -> Sender receives: message_status_update (read progress)
    5. Server sends ping every heartbeat interval; client answers pong
    6. On disconnect -> Others receive: user_status (offline)

Close codes:
    - 1008: authentication failed, handshake timeout, or duplicate (reject_new)
    - 4000: superseded by a newer connection for the same subject
    - 1001: heartbeat timeout
"""
import asyncio
import logging
import time
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from .engine import get_engine
from .errors import CLOSE_POLICY_VIOLATION, AuthenticationFailed, DuplicateConnection
from .session import Session

logger = logging.getLogger(__name__)

router = APIRouter()


async def _receive_frame(websocket: WebSocket) -> Optional[str]:
    """Return the next frame's text, or None for a frame without text.

    Raises:
        WebSocketDisconnect: the client closed the connection.
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    return message.get("text")


@router.websocket("/ws")
async def relay_websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token (JWT)"),
) -> None:
    """WebSocket endpoint for one relay client.

    Args:
        websocket: The WebSocket connection.
        token: Optional credential; without it the first frame must be
            an ``authenticate`` event.
    """
    engine = get_engine()
    await websocket.accept()
    session = Session(websocket)
    logger.info(f"[WS] New connection {session.id[:8]} (token in query: {token is not None})")

    try:
        if token is not None:
            try:
                await engine.authenticate(session, token)
            except (AuthenticationFailed, DuplicateConnection) as e:
                await engine.reject(session, e)
                return

        # Main message loop
        while not session.is_closed:
            if session.is_authenticated:
                raw = await _receive_frame(websocket)
            else:
                remaining = engine.handshake_timeout - (time.time() - session.connected_at)
                try:
                    raw = await asyncio.wait_for(_receive_frame(websocket), timeout=max(remaining, 0))
                except asyncio.TimeoutError:
                    logger.info(f"[WS] Handshake timeout for connection {session.id[:8]}")
                    await engine.close(session)
                    await session.close_transport(CLOSE_POLICY_VIOLATION, "Authentication timeout")
                    return
            await engine.handle(session, raw)

    except (WebSocketDisconnect, RuntimeError) as e:
        # RuntimeError: receive after the server closed the transport
        logger.info(f"[WS] Connection {session.id[:8]} ({session.subject_id}) closed: {e!r}")
    finally:
        await engine.close(session)
