"""
WS /ws?token=JWT

Joins the caller's room (``rider:{id}`` / ``captain:{id}``) for the life of
the socket. Server-to-client only, apart from a ``ping`` keepalive.
"""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ridehail.actors import room_for
from ridehail.middleware.auth import decode_token

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws")
async def ws_events(websocket: WebSocket):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        actor = decode_token(token)
    except ValueError:
        await websocket.close(code=4401)
        return

    registry = websocket.app.state.registry
    room = room_for(actor)
    await registry.connect(room, websocket)
    logger.info("WebSocket joined room=%s", room)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_json({"event": "pong", "data": {}})
    except WebSocketDisconnect:
        pass
    finally:
        await registry.disconnect(room, websocket)
        logger.info("WebSocket left room=%s", room)
