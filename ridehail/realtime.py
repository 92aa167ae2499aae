"""
Room-addressed WebSocket connection registry.

Rooms are ``rider:{id}`` / ``captain:{id}``. One registry is constructed per
application in the lifespan and closed on shutdown.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def rider_room(rider_id: str) -> str:
    return f"rider:{rider_id}"


def captain_room(captain_id: str) -> str:
    return f"captain:{captain_id}"


class ConnectionRegistry:
    def __init__(self) -> None:
        self._conns: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def connect(self, room: str, ws: WebSocket, accept: bool = True) -> None:
        if self._closed:
            raise RuntimeError("connection registry is closed")
        if accept:
            await ws.accept()
        async with self._lock:
            self._conns.setdefault(room, set()).add(ws)

    async def disconnect(self, room: str, ws: WebSocket) -> None:
        async with self._lock:
            conns = self._conns.get(room)
            if conns is not None:
                conns.discard(ws)
                if not conns:
                    self._conns.pop(room, None)

    def connection_count(self, room: str) -> int:
        return len(self._conns.get(room, ()))

    async def emit(self, room: str, event: str, data: dict[str, Any]) -> int:
        """Deliver one event to every socket in the room; returns sockets reached."""
        async with self._lock:
            conns = list(self._conns.get(room, set()))
        payload = {"event": event, "data": data}
        delivered = 0
        stale = []
        for ws in conns:
            try:
                await ws.send_json(payload)
                delivered += 1
            except Exception as exc:
                logger.debug("Dropping dead socket in room=%s: %s", room, exc)
                stale.append(ws)
        for ws in stale:
            await self.disconnect(room, ws)
        return delivered

    async def emit_many(self, rooms: Iterable[str], event: str, data: dict[str, Any]) -> None:
        """Fan out the same event to many rooms concurrently."""
        await asyncio.gather(*(self.emit(room, event, data) for room in rooms))

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            conns = [ws for room in self._conns.values() for ws in room]
            self._conns.clear()
        for ws in conns:
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("Error closing socket on shutdown: %s", exc)
