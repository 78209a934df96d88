import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket

from app.services.presence_service import PresenceRegistry


logger = logging.getLogger(__name__)


class ConnectionManager:
    """Owns the live sockets and sends events to the rooms tracked by the registry.

    Sends to one room are serialized behind that room's lock, so events reach
    each member in the order they were emitted.
    """

    def __init__(self, registry: PresenceRegistry) -> None:
        self.registry = registry
        self.active_connections: Dict[str, WebSocket] = {}
        self._room_locks: Dict[str, asyncio.Lock] = {}
        # emits holding or waiting on each room lock
        self._lock_users: Dict[str, int] = {}

    def attach(self, connection_id: str, websocket: WebSocket) -> None:
        self.active_connections[connection_id] = websocket

    def detach(self, connection_id: str) -> None:
        self.active_connections.pop(connection_id, None)

    def _claim_lock(self, room: str) -> asyncio.Lock:
        lock = self._room_locks.get(room)
        if lock is None:
            lock = self._room_locks[room] = asyncio.Lock()
        self._lock_users[room] = self._lock_users.get(room, 0) + 1
        return lock

    def _release_claim(self, room: str) -> None:
        remaining = self._lock_users[room] - 1
        if remaining:
            self._lock_users[room] = remaining
        else:
            del self._lock_users[room]
            del self._room_locks[room]

    async def send_personal_message(self, connection_id: str, event: str, data: Dict[str, Any]) -> bool:
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json({"event": event, "data": data})
            return True
        except Exception:
            logger.warning("Dropping connection %s after failed send of %s", connection_id, event, exc_info=True)
            self.detach(connection_id)
            return False

    async def emit(self, room: str, event: str, data: Dict[str, Any], exclude: Optional[str] = None) -> int:
        """Send ``event`` to every connection in ``room``; returns how many got it."""
        lock = self._claim_lock(room)
        try:
            async with lock:
                delivered = 0
                for connection_id in self.registry.members(room):
                    if connection_id == exclude:
                        continue
                    if await self.send_personal_message(connection_id, event, data):
                        delivered += 1
        finally:
            self._release_claim(room)
        logger.debug("Emitted %s to %s (%d connection(s))", event, room, delivered)
        return delivered
