"""
Real-time fan-out of direct-message events.

Delivery is best effort. A recipient without a live connection simply misses
the event and sees the persisted state on its next query. Any send error is
logged here and never reaches the mutation that triggered it.
"""

import asyncio
import logging
from typing import Any, Coroutine, Dict, Iterable, Optional, Set

from app.services.presence_service import PresenceRegistry, conversation_room, inbox_room
from app.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

_background_tasks: Set[asyncio.Task] = set()


def _finish(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Notification task failed", exc_info=task.exception())


def dispatch(coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
    """Run a notification coroutine in the background.

    The caller's mutation has already committed; a failure here is only logged.
    """
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_finish)
    return task


class RealtimeFanout:

    def __init__(self, manager: ConnectionManager, registry: PresenceRegistry) -> None:
        self._manager = manager
        self._registry = registry

    async def _emit(self, room: str, event: str, data: Dict[str, Any], exclude: Optional[str] = None) -> None:
        try:
            await self._manager.emit(room, event, data, exclude=exclude)
        except Exception:
            logger.warning("Failed to emit %s to %s", event, room, exc_info=True)

    def subscribe_participants(self, conversation: Dict[str, Any]) -> None:
        """Put participants' live connections into a newly created conversation's room."""
        room = conversation_room(conversation["_id"])
        for user_id in conversation["participants"]:
            connection_id = self._registry.connection_for(user_id)
            if connection_id:
                self._registry.join(connection_id, room)

    async def on_message_sent(self, message: Dict[str, Any], conversation: Dict[str, Any], sender: Dict[str, Any]) -> None:
        conversation_id = conversation["_id"]
        await self._emit(
            conversation_room(conversation_id),
            "new_direct_message",
            {"message": {**message, "sender": sender}, "conversationId": conversation_id},
        )
        for user_id in conversation["participants"]:
            if user_id == message["senderId"]:
                continue
            await self._emit(
                inbox_room(user_id),
                "conversation_updated",
                {"conversationId": conversation_id, "lastMessage": conversation["lastMessage"]},
            )
        logger.info("Real-time events sent for message %s in conversation %s", message["_id"], conversation_id)

    async def on_marked_read(self, conversation_id: str, reader_id: str, read_at: str) -> None:
        await self._emit(
            conversation_room(conversation_id),
            "message_read",
            {"conversationId": conversation_id, "userId": reader_id, "readAt": read_at},
        )
        # keeps the reader's other tabs in sync
        await self._emit(
            inbox_room(reader_id),
            "conversation_read",
            {"conversationId": conversation_id, "readAt": read_at},
        )

    async def on_typing(self, conversation_id: str, user_id: str, is_typing: bool, exclude: Optional[str] = None) -> None:
        event = "user_typing" if is_typing else "user_stopped_typing"
        await self._emit(
            conversation_room(conversation_id),
            event,
            {"userId": user_id, "conversationId": conversation_id},
            exclude=exclude,
        )

    async def on_presence(self, user_id: str, online: bool, rooms: Iterable[str], exclude: Optional[str] = None) -> None:
        event = "user_online" if online else "user_offline"
        for room in list(rooms):
            if room == inbox_room(user_id):
                continue
            await self._emit(room, event, {"userId": user_id}, exclude=exclude)
