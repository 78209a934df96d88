import logging
from typing import Any, Dict, Optional

from app.repositories.user_repository import UserRepository
from app.schemas.user import UserSummary
from app.services.cache_service import NoopConversationCache, RedisConversationCache
from app.services.conversation_resolver import ConversationResolver
from app.services.fanout_service import RealtimeFanout, dispatch
from app.services.message_store import MessageStore
from app.utils.exceptions import InvalidInputError


logger = logging.getLogger(__name__)


def present_conversation(conversation: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    """Conversation as seen by one participant: adds its own unread count and last read time."""
    state = conversation.get("participantState", {}).get(user_id, {})
    return {
        **conversation,
        # may read -1 while a send and a read interleave, see MessageStore.append
        "unreadCount": max(state.get("unreadCount", 0), 0),
        "lastReadAt": state.get("lastReadAt"),
    }


class ChatService:
    """The direct-messaging operations exposed over HTTP.

    Each mutation commits to the store first, then invalidates the read cache,
    then hands the real-time notifications to a background task. Neither of
    the last two steps can fail the mutation.
    """

    def __init__(
        self,
        store: MessageStore,
        resolver: ConversationResolver,
        user_repo: UserRepository,
        cache: "RedisConversationCache | NoopConversationCache",
        fanout: RealtimeFanout,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._user_repo = user_repo
        self._cache = cache
        self._fanout = fanout

    async def _invalidate(self, conversation: Dict[str, Any]) -> None:
        await self._cache.invalidate(conversation["participants"], conversation["_id"])

    async def get_or_create_conversation(self, current_user: Dict[str, Any], recipient_id: str) -> Dict[str, Any]:
        user_id = current_user["_id"]
        conversation, created = await self._resolver.get_or_create(user_id, recipient_id)
        if created:
            await self._invalidate(conversation)
            self._fanout.subscribe_participants(conversation)
        return present_conversation(conversation, user_id)

    async def send_message(self, current_user: Dict[str, Any], recipient_id: str, text: Optional[str]) -> Dict[str, Any]:
        if not (text or "").strip():
            raise InvalidInputError("recipientId and text are required")
        sender_id = current_user["_id"]
        conversation, created = await self._resolver.get_or_create(sender_id, recipient_id)
        if created:
            self._fanout.subscribe_participants(conversation)
        message, conversation = await self._store.append(conversation["_id"], sender_id, text)

        await self._invalidate(conversation)
        sender = UserSummary.from_document(current_user).model_dump()
        dispatch(self._fanout.on_message_sent(message, conversation, sender))
        return message

    async def mark_conversation_read(self, current_user: Dict[str, Any], conversation_id: str) -> Dict[str, Any]:
        reader_id = current_user["_id"]
        conversation, read_at, changed = await self._store.mark_read(conversation_id, reader_id)
        if changed:
            await self._invalidate(conversation)
        dispatch(self._fanout.on_marked_read(conversation["_id"], reader_id, read_at))
        logger.info("User %s marked conversation %s as read", reader_id, conversation["_id"])
        return present_conversation(conversation, reader_id)

    async def get_conversation(self, current_user: Dict[str, Any], conversation_id: str) -> Dict[str, Any]:
        user_id = current_user["_id"]
        conversation = await self._cache.get_conversation(conversation_id)
        if conversation is None:
            conversation = await self._store.get_conversation(conversation_id)
            await self._cache.set_conversation(conversation)
        if user_id not in conversation["participants"]:
            # re-check against the store so a stale cache entry never decides access
            conversation = await self._store.get_conversation_for(conversation_id, user_id)
        return present_conversation(conversation, user_id)

    async def list_conversations(self, current_user: Dict[str, Any], limit: int, cursor: Optional[str] = None) -> Dict[str, Any]:
        user_id = current_user["_id"]
        if limit < 1:
            raise InvalidInputError("limit must be positive")
        page = None
        if cursor is None:
            page = await self._cache.get_conversation_page(user_id, limit)
        if page is None:
            try:
                page = await self._store.list_conversations(user_id, limit, cursor)
            except ValueError as exc:
                raise InvalidInputError(f"Invalid cursor: {exc}") from exc
            if cursor is None:
                await self._cache.set_conversation_page(user_id, limit, page)

        others = {uid for c in page["items"] for uid in c["participants"] if uid != user_id}
        users = await self._user_repo.get_users_by_ids(others)
        items = []
        for conversation in page["items"]:
            item = present_conversation(conversation, user_id)
            other_id = next((uid for uid in conversation["participants"] if uid != user_id), None)
            other = users.get(other_id)
            item["otherParticipant"] = UserSummary.from_document(other).model_dump() if other else None
            items.append(item)
        return {**page, "items": items}

    async def list_messages(self, current_user: Dict[str, Any], conversation_id: str, limit: int, cursor: Optional[str] = None) -> Dict[str, Any]:
        user_id = current_user["_id"]
        page = await self._store.list_messages(conversation_id, user_id, limit, cursor)
        for message in page["items"]:
            message["isRead"] = user_id in message.get("readBy", [])
        return page
