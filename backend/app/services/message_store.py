import logging
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId

from app.repositories.conversation_repository import ConversationRepository
from app.repositories.message_repository import MessageRepository
from app.utils.exceptions import ForbiddenError, InvalidInputError, NotFoundError
from app.utils.pagination import utc_now_iso


logger = logging.getLogger(__name__)


class MessageStore:
    """Durable conversation/message state and the unread ledger attached to it.

    Ledger writes are targeted ``$inc``/``$set`` updates on
    ``participantState.<userId>``; a whole conversation document is never
    written back, so concurrent sends and reads cannot drop each other's
    counter changes.
    """

    def __init__(self, conversation_repo: ConversationRepository, message_repo: MessageRepository) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        if not conversation_id or not ObjectId.is_valid(conversation_id):
            raise InvalidInputError(f"Invalid conversation id: {conversation_id!r}")
        conversation = await self._conversation_repo.get_by_id(conversation_id)
        if not conversation:
            raise NotFoundError("Conversation not found")
        return conversation

    async def get_conversation_for(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await self.get_conversation(conversation_id)
        if user_id not in conversation["participants"]:
            raise ForbiddenError("You are not a participant in this conversation")
        return conversation

    async def append(self, conversation_id: str, sender_id: str, text: Optional[str]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Persist a message and apply it to the conversation.

        Returns ``(message, conversation)`` where ``conversation`` already shows
        the recipient's incremented counter.

        The message is inserted before the counter is bumped. A ``mark_read``
        by the recipient that lands between the two sees the new message,
        decrements for it, and leaves the counter at -1 until the increment
        arrives. Once both writes have landed the counter again equals the
        number of unread messages.
        """
        body = (text or "").strip()
        if not body:
            raise InvalidInputError("Message text cannot be empty")
        conversation = await self.get_conversation_for(conversation_id, sender_id)
        recipient_id = next(uid for uid in conversation["participants"] if uid != sender_id)

        created_at = utc_now_iso()
        message = await self._message_repo.save_message(conversation_id, sender_id, body, created_at)
        updated = await self._conversation_repo.record_new_message(
            conversation_id, sender_id, recipient_id, body, created_at
        )
        if updated is None:
            # conversations are never deleted; this only happens if the store was tampered with
            raise NotFoundError("Conversation not found")
        logger.debug("Appended message %s to conversation %s", message["_id"], conversation_id)
        return message, updated

    async def mark_read(self, conversation_id: str, reader_id: str) -> Tuple[Dict[str, Any], str, bool]:
        """Mark every message the reader has not seen as read.

        Returns ``(conversation, read_at, changed)``. When nothing was unread
        the conversation is left untouched and ``read_at`` is the previous
        ``lastReadAt``.
        """
        conversation = await self.get_conversation_for(conversation_id, reader_id)
        read_count = await self._message_repo.mark_read(conversation_id, reader_id)
        if read_count == 0:
            state = conversation["participantState"][reader_id]
            return conversation, state["lastReadAt"], False

        read_at = utc_now_iso()
        updated = await self._conversation_repo.record_read(conversation_id, reader_id, read_count, read_at)
        if updated is None:
            raise NotFoundError("Conversation not found")
        logger.debug("User %s read %d message(s) in %s", reader_id, read_count, conversation_id)
        return updated, read_at, True

    async def list_messages(self, conversation_id: str, reader_id: str, limit: int, cursor: Optional[str] = None) -> Dict[str, Any]:
        await self.get_conversation_for(conversation_id, reader_id)
        if limit < 1:
            raise InvalidInputError("limit must be positive")
        try:
            return await self._message_repo.get_messages_by_conversation(conversation_id, limit=limit, cursor=cursor)
        except ValueError as exc:
            raise InvalidInputError(f"Invalid cursor: {exc}") from exc

    async def list_conversations(self, user_id: str, limit: int, cursor: Optional[str] = None) -> Dict[str, Any]:
        return await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)
