import logging
from typing import Any, Dict, Tuple

from bson import ObjectId

from app.repositories.conversation_repository import ConversationRepository
from app.repositories.user_repository import UserRepository
from app.utils.exceptions import InvalidInputError, NotFoundError
from app.utils.pagination import utc_now_iso


logger = logging.getLogger(__name__)


class ConversationResolver:
    """Finds or creates the single conversation for a pair of users."""

    def __init__(self, conversation_repo: ConversationRepository, user_repo: UserRepository) -> None:
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo

    async def get_or_create(self, user_a: str, user_b: str) -> Tuple[Dict[str, Any], bool]:
        """Return ``(conversation, created)``.

        Concurrent callers for the same pair, in either order, all get the same
        conversation: the unique ``pairKey`` index decides the winner and the
        losers re-read it.
        """
        for uid in (user_a, user_b):
            if not uid or not ObjectId.is_valid(uid):
                raise InvalidInputError(f"Invalid user id: {uid!r}")
        if user_a == user_b:
            raise InvalidInputError("Cannot create a conversation with yourself")
        for uid in (user_a, user_b):
            if not await self._user_repo.exists(uid):
                raise NotFoundError(f"User {uid} not found")

        conversation, created = await self._conversation_repo.get_or_create_one_to_one(user_a, user_b, utc_now_iso())
        if created:
            logger.info("Created conversation %s for %s", conversation["_id"], conversation["pairKey"])
        return conversation, created
