from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.utils.pagination import build_page, cursor_filter


def pair_key(user_a: str, user_b: str) -> str:
    first, second = sorted([user_a, user_b])
    return f"{first}:{second}"


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("pairKey", ASCENDING)], unique=True, name="pair_key_unique")
        await self.collection.create_index(
            [("participants", ASCENDING), ("updatedAt", DESCENDING), ("_id", DESCENDING)],
            name="user_conversations_sorted",
        )

    async def get_by_id(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"_id": ObjectId(conversation_id)})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def find_by_pair(self, user_a: str, user_b: str) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"pairKey": pair_key(user_a, user_b)})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def insert_for_pair(self, user_a: str, user_b: str, now: str) -> Dict[str, Any]:
        """Insert a fresh conversation for the pair.

        Raises DuplicateKeyError when another caller already created it.
        """
        participants = sorted([user_a, user_b])
        doc: Dict[str, Any] = {
            "participants": participants,
            "pairKey": pair_key(user_a, user_b),
            "participantState": {
                uid: {"userId": uid, "unreadCount": 0, "lastReadAt": now} for uid in participants
            },
            "lastMessage": None,
            "createdAt": now,
            "updatedAt": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_or_create_one_to_one(self, user_a: str, user_b: str, now: str) -> Tuple[Dict[str, Any], bool]:
        existing = await self.find_by_pair(user_a, user_b)
        if existing:
            return existing, False
        try:
            return await self.insert_for_pair(user_a, user_b, now), True
        except DuplicateKeyError:
            winner = await self.find_by_pair(user_a, user_b)
            if winner is None:
                raise
            return winner, False

    async def record_new_message(
        self, conversation_id: str, sender_id: str, recipient_id: str, text: str, timestamp: str
    ) -> Optional[Dict[str, Any]]:
        """Apply a sent message to the conversation.

        The counter increment always lands. ``updatedAt`` and ``lastMessage``
        only move forward: a send that took its timestamp earlier but commits
        later leaves the newer preview in place.
        """
        oid = ObjectId(conversation_id)
        result = await self.collection.update_one(
            {"_id": oid},
            {
                "$max": {"updatedAt": timestamp},
                "$inc": {f"participantState.{recipient_id}.unreadCount": 1},
            },
        )
        if result.matched_count == 0:
            return None
        await self.collection.update_one(
            {"_id": oid, "$or": [{"lastMessage": None}, {"lastMessage.timestamp": {"$lte": timestamp}}]},
            {"$set": {"lastMessage": {"text": text, "senderId": sender_id, "timestamp": timestamp}}},
        )
        return await self.get_by_id(conversation_id)

    async def record_read(self, conversation_id: str, reader_id: str, read_count: int, read_at: str) -> Optional[Dict[str, Any]]:
        """Subtract the messages just marked read from the reader's counter."""
        doc = await self.collection.find_one_and_update(
            {"_id": ObjectId(conversation_id)},
            {
                "$max": {
                    f"participantState.{reader_id}.lastReadAt": read_at,
                    "updatedAt": read_at,
                },
                "$inc": {f"participantState.{reader_id}.unreadCount": -read_count},
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {"participants": user_id}
        query.update(cursor_filter("updatedAt", cursor))
        sort = [("updatedAt", DESCENDING), ("_id", DESCENDING)]
        cursor_db = self.collection.find(query).sort(sort).limit(limit + 1)
        docs = await cursor_db.to_list(length=limit + 1)
        return build_page(docs, limit, "updatedAt")

    async def list_ids_for_user(self, user_id: str) -> List[str]:
        cursor_db = self.collection.find({"participants": user_id}, {"_id": 1})
        return [str(doc["_id"]) async for doc in cursor_db]
