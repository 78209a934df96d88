from typing import Any, Dict, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from app.utils.pagination import build_page, cursor_filter


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["directMessages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("conversationId", ASCENDING), ("createdAt", DESCENDING), ("_id", DESCENDING)],
            name="conversation_messages_sorted",
        )
        await self.collection.create_index(
            [("conversationId", ASCENDING), ("readBy", ASCENDING)],
            name="conversation_unread_messages",
        )

    async def save_message(self, conversation_id: str, sender_id: str, text: str, created_at: str) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "_id": ObjectId(),
            "conversationId": conversation_id,
            "senderId": sender_id,
            "text": text,
            "readBy": [sender_id],
            "createdAt": created_at,
        }
        await self.collection.insert_one(doc)
        doc["_id"] = str(doc["_id"])
        return doc

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        """Add ``reader_id`` to ``readBy`` wherever it is missing; returns the count changed."""
        result = await self.collection.update_many(
            {"conversationId": conversation_id, "readBy": {"$ne": reader_id}},
            {"$addToSet": {"readBy": reader_id}},
        )
        return result.modified_count or 0

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: int = 30,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"conversationId": conversation_id}
        query.update(cursor_filter("createdAt", cursor))
        sort = [("createdAt", DESCENDING), ("_id", DESCENDING)]
        cur = self.collection.find(query).sort(sort).limit(limit + 1)
        docs = await cur.to_list(length=limit + 1)
        return build_page(docs, limit, "createdAt")

    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        return await self.collection.count_documents(
            {"conversationId": conversation_id, "senderId": {"$ne": user_id}, "readBy": {"$ne": user_id}}
        )
