from typing import Dict, Iterable, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase


class UserRepository:
    """Read-only access to the users provisioned by the identity service."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[dict]:
        if not ObjectId.is_valid(user_id):
            return None
        user = await self._collection.find_one({"_id": ObjectId(user_id)})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user

    async def exists(self, user_id: str) -> bool:
        if not ObjectId.is_valid(user_id):
            return False
        return await self._collection.count_documents({"_id": ObjectId(user_id)}, limit=1) > 0

    async def get_users_by_ids(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        oids = [ObjectId(uid) for uid in set(user_ids) if ObjectId.is_valid(uid)]
        if not oids:
            return {}
        cursor = self._collection.find({"_id": {"$in": oids}})
        users = {}
        async for doc in cursor:
            doc["_id"] = str(doc["_id"])
            users[doc["_id"]] = doc
        return users
