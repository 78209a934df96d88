"""
Read cache for conversation list/detail queries, and its invalidation.

Key layout:
    conversations:{userId}         HASH, field = page size, value = JSON first page
    conversation:{conversationId}  STRING, JSON conversation document

Cache reads are advisory: every Redis failure is logged and treated as a miss,
every invalidation failure is logged and swallowed. The store stays the source
of truth.
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)


def conversations_key(user_id: str) -> str:
    return f"conversations:{user_id}"


def conversation_key(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class NoopConversationCache:

    enabled = False

    async def get_conversation_page(self, user_id: str, limit: int) -> Optional[Dict[str, Any]]:
        return None

    async def set_conversation_page(self, user_id: str, limit: int, page: Dict[str, Any]) -> None:
        return

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return None

    async def set_conversation(self, conversation: Dict[str, Any]) -> None:
        return

    async def invalidate(self, user_ids: Iterable[str], conversation_id: Optional[str] = None) -> None:
        return

    async def close(self) -> None:
        return


class RedisConversationCache:

    enabled = True

    def __init__(self, redis: Redis, ttl_seconds: int = 3600) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 3600) -> "RedisConversationCache":
        return cls(Redis.from_url(url, decode_responses=True), ttl_seconds)

    async def get_conversation_page(self, user_id: str, limit: int) -> Optional[Dict[str, Any]]:
        key = conversations_key(user_id)
        try:
            raw = await self._redis.hget(key, str(limit))
        except RedisError as exc:
            logger.warning("Redis cache read error for %s: %s", key, exc)
            return None
        if raw is None:
            logger.debug("Cache MISS for %s[%s]", key, limit)
            return None
        logger.debug("Cache HIT for %s[%s]", key, limit)
        return json.loads(raw)

    async def set_conversation_page(self, user_id: str, limit: int, page: Dict[str, Any]) -> None:
        key = conversations_key(user_id)
        try:
            await self._redis.hset(key, str(limit), json.dumps(page))
            await self._redis.expire(key, self._ttl)
        except RedisError as exc:
            logger.warning("Redis cache write error for %s: %s", key, exc)

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        key = conversation_key(conversation_id)
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            logger.warning("Redis cache read error for %s: %s", key, exc)
            return None
        return json.loads(raw) if raw is not None else None

    async def set_conversation(self, conversation: Dict[str, Any]) -> None:
        key = conversation_key(conversation["_id"])
        try:
            await self._redis.set(key, json.dumps(conversation), ex=self._ttl)
        except RedisError as exc:
            logger.warning("Redis cache write error for %s: %s", key, exc)

    async def invalidate(self, user_ids: Iterable[str], conversation_id: Optional[str] = None) -> None:
        """Drop list entries for every affected user and the conversation detail."""
        keys = [conversations_key(uid) for uid in user_ids]
        if conversation_id:
            keys.append(conversation_key(conversation_id))
        if not keys:
            return
        try:
            await self._redis.delete(*keys)
            logger.debug("Invalidated cache keys %s", keys)
        except RedisError as exc:
            logger.error("Failed to invalidate conversation caches %s: %s", keys, exc)

    async def close(self) -> None:
        await self._redis.aclose()
