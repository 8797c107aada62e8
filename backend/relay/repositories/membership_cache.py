import logging
from typing import Dict, Optional

from redis.exceptions import RedisError

from relay.core.config import MEMBERSHIP_CACHE_TTL

logger = logging.getLogger(__name__)


class MembershipCache:
    """
    채팅방 멤버 목록 읽기 캐시 (Redis Hash: user_id -> role)
    Redis is never authoritative: every failure degrades to a cache miss.
    """

    def __init__(self, client, ttl: int = MEMBERSHIP_CACHE_TTL):
        self.client = client
        self.ttl = ttl

    @staticmethod
    def _key(chat_id: int) -> str:
        return f"chat:{chat_id}:members"

    async def get(self, chat_id: int) -> Optional[Dict[int, str]]:
        try:
            data = await self.client.hgetall(self._key(chat_id))
        except RedisError as e:
            logger.warning(f"[MembershipCache] read failed for chat {chat_id}: {e}")
            return None
        if not data:
            return None
        return {int(k): v for k, v in data.items()}

    async def set(self, chat_id: int, roles: Dict[int, str]):
        if not roles:
            return
        key = self._key(chat_id)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.hset(key, mapping={str(uid): role for uid, role in roles.items()})
                pipe.expire(key, self.ttl)
                await pipe.execute()
        except RedisError as e:
            logger.warning(f"[MembershipCache] write failed for chat {chat_id}: {e}")

    async def invalidate(self, chat_id: int) -> bool:
        try:
            await self.client.delete(self._key(chat_id))
            return True
        except RedisError as e:
            logger.error(f"[MembershipCache] invalidation failed for chat {chat_id}: {e}")
            return False
