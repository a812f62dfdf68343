import json
from typing import Optional

import redis
import redis.asyncio as aioredis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD
from redis_keys import REDIS_SESSION_KEY, REDIS_SESSION_CHANNEL, REDIS_SESSION_CHANNEL_PATTERN
from logging_config import get_logger

logger = get_logger(__name__)


def create_redis_client() -> aioredis.Redis:
    return aioredis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)


class RedisBackend:
    """Session metadata and cross-instance channels kept in Redis."""

    def __init__(self, redis_client: aioredis.Redis):
        self.redis_client = redis_client

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping to {REDIS_HOST}:{REDIS_PORT} failed: {e}")
            return False

    async def close(self):
        await self.redis_client.aclose()

    async def create_session(self, session_id: str, session_data: dict, ttl: int = 86400):
        logger.info(f"Creating session {session_id} with TTL {ttl} seconds")
        key = REDIS_SESSION_KEY.format(session_id=session_id)
        await self.redis_client.hset(key, mapping=self._encode(session_data))
        if ttl:
            await self.redis_client.expire(key, ttl)
        logger.debug(f"Session {session_id} created with key: {key}")
        return session_id

    async def get_session(self, session_id: str) -> Optional[dict]:
        logger.debug(f"Fetching session {session_id}")
        key = REDIS_SESSION_KEY.format(session_id=session_id)
        session_data = await self.redis_client.hgetall(key)
        if not session_data:
            logger.debug(f"Session {session_id} not found in Redis")
            return None
        # only containers were JSON encoded on the way in
        result = {}
        for k, v in session_data.items():
            if isinstance(v, str) and v[:1] in ("{", "["):
                try:
                    result[k] = json.loads(v)
                    continue
                except json.JSONDecodeError:
                    pass
            result[k] = v
        return result

    async def update_session(self, session_id: str, fields: dict) -> bool:
        key = REDIS_SESSION_KEY.format(session_id=session_id)
        if not await self.redis_client.exists(key):
            logger.debug(f"Update skipped, session {session_id} not found")
            return False
        await self.redis_client.hset(key, mapping=self._encode(fields))
        logger.debug(f"Session {session_id} updated: {sorted(fields)}")
        return True

    def get_session_channel_name(self, session_id: str) -> str:
        return REDIS_SESSION_CHANNEL.format(session_id=session_id)

    async def publish_event(self, session_id: str, message: dict) -> int:
        """Publish a message to the session's pub/sub channel."""
        channel = self.get_session_channel_name(session_id)
        subscribers = await self.redis_client.publish(channel, json.dumps(message))
        logger.debug(f"Published message to session {session_id} channel {channel}, {subscribers} subscribers")
        return subscribers

    async def subscribe_sessions(self):
        """Pattern subscriber covering every session channel."""
        pubsub = self.redis_client.pubsub()
        await pubsub.psubscribe(REDIS_SESSION_CHANNEL_PATTERN)
        logger.debug(f"Subscribed to Redis pattern {REDIS_SESSION_CHANNEL_PATTERN}")
        return pubsub

    @staticmethod
    def _encode(data: dict) -> dict:
        # Redis hashes hold strings; None values are skipped
        encoded = {}
        for k, v in data.items():
            if v is None:
                continue
            if isinstance(v, (dict, list)):
                encoded[k] = json.dumps(v)
            else:
                encoded[k] = str(v)
        return encoded
