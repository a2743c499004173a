"""
Blob store for the server-side documents: dashboard configuration, break-mode
state and webhook encoder states. In-memory by default, Redis when enabled.
"""

import copy
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

from redis_config import get_redis_config, should_use_redis

logger = logging.getLogger(__name__)

CONFIG_KEY = "dashboard-config"
BREAK_MODE_KEY = "break-mode"
ENCODER_STATES_KEY = "encoder-states"


class BlobStore:
    async def connect(self):
        pass

    async def disconnect(self):
        pass

    async def get_json(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set_json(self, key: str, value: Any):
        raise NotImplementedError


class MemoryBlobStore(BlobStore):
    def __init__(self):
        self._blobs: Dict[str, Any] = {}

    async def get_json(self, key: str) -> Optional[Any]:
        # Hand out copies so callers never mutate the stored document in place
        value = self._blobs.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set_json(self, key: str, value: Any):
        self._blobs[key] = copy.deepcopy(value)


class RedisBlobStore(BlobStore):
    """Redis-backed blobs, one JSON string per key under a shared prefix"""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", key_prefix: str = "crew-dashboard"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.redis_client: Optional[redis.Redis] = None

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def connect(self):
        """Initialize Redis connection"""
        self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
        await self.redis_client.ping()
        logger.info("Redis blob store connected")

    async def disconnect(self):
        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.redis_client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.error(f"Corrupt blob {key} in Redis: {e}")
            return None

    async def set_json(self, key: str, value: Any):
        await self.redis_client.set(self._key(key), json.dumps(value))


def create_store() -> BlobStore:
    if should_use_redis():
        redis_config = get_redis_config()
        logger.info(f"Using Redis blob store at {redis_config['host']}:{redis_config['port']}")
        return RedisBlobStore(redis_config["redis_url"], redis_config["key_prefix"])
    logger.info("Using in-memory blob store")
    return MemoryBlobStore()
