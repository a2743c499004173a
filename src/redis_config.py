"""
Connection settings for the Redis-backed blob store.
"""

import os
from typing import Optional

from config import settings


def store_password() -> Optional[str]:
    # On single-tenant installs the producer secret doubles as the store password
    return settings.REDIS_PASSWORD or settings.API_TOKEN


def build_redis_url() -> str:
    """redis://[:password@]host:port/db, unless REDIS_URL is set explicitly"""
    explicit = os.getenv("REDIS_URL")
    if explicit:
        return explicit
    password = store_password()
    auth = f":{password}@" if password else ""
    return f"redis://{auth}{settings.REDIS_HOST}:{settings.REDIS_SERVER_PORT}/{settings.REDIS_DB}"


def get_redis_config() -> dict:
    return {
        "host": settings.REDIS_HOST,
        "port": settings.REDIS_SERVER_PORT,
        "db": settings.REDIS_DB,
        "password": store_password(),
        "redis_url": build_redis_url(),
        "enabled": settings.REDIS_ENABLED,
        "key_prefix": settings.REDIS_KEY_PREFIX,
    }


def should_use_redis() -> bool:
    return settings.REDIS_ENABLED
