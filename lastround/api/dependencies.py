"""FastAPI dependencies for Last Round."""

from collections.abc import AsyncGenerator

import redis.asyncio as redis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from lastround.config import CupConfig, get_settings
from lastround.models.base import get_db
from lastround.services.cup.notifications import RedisNotifier
from lastround.services.cup.repository import CupRepository


async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis client dependency."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url)
    try:
        yield client
    finally:
        await client.aclose()


def get_repository(db: AsyncSession = Depends(get_db)) -> CupRepository:
    return CupRepository(db)


def get_cup_config() -> CupConfig:
    return CupConfig.from_settings()


def get_notifier(redis_client: redis.Redis = Depends(get_redis)) -> RedisNotifier:
    """Correction notifications go to the admin channel on Redis."""
    return RedisNotifier(redis_client)
