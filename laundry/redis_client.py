import redis.asyncio as redis
from laundry.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def remember_idempotency_key(key: str, value: str, ttl_seconds: int = 86400) -> str | None:
    """
    Claim `key` for `value` with SET NX.
    Returns None if this call claimed it (caller should proceed), else the value stored by the first caller.
    """
    r = await get_redis()
    was_set = await r.set(key, value, nx=True, ex=ttl_seconds)
    if was_set:
        return None
    return await r.get(key)


async def update_idempotency_key(key: str, value: str, ttl_seconds: int = 86400) -> None:
    r = await get_redis()
    await r.set(key, value, ex=ttl_seconds)


async def release_idempotency_key(key: str) -> None:
    r = await get_redis()
    await r.delete(key)
