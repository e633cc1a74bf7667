"""Redis-backed distributed mutex.

SET NX PX with a random owner value; release deletes the key only if the
owner still matches, so an expired lease can never release another holder's lock.
"""

import asyncio
import secrets
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from prewarm.config import LockConfig
from prewarm.errors import LockNotAcquiredError
from prewarm.logging_config import get_logger

logger = get_logger(__name__)

LOCK_PREFIX = "prewarm:lock:"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@asynccontextmanager
async def redis_mutex(
    redis: aioredis.Redis, key: str, config: LockConfig
) -> AsyncGenerator[None]:
    """Hold a mutex on key for the duration of the block.

    Tries once, then config.retries more times spaced by
    config.retry_interval_seconds. Raises LockNotAcquiredError when the
    budget is exhausted.
    """
    full_key = LOCK_PREFIX + key
    owner = secrets.token_hex(16)
    lease_ms = int(config.lease_seconds * 1000)

    for attempt in range(config.retries + 1):
        if await redis.set(full_key, owner, nx=True, px=lease_ms):
            break
        if attempt < config.retries:
            await asyncio.sleep(config.retry_interval_seconds)
    else:
        logger.warning("Lock not acquired", key=key, retries=config.retries)
        raise LockNotAcquiredError(key)

    try:
        yield
    finally:
        await redis.eval(_RELEASE_SCRIPT, 1, full_key, owner)
