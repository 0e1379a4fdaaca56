# throttle/__init__.py
from typing import Optional
import redis.asyncio as redis

from .. import config
from ._memory import CooldownStore as MemoryCooldownStore
from ._redis import CooldownStore as RedisCooldownStore

BACKEND = config.THROTTLE_BACKEND  # 'memory' | 'redis'


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, r: Optional[redis.Redis] = None,
              max_keys: int = config.THROTTLE_MAX_KEYS,
              backend: Optional[str] = None):
    backend = (backend or BACKEND).lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError("CooldownStore(redis) requires r=redis.Redis")
        return RedisCooldownStore(r=r)
    return MemoryCooldownStore(max_keys=max_keys)


__all__ = [
    "MemoryCooldownStore", "RedisCooldownStore", "new_store", "BACKEND",
]
