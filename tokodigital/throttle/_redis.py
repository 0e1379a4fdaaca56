# throttle/_redis.py
from __future__ import annotations
import redis.asyncio as redis


# ---- keys
def k_cooldown(key: str) -> str: return f"cooldown:{key}"


class CooldownStore:
    """Shared debounce: SET NX with a millisecond TTL, expiry by redis."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def hit(self, key: str, window: float) -> bool:
        ok = await self.r.set(
            k_cooldown(key), "1", nx=True, px=max(1, int(window * 1000))
        )
        # set() returns None when the key already existed
        return not ok

    async def clear(self, key: str) -> None:
        await self.r.delete(k_cooldown(key))

    async def aclose(self) -> None:
        await self.r.aclose()
