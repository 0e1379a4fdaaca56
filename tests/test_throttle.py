import pytest

from tokodigital.throttle import (
    MemoryCooldownStore, RedisCooldownStore, new_store,
)


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


async def test_memory_cooldown_window():
    clock = Clock()
    store = MemoryCooldownStore(clock=clock)

    assert await store.hit("check:1001", 2) is False
    assert await store.hit("check:1001", 2) is True
    assert await store.hit("check:1002", 2) is False

    clock.now += 2.5
    assert await store.hit("check:1001", 2) is False


async def test_memory_cooldown_is_bounded():
    store = MemoryCooldownStore(max_keys=3)
    for i in range(10):
        await store.hit(f"k{i}", 60)
    assert len(store) == 3
    # oldest keys were evicted
    assert await store.hit("k0", 60) is False
    assert await store.hit("k9", 60) is True


async def test_memory_clear():
    store = MemoryCooldownStore()
    await store.hit("k", 60)
    await store.clear("k")
    assert await store.hit("k", 60) is False


class FakeRedis:
    def __init__(self):
        self.keys = {}
        self.closed = False

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.keys:
            return None
        self.keys[key] = (value, px)
        return True

    async def delete(self, key):
        self.keys.pop(key, None)

    async def aclose(self):
        self.closed = True


async def test_redis_cooldown():
    r = FakeRedis()
    store = RedisCooldownStore(r)

    assert await store.hit("check:1001", 2) is False
    assert await store.hit("check:1001", 2) is True
    assert r.keys["cooldown:check:1001"] == ("1", 2000)

    await store.clear("check:1001")
    assert await store.hit("check:1001", 2) is False
    await store.aclose()
    assert r.closed


def test_factory():
    assert isinstance(new_store(backend="memory"), MemoryCooldownStore)
    assert isinstance(new_store(r=FakeRedis(), backend="redis"),
                      RedisCooldownStore)
    with pytest.raises(RuntimeError):
        new_store(backend="redis")
