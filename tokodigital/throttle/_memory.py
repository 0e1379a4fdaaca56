# throttle/_memory.py
from __future__ import annotations
import time
from collections import OrderedDict
from typing import Callable


class CooldownStore:
    """Per-key debounce kept in process.

    hit() answers "was this key seen less than `window` seconds ago?" and
    records the current attempt when it was not. Bounded: the least
    recently used keys are evicted beyond max_keys.
    """

    def __init__(self, max_keys: int = 10_000,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.max_keys = max(1, max_keys)
        self.clock = clock
        self._until: "OrderedDict[str, float]" = OrderedDict()

    async def hit(self, key: str, window: float) -> bool:
        now = self.clock()
        until = self._until.get(key)
        if until is not None and now < until:
            return True
        self._until[key] = now + window
        self._until.move_to_end(key)
        while len(self._until) > self.max_keys:
            self._until.popitem(last=False)
        return False

    async def clear(self, key: str) -> None:
        self._until.pop(key, None)

    def __len__(self) -> int:
        return len(self._until)

    async def aclose(self) -> None:
        self._until.clear()
