# tokodigital/infra/timings.py
from __future__ import annotations
import time
from collections import deque
from typing import Deque, Dict, List
import statistics

# keep the last N samples per kind; the service runs for weeks
MAX_SAMPLES = 2048

# one deque per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, Deque[float]] = {}
_COUNTS: Dict[str, int] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = deque(maxlen=MAX_SAMPLES)
        _TIMINGS[kind] = lst
    lst.append(float(value))
    _COUNTS[kind] = _COUNTS.get(kind, 0) + 1


class timeit:
    """async usage:
        async with timeit("gateway.status"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def snapshot() -> List[dict]:
    """Aggregates per kind: total count, plus mean/std/max over the
    retained window (seconds)."""
    out = []
    for kind in sorted(_TIMINGS):
        vals = list(_TIMINGS[kind])
        mean, std = _mean_std(vals)
        out.append({
            "kind": kind,
            "n": _COUNTS.get(kind, len(vals)),
            "window": len(vals),
            "mean": mean,
            "std": std,
            "max": max(vals) if vals else 0.0,
        })
    return out


def reset() -> None:
    _TIMINGS.clear()
    _COUNTS.clear()
