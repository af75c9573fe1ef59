from __future__ import annotations
import math
import time
from typing import Dict, List

# ------------ hot path: running aggregates ------------
# kind -> [n, mean, m2] (Welford); constant size per kind, no locks,
# single-threaded event loop
_STATS: Dict[str, List[float]] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    st = _STATS.get(kind)
    if st is None:
        st = [0, 0.0, 0.0]
        _STATS[kind] = st
    st[0] += 1
    delta = value - st[1]
    st[1] += delta / st[0]
    st[2] += delta * (value - st[1])


class timeit:
    """Time an async block under `kind`:

        async with timeit("store.get"):
            doc = await store.get(key)
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        # failed calls are timed too, under their own kind
        kind = self._kind if exc_type is None else f"{self._kind}.error"
        record_timing(kind, now_ts() - self._t0)


def summary() -> Dict[str, Dict[str, float]]:
    out = {}
    for kind, (n, mean, m2) in sorted(_STATS.items()):
        # sample standard deviation
        std = math.sqrt(m2 / (n - 1)) if n > 1 else 0.0
        out[kind] = {"n": int(n), "mean": mean, "std": std}
    return out


def reset() -> None:
    _STATS.clear()
