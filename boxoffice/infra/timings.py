# boxoffice/infra/timings.py
from __future__ import annotations
import statistics
import time
from typing import Dict, List

# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}

# keep memory bounded on long-running workers
MAX_SAMPLES_PER_KIND = 10_000


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    if len(lst) >= MAX_SAMPLES_PER_KIND:
        del lst[: len(lst) // 2]
    lst.append(float(value))


class timeit:
    """async usage:
        async with timeit("orders.create"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, time.perf_counter() - self._t0)


def snapshot() -> Dict[str, Dict[str, float]]:
    out: Dict[str, Dict[str, float]] = {}
    for kind, vals in _TIMINGS.items():
        if not vals:
            continue
        out[kind] = {
            "n": len(vals),
            "mean": statistics.mean(vals),
            "std": statistics.stdev(vals) if len(vals) > 1 else 0.0,
        }
    return out
