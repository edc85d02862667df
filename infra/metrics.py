from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional


class Metrics:
    """In-process counters, reason counters and latency samples (ms)."""

    def __init__(self, max_samples: int = 2000) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._reason_counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._max_samples = int(max_samples)

    def reset(self) -> None:
        self._counters.clear()
        self._reason_counters.clear()
        self._histograms.clear()

    def inc(self, name: str, n: int = 1) -> None:
        if not name:
            return
        self._counters[str(name)] += int(n)

    def inc_reason(self, group: str, reason: str, n: int = 1) -> None:
        if not group or not reason:
            return
        self._reason_counters[str(group)][str(reason)] += int(n)

    def observe(self, name: str, value: float) -> None:
        if not name:
            return
        try:
            v = float(value)
        except (TypeError, ValueError):
            return
        if v != v:  # NaN
            return
        bucket = self._histograms[str(name)]
        bucket.append(v)
        if len(bucket) > self._max_samples:
            del bucket[: len(bucket) - self._max_samples]

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        """Observe the wall time of the block in milliseconds, even when it raises."""
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - t0) * 1000.0)

    @staticmethod
    def _rank(ordered: List[float], pct: float) -> float:
        k = max(0, min(len(ordered) - 1, int(round((pct / 100.0) * (len(ordered) - 1)))))
        return float(ordered[k])

    def snapshot(self, prefix: Optional[str] = None) -> Dict[str, Any]:
        """Plain-dict view; with prefix, only metrics whose name starts with it."""

        def keep(name: str) -> bool:
            return prefix is None or name.startswith(prefix)

        hist_stats: Dict[str, Any] = {}
        for name, vals in self._histograms.items():
            if not keep(name) or not vals:
                continue
            ordered = sorted(vals)
            hist_stats[name] = {
                "count": len(ordered),
                "p50": self._rank(ordered, 50.0),
                "p95": self._rank(ordered, 95.0),
                "max": float(ordered[-1]),
            }

        return {
            "counters": {k: v for k, v in self._counters.items() if keep(k)},
            "reason_counters": {g: dict(c) for g, c in self._reason_counters.items() if keep(g)},
            "histograms": hist_stats,
        }


METRICS = Metrics()
