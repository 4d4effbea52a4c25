# ─────────────────────────────────────────────────────────────────────────────
# Pipeline Metrics: in-memory counters + stage latency samples
# ─────────────────────────────────────────────────────────────────────────────
# Ephemeral (resets on restart). Everything is touched from the event loop
# only, so no locking. Served as JSON at GET /metrics.
# ─────────────────────────────────────────────────────────────────────────────

import time
from collections import Counter, deque

import numpy as np

MAX_SAMPLES = 200

COUNTERS = (
    "jobs_started",
    "jobs_completed",
    "jobs_failed",
    "jobs_cancelled",
    "refunds_issued",
    "refunds_failed",
    "rate_limited",
    "insufficient_credits",
    "image_fallbacks",
    "content_fallbacks",
)


class PipelineMetrics:
    """Counters and per-stage latency percentiles."""

    def __init__(self) -> None:
        self._started_at = time.time()
        self._counters: Counter[str] = Counter({name: 0 for name in COUNTERS})
        self._stage_samples: dict[str, deque[float]] = {}

    def inc(self, name: str, amount: int = 1) -> None:
        self._counters[name] += amount

    def count(self, name: str) -> int:
        return self._counters[name]

    def record_stage(self, stage: str, duration_ms: float) -> None:
        samples = self._stage_samples.setdefault(stage, deque(maxlen=MAX_SAMPLES))
        samples.append(duration_ms)

    def snapshot(self) -> dict:
        stages = {}
        for stage, samples in self._stage_samples.items():
            arr = np.asarray(samples, dtype=np.float64)
            stages[stage] = {
                "count": int(arr.size),
                "p50_ms": round(float(np.percentile(arr, 50)), 1),
                "p95_ms": round(float(np.percentile(arr, 95)), 1),
            }
        return {
            **dict(self._counters),
            "stages": stages,
            "uptime_seconds": int(time.time() - self._started_at),
        }
