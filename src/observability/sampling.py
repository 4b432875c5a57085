"""Trace sampling.

Decisions are made once per trace, at the root span. Child spans inherit the
decision of their parent, so a trace is either exported whole or not at all.
"""

from __future__ import annotations

import random
import threading
from typing import Protocol


class Sampler(Protocol):
    def should_sample(self, trace_id: int, name: str) -> bool:
        """Decide whether a new trace root is exported."""


class TraceIdRatioSampler:
    """Sample a fixed fraction of trace roots.

    `ratio=1.0` exports every trace and `ratio=0.0` exports none. Passing a
    `seed` makes the accept/reject sequence reproducible.
    """

    def __init__(self, ratio: float = 1.0, *, seed: int | None = None) -> None:
        if not 0.0 <= ratio <= 1.0:
            raise ValueError(f"sampling ratio must be within [0, 1]. Got: {ratio}")
        self.ratio = ratio
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    def should_sample(self, trace_id: int, name: str) -> bool:
        if self.ratio >= 1.0:
            return True
        if self.ratio <= 0.0:
            return False
        with self._lock:
            return self._rng.random() < self.ratio

    @property
    def description(self) -> str:
        """Human-readable policy name (mirrors the OpenTelemetry sampler descriptions)."""
        return f"TraceIdRatioSampler({self.ratio})"
