"""Very small in-memory counters shared by every unit."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field


@dataclass
class MetricsRegistry:
    counters: Counter[str] = field(default_factory=Counter)

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] += max(0, int(value))

    def get(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def summary(self) -> str:
        return " ".join(f"{key}={self.counters[key]}" for key in sorted(self.counters))
