"""
Non-behavioral client metrics.

Infrastructure health only: RPC latency, poll failures, confirmation
outcomes. No locations, salts or player identifiers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass
class Metrics:
    counters: Dict[str, int] = field(default_factory=dict)
    gauges: Dict[str, float] = field(default_factory=dict)

    def inc(self, name: str, by: int = 1) -> None:
        """Increment counter by value."""
        self.counters[name] = self.counters.get(name, 0) + by

    def observe(self, name: str, value: float) -> None:
        """Record gauge value."""
        self.gauges[name] = float(value)

    def snapshot(self) -> dict:
        return {
            "counters": dict(self.counters),
            "gauges": dict(self.gauges),
        }
