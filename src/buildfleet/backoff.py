from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class BackoffState:
    """Exponential backoff: doubles on failure, back to ``min`` on any success."""

    min: float = 1.0
    max: float = 60.0
    current: float = field(init=False)

    def __post_init__(self) -> None:
        self.current = self.min

    def failure(self) -> float:
        """Record a failure and return how long to wait before the next attempt."""
        delay = self.current
        self.current = min(self.current * 2, self.max)
        return delay

    def reset(self) -> None:
        self.current = self.min
