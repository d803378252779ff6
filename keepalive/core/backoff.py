"""
Restart backoff.

BackoffPolicy is the pure delay calculation; RestartPolicy carries the
mutable current delay and restart counter owned by the supervisor.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff bounded to [initial, maximum] seconds."""

    initial: float = 2.0
    maximum: float = 60.0
    factor: float = 1.5

    def __post_init__(self):
        if self.initial <= 0:
            raise ValueError(f"initial delay must be positive, got {self.initial}")
        if self.maximum < self.initial:
            raise ValueError(
                f"max delay ({self.maximum}) must not be below initial delay ({self.initial})"
            )

    def next_delay(self, current: float) -> float:
        """Delay that follows `current`. With a factor <= 1 it never grows."""
        return max(self.initial, min(current * self.factor, self.maximum))

    def reset(self) -> float:
        return self.initial


@dataclass
class RestartPolicy:
    """Current backoff position plus the lifetime restart count."""

    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    current_delay: float = 0.0
    restarts: int = 0

    def __post_init__(self):
        if not self.current_delay:
            self.current_delay = self.backoff.initial

    def record_restart(self) -> float:
        """Count a restart and return how long to wait before it."""
        self.restarts += 1
        delay = self.current_delay
        self.current_delay = self.backoff.next_delay(delay)
        return delay

    def reset(self) -> None:
        # The restart counter is never reset; it lives as long as the launcher.
        self.current_delay = self.backoff.reset()
