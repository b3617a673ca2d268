# src/fleet_backend/retry.py
from __future__ import annotations
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable


@dataclass
class RetryPolicy:
    """
    Backoff exponentiel plafonné avec "full jitter" :
    delay = uniform(0, min(cap, base * 2 ** attempt))
    """
    base_delay: float = 1.0
    max_delay: float = 60.0
    rng: Callable[[float, float], float] = field(default=random.uniform, repr=False)

    def ceiling(self, attempt: int) -> float:
        # 2 ** attempt explose vite, on plafonne avant
        if attempt >= 32:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    def get_delay(self, attempt: int) -> float:
        return self.rng(0.0, self.ceiling(attempt))

    def next_attempt_at(self, now: datetime, attempt: int) -> datetime:
        return now + timedelta(seconds=self.get_delay(attempt))
