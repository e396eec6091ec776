from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff exponencial con tope y jitter aditivo.

    ``delay = min(base * multiplier ** (attempts - 1), max) + U(0, jitter)``
    """

    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    backoff_multiplier: float = 2.0
    jitter_seconds: float = 1.0
    max_attempts: int = 8

    def delay_for(self, attempts: int, *, rng: Callable[[], float] = random.random) -> float:
        exponent = max(attempts - 1, 0)
        try:
            raw = self.base_delay_seconds * (self.backoff_multiplier ** exponent)
        except OverflowError:
            raw = self.max_delay_seconds
        return min(raw, self.max_delay_seconds) + rng() * self.jitter_seconds

    def next_retry_at(
        self,
        now: datetime,
        attempts: int,
        *,
        rng: Callable[[], float] = random.random,
    ) -> datetime:
        return now + timedelta(seconds=self.delay_for(attempts, rng=rng))


class CycleBackoff:
    """Espera a nivel de ciclo tras fallos reintentables consecutivos."""

    def __init__(self, policy: RetryPolicy, *, rng: Callable[[], float] = random.random) -> None:
        self._policy = policy
        self._rng = rng
        self._lock = threading.Lock()
        self._failures = 0
        self._until: datetime | None = None

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failures

    @property
    def until(self) -> datetime | None:
        with self._lock:
            return self._until

    def record_failure(self, now: datetime) -> datetime:
        with self._lock:
            self._failures += 1
            self._until = self._policy.next_retry_at(now, self._failures, rng=self._rng)
            return self._until

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._until = None

    def is_active(self, now: datetime) -> bool:
        with self._lock:
            return self._until is not None and now < self._until

    def remaining_seconds(self, now: datetime) -> float:
        with self._lock:
            if self._until is None:
                return 0.0
            return max((self._until - now).total_seconds(), 0.0)
