from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from threading import BoundedSemaphore, Lock
from typing import Iterator


class CapacityExceeded(RuntimeError):
    """Keine freie Kapazität im Limiter."""


@dataclass(frozen=True, slots=True)
class LimiterStats:
    max_concurrent: int
    active: int
    rejected: int


class ConcurrencyLimiter:
    """Begrenzt gleichzeitige Schreibzugriffe, Zähler leben in der Instanz."""

    def __init__(self, max_concurrent: int = 8, *, timeout: float = 0.0) -> None:
        self.max_concurrent = max(1, int(max_concurrent or 1))
        self.timeout = timeout
        self._sem = BoundedSemaphore(self.max_concurrent)
        self._lock = Lock()
        self._active = 0
        self._rejected = 0

    @contextmanager
    def slot(self) -> Iterator[None]:
        acquired = self._sem.acquire(timeout=self.timeout) if self.timeout > 0 else self._sem.acquire(blocking=False)
        if not acquired:
            with self._lock:
                self._rejected += 1
            raise CapacityExceeded(f"Maximal {self.max_concurrent} gleichzeitige Anfragen.")
        with self._lock:
            self._active += 1
        try:
            yield
        finally:
            with self._lock:
                self._active -= 1
            self._sem.release()

    def stats(self) -> LimiterStats:
        with self._lock:
            return LimiterStats(max_concurrent=self.max_concurrent, active=self._active, rejected=self._rejected)
