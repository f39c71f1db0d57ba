from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable, Dict, List, Tuple


class LoginAttemptLimiter:
    """
    In-memory limiter for failed sign-in attempts, keyed by lower-cased identifier.

    Only failures count: callers record a failure after a rejected credential and
    reset the identifier after a successful sign-in.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: int = 300,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._failures: Dict[str, List[float]] = defaultdict(list)
        self._max_attempts = max(1, int(max_attempts))
        self._window = float(window_seconds)
        self._clock = clock

    @staticmethod
    def _key(identifier: str) -> str:
        return (identifier or "").strip().lower()

    def _prune(self, key: str) -> List[float]:
        now = self._clock()
        recent = [t for t in self._failures.get(key, []) if now - t < self._window]
        if recent:
            self._failures[key] = recent
        else:
            self._failures.pop(key, None)
        return recent

    def check(self, identifier: str) -> Tuple[bool, int]:
        """
        Returns:
            (is_allowed, attempts_remaining) for the identifier's current window.
        """
        recent = self._prune(self._key(identifier))
        remaining = self._max_attempts - len(recent)
        return remaining > 0, max(remaining, 0)

    def record_failure(self, identifier: str) -> int:
        """Record a rejected attempt; returns attempts remaining."""
        key = self._key(identifier)
        recent = self._prune(key)
        recent.append(self._clock())
        self._failures[key] = recent
        return max(self._max_attempts - len(recent), 0)

    def reset(self, identifier: str) -> None:
        self._failures.pop(self._key(identifier), None)
