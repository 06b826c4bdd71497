"""Per-key request window limiter."""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass
class RateWindow:
    window_start: float
    count: int = 0


class RateLimiter:
    """Fixed window counter keyed by credential.

    The call that crosses the cap is counted as well, so every later call in
    the same window stays rejected until the window rolls over.
    """

    def __init__(
        self,
        max_calls: int = 10,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = RateWindow(window_start=now)
                self._windows[key] = window
            elif now - window.window_start > self.window_seconds:
                window.count = 0
                window.window_start = now
            window.count += 1
            return window.count <= self.max_calls

    def retry_after(self, key: str) -> int:
        """Seconds until the key's current window rolls over."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return 0
            remaining = window.window_start + self.window_seconds - now
        return max(int(math.ceil(remaining)), 0)


__all__ = ["RateLimiter", "RateWindow"]
