"""
Per-session cache for VXN volatility metrics.
Pure stdlib with no Streamlit dependency so the service works outside of Streamlit.
"""
import threading
import time
from typing import Callable, Optional

from .models import VolatilityMetrics


class VolatilityCache:
    """
    Single-slot cache: the last metrics plus the Gemini key that fetched them.
    A lookup with a different key, or after ttl_seconds, is a miss.
    Guarded by a lock: the volatility worker thread writes to it.
    """

    def __init__(self, ttl_seconds: int = 900, clock: Callable[[], float] = time.time):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entry = None  # (gemini_key, metrics, stored_at)
        self._lock = threading.Lock()

    def get(self, gemini_key: str) -> Optional[VolatilityMetrics]:
        with self._lock:
            if self._entry is None:
                return None
            key, metrics, stored_at = self._entry
            if key != gemini_key or self._clock() - stored_at >= self._ttl:
                self._entry = None
                return None
            return metrics

    def put(self, gemini_key: str, metrics: VolatilityMetrics) -> None:
        with self._lock:
            self._entry = (gemini_key, metrics, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entry = None
