"""
Fixed-window rate limiter for emergency token validation
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

JOB_ID = "rate_limit_cleanup"


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """
    Counts attempts per key inside a fixed window that opens on the first
    attempt. Counters only reset when their window has passed.
    """

    def __init__(self, max_attempts: int = 20, window_seconds: float = 3600,
                 clock: Callable[[], float] = time.monotonic):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    def _current(self, key: str, now: float) -> Optional[_Window]:
        window = self._windows.get(key)
        if window is not None and now >= window.reset_at:
            del self._windows[key]
            return None
        return window

    def hit(self, key: str) -> bool:
        """Count one attempt for ``key``; True when the caller is over budget"""
        now = self.clock()
        with self._lock:
            window = self._current(key, now)
            if window is None:
                self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
                return False
            if window.count >= self.max_attempts:
                return True
            window.count += 1
            return False

    def remaining_attempts(self, key: str) -> int:
        with self._lock:
            window = self._current(key, self.clock())
            if window is None:
                return self.max_attempts
            return max(0, self.max_attempts - window.count)

    def time_to_reset(self, key: str) -> float:
        """Seconds until the key's window closes, 0 when there is none"""
        now = self.clock()
        with self._lock:
            window = self._current(key, now)
            if window is None:
                return 0.0
            return max(0.0, window.reset_at - now)

    def cleanup(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if now >= window.reset_at]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug(f"Rate limiter dropped {len(expired)} expired window(s)")
        return len(expired)

    def start_cleanup(self, interval_seconds: float = 600):
        if self._scheduler is not None and self._scheduler.running:
            return
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self.cleanup,
            IntervalTrigger(seconds=interval_seconds),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self._scheduler.start()
        logger.info(f"Rate limiter cleanup started (interval: {interval_seconds}s)")

    def stop_cleanup(self):
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
