"""
Salesflow - Throughput Governor
Fixed-window cap on outbound email sends, shared by every sequence run in the
process. Only real sends count; dry runs never touch the counter.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from salesflow.config import EMAILS_PER_WINDOW, SEND_WINDOW_SECONDS
from salesflow.db.entities import to_iso, utcnow

logger = logging.getLogger("salesflow.agents.throughput_governor")


class ThroughputGovernor:
    """Counts sends in the current window. All reads and writes happen under one lock."""

    def __init__(self, cap: int = EMAILS_PER_WINDOW,
                 window_seconds: int = SEND_WINDOW_SECONDS,
                 clock: Callable[[], datetime] = utcnow):
        if cap < 1:
            raise ValueError(f"cap must be positive, got {cap}")
        if window_seconds < 1:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")
        self.cap = cap
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._count = 0
        self._window_started_at = clock()

    def _roll_window(self):
        now = self._clock()
        if now - self._window_started_at >= self.window:
            if self._count:
                logger.info("Send window reset after %d sends", self._count)
            self._count = 0
            self._window_started_at = now

    def can_send(self) -> bool:
        with self._lock:
            self._roll_window()
            return self._count < self.cap

    def record_send(self):
        with self._lock:
            self._roll_window()
            self._count += 1

    def try_reserve(self) -> bool:
        """Check-and-increment in one step. False means the window is exhausted."""
        with self._lock:
            self._roll_window()
            if self._count >= self.cap:
                return False
            self._count += 1
            return True

    def release(self):
        """Give back a reservation whose send failed."""
        with self._lock:
            if self._count > 0:
                self._count -= 1

    def snapshot(self) -> dict:
        with self._lock:
            self._roll_window()
            return {
                "cap": self.cap,
                "window_seconds": int(self.window.total_seconds()),
                "sent_in_window": self._count,
                "window_started_at": to_iso(self._window_started_at),
                "remaining": max(0, self.cap - self._count),
            }
