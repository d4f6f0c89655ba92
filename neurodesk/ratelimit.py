"""
Send budget for chat completion calls.

Uses the server's rate-limit headers when the last response carried them.
Otherwise counts calls in a fixed client-side window.
"""

import logging
import time
from threading import Lock
from typing import Callable, Optional

from .config import get_config
from .providers.base import RateLimitInfo

logger = logging.getLogger(__name__)

MAX_FALLBACK_LIMIT = 10_000
MAX_WINDOW_SECONDS = 24 * 3600


class SendBudget:
    """
    Decides whether another request may be sent.

    Server data wins: a send is allowed while ``remaining > 0`` or once the
    reset time has passed. Without server data the fallback window allows
    ``limit`` calls per ``window_seconds``.
    """

    def __init__(
        self,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
        block_when_exhausted: Optional[bool] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the budget.

        Args:
            limit: Calls per fallback window (clamped to 1..10000)
            window_seconds: Fallback window length (clamped to 1..86400)
            block_when_exhausted: Refuse sends when out of calls
            clock: Time source in epoch seconds
        """
        config = get_config().ratelimit
        self._clock = clock
        self._lock = Lock()
        self.block_when_exhausted = (
            config.block_when_exhausted if block_when_exhausted is None else block_when_exhausted
        )
        self.limit = self._clamp(limit if limit is not None else config.fallback_limit, MAX_FALLBACK_LIMIT)
        self.window_seconds = self._clamp(
            window_seconds if window_seconds is not None else config.window_seconds,
            MAX_WINDOW_SECONDS
        )
        self.used = 0
        self.window_ends_at = self._clock() + self.window_seconds
        self.server: Optional[RateLimitInfo] = None

    @staticmethod
    def _clamp(value: int, high: int) -> int:
        return max(1, min(int(value), high))

    def set_window(self, seconds: int) -> None:
        """Change the fallback window. Restarts the count."""
        with self._lock:
            self.window_seconds = self._clamp(seconds, MAX_WINDOW_SECONDS)
            self.used = 0
            self.window_ends_at = self._clock() + self.window_seconds

    def set_limit(self, limit: int) -> None:
        with self._lock:
            self.limit = self._clamp(limit, MAX_FALLBACK_LIMIT)
            self.used = min(self.used, self.limit)

    def update(self, info: Optional[RateLimitInfo]) -> None:
        """Record the rate-limit metadata of the latest response."""
        with self._lock:
            self.server = info if info is not None and info.has_data else None

    @property
    def uses_server_data(self) -> bool:
        return self.server is not None and self.server.remaining is not None

    def tick(self) -> None:
        """Count one call against the fallback window."""
        with self._lock:
            now = self._clock()
            if now >= self.window_ends_at:
                self.used = 0
                self.window_ends_at = now + self.window_seconds
            self.used = min(self.used + 1, self.limit)

    def fallback_remaining(self) -> int:
        with self._lock:
            if self._clock() >= self.window_ends_at:
                return self.limit
            return max(0, self.limit - self.used)

    def can_send(self) -> bool:
        server = self.server
        if server is not None and server.remaining is not None:
            if server.remaining > 0:
                return True
            if server.reset_at is None or self._clock() >= server.reset_at.timestamp():
                return True
            return not self.block_when_exhausted

        if self.fallback_remaining() > 0:
            return True
        return not self.block_when_exhausted

    def before_send(self) -> bool:
        """
        Check the budget and count the call when no server data exists.

        Returns:
            False if the send must be blocked
        """
        if not self.can_send():
            logger.info("Send blocked by rate limit")
            return False
        if not self.uses_server_data:
            self.tick()
        return True
