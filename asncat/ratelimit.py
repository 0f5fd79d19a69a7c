"""Sliding-window tokens-per-minute admission control for the classifier."""

import logging
import threading
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
EXPIRY_BUFFER_SECONDS = 0.1

DEFAULT_TOKENS_PER_MINUTE = 200_000
DEFAULT_MAX_CONTEXT_TOKENS = 250_000


class TokenRateLimiter:
    """Bound the tokens sent per rolling 60-second window.

    Observations are ``(timestamp, tokens)`` pairs recorded after each
    successful call.  ``wait_for_capacity`` blocks until enough old
    observations have aged out for the next request to fit.

    When even the whole window expiring would not free enough tokens
    (a single request larger than the budget), the limiter waits only
    for the newest observation to expire.  That wait is approximate; the
    window is pruned again after sleeping, and a request that still does
    not fit is let through rather than blocked forever.

    Args:
        tokens_per_minute: Budget per window.
        max_context_tokens: Largest prompt a single request may carry.
        clock: Monotonic seconds source (injectable for tests).
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        tokens_per_minute: int = DEFAULT_TOKENS_PER_MINUTE,
        max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.tokens_per_minute = tokens_per_minute
        self.max_context_tokens = max_context_tokens
        self._clock = clock
        self._sleep = sleep
        self._window: deque[tuple[float, int]] = deque()
        self._lock = threading.Lock()

    def record_tokens(self, tokens: int) -> None:
        """Record *tokens* as sent now."""
        with self._lock:
            self._window.append((self._clock(), tokens))

    def current_usage(self) -> int:
        """Tokens recorded within the last window."""
        with self._lock:
            self._prune()
            return sum(tokens for _, tokens in self._window)

    def wait_for_capacity(self, estimated_tokens: int, identifier: str = "") -> float:
        """Block until *estimated_tokens* fit into the window.

        Args:
            estimated_tokens: Expected prompt plus completion tokens.
            identifier: Label for the log line, e.g. ``"AS13335"``.

        Returns:
            Seconds slept (0.0 when capacity was available).
        """
        with self._lock:
            self._prune()
            usage = sum(tokens for _, tokens in self._window)
            needed = estimated_tokens - (self.tokens_per_minute - usage)
            if needed <= 0:
                return 0.0
            wait = self._wait_time(needed)

        if wait <= 0:
            return 0.0

        logger.info(
            "%s: Rate limit (%d + %d > %d TPM), waiting %.1fs",
            identifier or "request",
            usage,
            estimated_tokens,
            self.tokens_per_minute,
            wait,
        )
        self._sleep(wait)
        with self._lock:
            self._prune()
        return wait

    def _wait_time(self, needed: int) -> float:
        if not self._window:
            return 0.0
        now = self._clock()
        freed = 0
        for timestamp, tokens in self._window:
            freed += tokens
            if freed >= needed:
                return max(0.0, timestamp + WINDOW_SECONDS - now + EXPIRY_BUFFER_SECONDS)
        newest = self._window[-1][0]
        return max(0.0, newest + WINDOW_SECONDS - now + EXPIRY_BUFFER_SECONDS)

    def _prune(self) -> None:
        cutoff = self._clock() - WINDOW_SECONDS
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()
