from __future__ import annotations

import math
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fairshare.logging import get_logger
from fairshare.service.tokens import Clock
from fairshare.storage.models import utcnow

logger = get_logger(__name__)


@dataclass
class RateLimitEntry:
    count: int
    window_reset_at: datetime


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    reset_seconds: int
    retry_after_seconds: int


class RateLimiter:
    """Fixed-window request counter keyed by client.

    The first request for a key (or the first after its window ended) opens a
    window of ``window`` length with count 1. Later requests in the window
    increment the count and are allowed while ``count <= limit``. Denied
    requests still count. Up to ``2 * limit`` requests can pass across a window
    boundary.

    The table holds at most ``max_entries`` keys; the least recently used entry
    is evicted first, and windows that have ended are swept every
    ``sweep_interval``.
    """

    def __init__(
        self,
        *,
        limit: int = 5,
        window: timedelta = timedelta(minutes=15),
        max_entries: int = 10_000,
        sweep_interval: timedelta = timedelta(minutes=1),
        clock: Optional[Clock] = None,
    ) -> None:
        if limit < 1:
            raise ValueError("rate limit must be at least 1")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.limit = limit
        self.window = window
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._clock = clock or utcnow
        self._entries: "OrderedDict[str, RateLimitEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._next_sweep_at = self._clock() + sweep_interval

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def check(self, client_key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep_at:
                self._sweep(now)
            entry = self._entries.get(client_key)
            if entry is None or now > entry.window_reset_at:
                entry = RateLimitEntry(count=1, window_reset_at=now + self.window)
                self._entries[client_key] = entry
            else:
                entry.count += 1
            self._entries.move_to_end(client_key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("rate_limit_entry_evicted", client_key=evicted)
            count = entry.count
            reset_at = entry.window_reset_at

        allowed = count <= self.limit
        reset_seconds = max(0, math.ceil((reset_at - now).total_seconds()))
        retry_after = 0
        if not allowed:
            retry_after = max(1, reset_seconds)
            logger.warning(
                "rate_limit_exceeded", client_key=client_key, count=count, limit=self.limit
            )
        return RateLimitDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=reset_at,
            reset_seconds=reset_seconds,
            retry_after_seconds=retry_after,
        )

    def reset(self, client_key: Optional[str] = None) -> None:
        with self._lock:
            if client_key is None:
                self._entries.clear()
            else:
                self._entries.pop(client_key, None)

    def _sweep(self, now: datetime) -> None:
        expired = [key for key, entry in self._entries.items() if now > entry.window_reset_at]
        for key in expired:
            del self._entries[key]
        self._next_sweep_at = now + self.sweep_interval
        if expired:
            logger.debug("rate_limit_swept", removed=len(expired), remaining=len(self._entries))
