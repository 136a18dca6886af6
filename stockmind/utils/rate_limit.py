"""Request pacing for metered external APIs."""

from __future__ import annotations

import asyncio
import time


class RateLimiter:
    """Token bucket by delay: at most ``per_minute`` calls in any minute."""

    def __init__(self, *, per_minute: float = 1.0) -> None:
        self.per_minute = max(per_minute, 1e-9)
        self._lock = asyncio.Lock()
        self._last_request: float | None = None

    @property
    def interval(self) -> float:
        return 60.0 / self.per_minute

    async def wait(self) -> None:
        async with self._lock:
            if self._last_request is not None:
                elapsed = time.monotonic() - self._last_request
                if elapsed < self.interval:
                    await asyncio.sleep(self.interval - elapsed)
            self._last_request = time.monotonic()
