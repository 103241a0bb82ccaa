import asyncio


class RateLimiter:
    """Minimum-interval rate limiter shared by every caller of one upstream.

    Callers are serialized on a single lock, so the total request rate stays
    within ``max_rps`` no matter how many battles a pass resolves at once.
    """

    def __init__(self, max_rps: float) -> None:
        if max_rps <= 0:
            raise ValueError("max_rps must be positive")
        self._min_interval = 1.0 / max_rps
        self._last_request = 0.0
        self._cooldown_until = 0.0
        self._lock = asyncio.Lock()

    @property
    def max_rps(self) -> float:
        return 1.0 / self._min_interval

    async def acquire(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            now = loop.time()
            wait = max(
                self._min_interval - (now - self._last_request),
                self._cooldown_until - now,
            )
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = loop.time()

    def penalize(self, seconds: float) -> None:
        """Hold every caller back for ``seconds`` (HTTP 429 / Retry-After)."""
        loop = asyncio.get_running_loop()
        self._cooldown_until = max(self._cooldown_until, loop.time() + seconds)
