"""USD price of the quote asset (SOL) from the Binance ticker.

Cached for ``ttl`` seconds. Any failure returns the last good price, or the
conservative default before the first success; a pass never blocks on it.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from decimal import Decimal

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

BINANCE_TICKER_URL = "https://api.binance.com/api/v3/ticker/price"


class TickerPrice(BaseModel):
    symbol: str
    price: Decimal

    model_config = {"extra": "ignore"}


class QuotePriceFeed:
    def __init__(
        self,
        *,
        url: str = BINANCE_TICKER_URL,
        symbol: str = "SOLUSDT",
        default_usd: float = 150.0,
        ttl: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._symbol = symbol
        self._default = Decimal(str(default_usd))
        self._ttl = ttl
        self._http = http_client or httpx.AsyncClient(timeout=10.0)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._price: Decimal | None = None
        self._fetched_at = 0.0

    @property
    def last_price(self) -> Decimal | None:
        return self._price

    async def get_price(self) -> Decimal:
        if self._is_fresh():
            return self._price  # type: ignore[return-value]

        async with self._lock:
            if self._is_fresh():
                return self._price  # type: ignore[return-value]
            try:
                price = await self._fetch()
            except (httpx.HTTPError, ValidationError, ValueError) as e:
                fallback = self._price if self._price is not None else self._default
                logger.warning(f"[PRICE] {self._symbol} fetch failed ({e}), using ${fallback}")
                return fallback

            self._price = price
            self._fetched_at = self._clock()
            logger.debug(f"[PRICE] {self._symbol} = ${price}")
            return price

    def _is_fresh(self) -> bool:
        return self._price is not None and self._clock() - self._fetched_at < self._ttl

    async def _fetch(self) -> Decimal:
        resp = await self._http.get(self._url, params={"symbol": self._symbol})
        resp.raise_for_status()
        ticker = TickerPrice.model_validate(resp.json())
        if ticker.price <= 0:
            raise ValueError(f"non-positive price {ticker.price}")
        return ticker.price

    async def close(self) -> None:
        await self._http.aclose()
