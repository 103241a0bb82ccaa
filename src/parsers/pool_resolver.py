"""Resolve a token's live trading state from DBC or DAMM v2.

The stored ``migrated`` flag is only a hint: the curve is always tried
first, and a missing VirtualPool falls through to the DAMM v2 pools the
mint could have graduated into.

Curve price:  (quote / 10^qd) / (base / 10^bd) * usd_per_quote
AMM price:    sqrt_price^2 / 2^128 rescaled by decimals (exact), with the
              vault balance ratio as the secondary method.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from fractions import Fraction

from loguru import logger

from src.core.exceptions import (
    PoolNotFoundError,
    PriceComputationError,
    ResolutionError,
    RpcError,
)
from src.parsers.meteora.client import MeteoraClient
from src.parsers.meteora.constants import (
    DAMM_V2_MIGRATION_FEE_CONFIGS,
    DBC_GRADUATION_THRESHOLD_LAMPORTS,
    QUOTE_MINTS,
    WSOL_MINT,
)
from src.parsers.meteora.math import (
    price_from_balances,
    price_from_sqrt_price,
    to_decimal,
)
from src.parsers.meteora.models import DammPool, PoolSnapshot
from src.parsers.meteora.pda import derive_damm_pool_address
from src.parsers.quote_price import QuotePriceFeed

HUNDRED = Decimal(100)


class PoolInfoResolver:
    def __init__(
        self,
        client: MeteoraClient,
        price_feed: QuotePriceFeed,
        *,
        base_decimals: int = 6,
        quote_decimals: int = 9,
        default_migration_threshold: int = DBC_GRADUATION_THRESHOLD_LAMPORTS,
        min_price_quote: float = 1e-10,
        max_price_quote: float = 100.0,
        migration_configs: Iterable[str] = DAMM_V2_MIGRATION_FEE_CONFIGS,
    ) -> None:
        self._client = client
        self._price_feed = price_feed
        self._base_decimals = base_decimals
        self._quote_decimals = quote_decimals
        self._default_threshold = default_migration_threshold
        self._min_price = Fraction(str(min_price_quote))
        self._max_price = Fraction(str(max_price_quote))
        self._migration_configs = tuple(migration_configs)

    async def resolve(
        self, mint: str, pool_address: str, migrated_hint: bool = False
    ) -> PoolSnapshot:
        """Curve first, then every DAMM v2 pool the mint may have migrated into.

        Raises ResolutionError (or a subclass) on any failure.
        """
        try:
            return await self.resolve_curve(pool_address, mint=mint)
        except PoolNotFoundError:
            logger.debug(
                f"[RESOLVER] No DBC pool at {pool_address[:12]} "
                f"(hint migrated={migrated_hint}), trying DAMM v2"
            )

        candidates = self.candidate_amm_addresses(mint, pool_address)
        try:
            pools = await self._client.get_damm_pools(candidates)
        except RpcError as e:
            raise ResolutionError(f"DAMM v2 lookup failed for {mint[:12]}: {e}") from e

        for address in candidates:
            pool = pools.get(address)
            if pool is not None and mint in (pool.token_a_mint, pool.token_b_mint):
                return await self._amm_snapshot(pool)

        raise PoolNotFoundError(f"Pool not found in either DBC or DAMM v2 for {mint}")

    def candidate_amm_addresses(self, mint: str, pool_address: str | None) -> list[str]:
        """Stored address first, then the PDA under each migration fee config."""
        candidates: list[str] = []
        if pool_address:
            candidates.append(pool_address)
        for config in self._migration_configs:
            address = str(derive_damm_pool_address(config, mint, WSOL_MINT))
            if address not in candidates:
                candidates.append(address)
        return candidates

    # ─── Curve (DBC) ─────────────────────────────────────────────────

    async def resolve_curve(self, pool_address: str, *, mint: str | None = None) -> PoolSnapshot:
        try:
            pool = await self._client.get_virtual_pool(pool_address)
            if pool is None:
                raise PoolNotFoundError(f"No VirtualPool at {pool_address}")
            if mint is not None and pool.base_mint != mint:
                raise PoolNotFoundError(
                    f"VirtualPool {pool_address[:12]} holds {pool.base_mint[:12]}, not {mint[:12]}"
                )
            config = await self._client.get_pool_config(pool.config)
        except RpcError as e:
            raise ResolutionError(f"DBC fetch failed for {pool_address[:12]}: {e}") from e

        threshold = self._default_threshold
        quote_mint = WSOL_MINT
        if config is not None:
            quote_mint = config.quote_mint
            if config.migration_quote_threshold > 0:
                threshold = config.migration_quote_threshold

        usd_per_quote = await self._price_feed.get_price()
        base_amount = Decimal(pool.base_reserve) / (Decimal(10) ** self._base_decimals)
        quote_amount = Decimal(pool.quote_reserve) / (Decimal(10) ** self._quote_decimals)

        price_in_quote = Decimal(0)
        if base_amount > 0 and quote_amount > 0:
            price_in_quote = quote_amount / base_amount
        price = price_in_quote * usd_per_quote

        progress = min(Decimal(pool.quote_reserve) * HUNDRED / Decimal(threshold), HUNDRED)

        return PoolSnapshot(
            pool_address=pool_address,
            base_mint=pool.base_mint,
            quote_mint=quote_mint,
            price=price,
            price_in_quote=price_in_quote,
            progress=progress,
            migration_threshold=Decimal(threshold) / (Decimal(10) ** self._quote_decimals),
            base_reserve=pool.base_reserve,
            quote_reserve=pool.quote_reserve,
            market_cap=price * base_amount,
            is_migrated=False,
            price_source="curve",
            curve_completed=pool.is_migrated,
        )

    # ─── AMM (DAMM v2) ───────────────────────────────────────────────

    async def resolve_amm(self, pool_address: str) -> PoolSnapshot:
        try:
            pool = await self._client.get_damm_pool(pool_address)
        except RpcError as e:
            raise ResolutionError(f"DAMM v2 fetch failed for {pool_address[:12]}: {e}") from e
        if pool is None:
            raise PoolNotFoundError(f"No DAMM v2 pool at {pool_address}")
        return await self._amm_snapshot(pool)

    async def find_amm_pool(self, mint: str) -> str | None:
        """Discover a graduated pool by scanning the DAMM v2 program.

        Among pools pairing ``mint`` with the quote asset, the deepest one wins.
        Returns None when nothing is found yet; that is not an error.
        """
        try:
            pools = await self._client.find_damm_pools_by_mint(mint)
        except RpcError as e:
            raise ResolutionError(f"DAMM v2 scan failed for {mint[:12]}: {e}") from e

        quoted = [
            p for p in pools
            if (p.token_a_mint == mint and p.token_b_mint in QUOTE_MINTS)
            or (p.token_b_mint == mint and p.token_a_mint in QUOTE_MINTS)
        ]
        if not quoted:
            return None
        best = max(quoted, key=lambda p: p.liquidity)
        logger.info(f"[RESOLVER] Discovered DAMM v2 pool {best.pool_address} for {mint[:12]}")
        return best.pool_address

    async def _amm_snapshot(self, pool: DammPool) -> PoolSnapshot:
        if pool.token_b_mint in QUOTE_MINTS:
            base_mint, quote_mint = pool.token_a_mint, pool.token_b_mint
            quote_is_b = True
        elif pool.token_a_mint in QUOTE_MINTS:
            base_mint, quote_mint = pool.token_b_mint, pool.token_a_mint
            quote_is_b = False
        else:
            raise PriceComputationError(
                f"DAMM v2 pool {pool.pool_address[:12]} has no quote-asset side"
            )

        try:
            mints = await self._client.get_mint_infos([pool.token_a_mint, pool.token_b_mint])
            balance_a, balance_b = await self._client.get_token_balances(
                [pool.token_a_vault, pool.token_b_vault]
            )
        except RpcError as e:
            raise ResolutionError(f"DAMM v2 state fetch failed for {pool.pool_address[:12]}: {e}") from e

        mint_a = mints.get(pool.token_a_mint)
        mint_b = mints.get(pool.token_b_mint)
        if mint_a is None or mint_b is None:
            raise ResolutionError(f"Mint metadata missing for pool {pool.pool_address[:12]}")
        base_info = mint_a if quote_is_b else mint_b

        price_q, source = self._amm_price(
            pool, mint_a.decimals, mint_b.decimals, quote_is_b, balance_a, balance_b
        )
        price_in_quote = to_decimal(price_q)
        usd_per_quote = await self._price_feed.get_price()
        price = price_in_quote * usd_per_quote

        supply = Decimal(base_info.supply) / (Decimal(10) ** base_info.decimals)
        base_reserve = (balance_a if quote_is_b else balance_b) or 0
        quote_reserve = (balance_b if quote_is_b else balance_a) or 0

        return PoolSnapshot(
            pool_address=pool.pool_address,
            base_mint=base_mint,
            quote_mint=quote_mint,
            price=price,
            price_in_quote=price_in_quote,
            progress=HUNDRED,
            migration_threshold=Decimal(0),
            base_reserve=base_reserve,
            quote_reserve=quote_reserve,
            market_cap=price * supply,
            is_migrated=True,
            secondary_pool_address=pool.pool_address,
            price_source=source,
        )

    def _amm_price(
        self,
        pool: DammPool,
        decimals_a: int,
        decimals_b: int,
        quote_is_b: bool,
        balance_a: int | None,
        balance_b: int | None,
    ) -> tuple[Fraction, str]:
        """Quote units per project token: exact sqrt price, else vault ratio."""
        if pool.sqrt_price > 0 and pool.sqrt_min_price <= pool.sqrt_price <= pool.sqrt_max_price:
            b_per_a = price_from_sqrt_price(pool.sqrt_price, decimals_a, decimals_b)
            price = b_per_a if quote_is_b else 1 / b_per_a
            if self._in_bounds(price):
                return price, "sqrt_price"
            logger.warning(
                f"[RESOLVER] sqrt_price price {float(price):.3e} out of bounds for "
                f"{pool.pool_address[:12]}, using vault balances"
            )
        else:
            logger.warning(
                f"[RESOLVER] sqrt_price {pool.sqrt_price} unusable for "
                f"{pool.pool_address[:12]}, using vault balances"
            )

        if not balance_a or not balance_b:
            raise PriceComputationError(f"Empty vault in pool {pool.pool_address[:12]}")
        if quote_is_b:
            price = price_from_balances(balance_a, balance_b, decimals_a, decimals_b)
        else:
            price = price_from_balances(balance_b, balance_a, decimals_b, decimals_a)
        if not self._in_bounds(price):
            raise PriceComputationError(
                f"Vault-ratio price {float(price):.3e} out of bounds for {pool.pool_address[:12]}"
            )
        return price, "vault_ratio"

    def _in_bounds(self, price: Fraction) -> bool:
        return self._min_price <= price <= self._max_price
