"""Pydantic v2 models for decoded Meteora accounts and resolved pool state."""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel


class MeteoraVirtualPool(BaseModel):
    """Decoded on-chain DBC VirtualPool account data."""

    pool_address: str
    config: str
    creator: str
    base_mint: str
    base_vault: str
    quote_vault: str
    base_reserve: int
    quote_reserve: int
    sqrt_price: int
    is_migrated: bool

    model_config = {"extra": "ignore"}


class MeteoraPoolConfig(BaseModel):
    """Subset of the DBC PoolConfig account the resolver needs."""

    config_address: str
    quote_mint: str
    token_decimal: int
    migration_quote_threshold: int

    model_config = {"extra": "ignore"}


class DammPool(BaseModel):
    """Decoded DAMM v2 Pool account."""

    pool_address: str
    token_a_mint: str
    token_b_mint: str
    token_a_vault: str
    token_b_vault: str
    liquidity: int
    sqrt_min_price: int
    sqrt_max_price: int
    sqrt_price: int

    model_config = {"extra": "ignore"}


class DammPosition(BaseModel):
    """Decoded DAMM v2 Position account."""

    position_address: str
    pool: str
    nft_mint: str
    unlocked_liquidity: int
    vested_liquidity: int
    permanent_locked_liquidity: int

    model_config = {"extra": "ignore"}


class MintInfo(BaseModel):
    mint: str
    decimals: int
    supply: int
    program_id: str

    model_config = {"extra": "ignore"}


class PoolSnapshot(BaseModel):
    """Normalized trading state of one token, computed fresh every poll."""

    pool_address: str
    base_mint: str
    quote_mint: str
    price: Decimal  # USD per token
    price_in_quote: Decimal
    progress: Decimal  # 0-100, pinned to 100 once on the AMM
    migration_threshold: Decimal  # quote units; 0 once migrated
    base_reserve: int
    quote_reserve: int
    market_cap: Decimal
    is_migrated: bool
    secondary_pool_address: str | None = None
    price_source: Literal["curve", "sqrt_price", "vault_ratio"] = "curve"
    curve_completed: bool = False

    model_config = {"extra": "ignore"}
