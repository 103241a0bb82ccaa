"""Decode Meteora DBC and DAMM v2 on-chain account data.

Layouts from https://github.com/MeteoraAg/dynamic-bonding-curve and
https://github.com/MeteoraAg/damm-v2 (repr(C), little endian).

VirtualPool (424 bytes):
  72:104  config           136:168 base_mint
  168:200 base_vault       200:232 quote_vault
  232:240 base_reserve     240:248 quote_reserve
  280:296 sqrt_price       305     is_migrated

PoolConfig:
  8:40    quote_mint       235     token_decimal
  264:272 migration_quote_threshold

DAMM v2 Pool (1112 bytes):
  168 token_a_mint  200 token_b_mint  232 token_a_vault  264 token_b_vault
  360 liquidity (u128)  424 sqrt_min_price  440 sqrt_max_price  456 sqrt_price

DAMM v2 Position (408 bytes):
  8 pool  40 nft_mint  152 unlocked_liquidity  168 vested  184 permanent_locked
"""

import base64
import struct

from loguru import logger
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from src.parsers.meteora.constants import (
    DAMM_POOL_DISCRIMINATOR,
    DAMM_POSITION_DISCRIMINATOR,
    POOL_CONFIG_DISCRIMINATOR,
    VIRTUAL_POOL_DISCRIMINATOR,
)
from src.parsers.meteora.models import (
    DammPool,
    DammPosition,
    MeteoraPoolConfig,
    MeteoraVirtualPool,
)

VIRTUAL_POOL_SIZE = 424
POOL_CONFIG_MIN_SIZE = 272
DAMM_POOL_MIN_SIZE = 472
DAMM_POSITION_MIN_SIZE = 200


def _b64(address: str, data_b64: str) -> bytes | None:
    try:
        return base64.b64decode(data_b64, validate=True)
    except Exception:
        logger.debug(f"[METEORA] Failed to base64-decode account data for {address[:12]}")
        return None


def _pubkey(data: bytes, offset: int) -> str:
    return str(Pubkey.from_bytes(data[offset : offset + 32]))


def _u128(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset : offset + 16], "little")


def _check(address: str, data: bytes, min_size: int, discriminator: bytes, kind: str) -> bool:
    if len(data) < min_size:
        logger.debug(f"[METEORA] {kind} data too short: {len(data)} < {min_size} for {address[:12]}")
        return False
    if data[:8] != discriminator:
        logger.debug(f"[METEORA] Wrong {kind} discriminator for {address[:12]}")
        return False
    return True


def decode_virtual_pool(pool_address: str, data_b64: str) -> MeteoraVirtualPool | None:
    """Decode base64-encoded VirtualPool account data.

    Returns None on invalid data (short, wrong discriminator, decode error).
    """
    data = _b64(pool_address, data_b64)
    if data is None or not _check(
        pool_address, data, VIRTUAL_POOL_SIZE, VIRTUAL_POOL_DISCRIMINATOR, "VirtualPool"
    ):
        return None

    try:
        (base_reserve, quote_reserve) = struct.unpack_from("<2Q", data, 232)
        return MeteoraVirtualPool(
            pool_address=pool_address,
            config=_pubkey(data, 72),
            creator=_pubkey(data, 104),
            base_mint=_pubkey(data, 136),
            base_vault=_pubkey(data, 168),
            quote_vault=_pubkey(data, 200),
            base_reserve=base_reserve,
            quote_reserve=quote_reserve,
            sqrt_price=_u128(data, 280),
            is_migrated=data[305] != 0,
        )
    except Exception as e:
        logger.debug(f"[METEORA] Error decoding VirtualPool {pool_address[:12]}: {e}")
        return None


def decode_pool_config(config_address: str, data_b64: str) -> MeteoraPoolConfig | None:
    data = _b64(config_address, data_b64)
    if data is None or not _check(
        config_address, data, POOL_CONFIG_MIN_SIZE, POOL_CONFIG_DISCRIMINATOR, "PoolConfig"
    ):
        return None

    try:
        (threshold,) = struct.unpack_from("<Q", data, 264)
        return MeteoraPoolConfig(
            config_address=config_address,
            quote_mint=_pubkey(data, 8),
            token_decimal=data[235],
            migration_quote_threshold=threshold,
        )
    except Exception as e:
        logger.debug(f"[METEORA] Error decoding PoolConfig {config_address[:12]}: {e}")
        return None


def decode_damm_pool(pool_address: str, data_b64: str) -> DammPool | None:
    data = _b64(pool_address, data_b64)
    if data is None or not _check(
        pool_address, data, DAMM_POOL_MIN_SIZE, DAMM_POOL_DISCRIMINATOR, "DAMM pool"
    ):
        return None

    try:
        return DammPool(
            pool_address=pool_address,
            token_a_mint=_pubkey(data, 168),
            token_b_mint=_pubkey(data, 200),
            token_a_vault=_pubkey(data, 232),
            token_b_vault=_pubkey(data, 264),
            liquidity=_u128(data, 360),
            sqrt_min_price=_u128(data, 424),
            sqrt_max_price=_u128(data, 440),
            sqrt_price=_u128(data, 456),
        )
    except Exception as e:
        logger.debug(f"[METEORA] Error decoding DAMM pool {pool_address[:12]}: {e}")
        return None


def decode_damm_position(position_address: str, data_b64: str) -> DammPosition | None:
    data = _b64(position_address, data_b64)
    if data is None or not _check(
        position_address, data, DAMM_POSITION_MIN_SIZE, DAMM_POSITION_DISCRIMINATOR, "position"
    ):
        return None

    try:
        return DammPosition(
            position_address=position_address,
            pool=_pubkey(data, 8),
            nft_mint=_pubkey(data, 40),
            unlocked_liquidity=_u128(data, 152),
            vested_liquidity=_u128(data, 168),
            permanent_locked_liquidity=_u128(data, 184),
        )
    except Exception as e:
        logger.debug(f"[METEORA] Error decoding position {position_address[:12]}: {e}")
        return None
