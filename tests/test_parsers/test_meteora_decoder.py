"""Test Meteora DBC and DAMM v2 account decoders."""

import base64
import struct

from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from src.parsers.meteora.constants import (
    DAMM_POOL_DISCRIMINATOR,
    DAMM_POSITION_DISCRIMINATOR,
    POOL_CONFIG_DISCRIMINATOR,
    VIRTUAL_POOL_DISCRIMINATOR,
    WSOL_MINT,
)
from src.parsers.meteora.decoder import (
    POOL_CONFIG_MIN_SIZE,
    VIRTUAL_POOL_SIZE,
    decode_damm_pool,
    decode_damm_position,
    decode_pool_config,
    decode_virtual_pool,
)

CONFIG = Pubkey.new_unique()
BASE_MINT = Pubkey.new_unique()
NFT_MINT = Pubkey.new_unique()
POOL = Pubkey.new_unique()


def _b64(buf: bytes | bytearray) -> str:
    return base64.b64encode(bytes(buf)).decode()


def _build_valid_pool_data() -> bytes:
    """Build minimal valid VirtualPool account data (424 bytes)."""
    buf = bytearray(VIRTUAL_POOL_SIZE)

    # Discriminator (8 bytes)
    buf[0:8] = VIRTUAL_POOL_DISCRIMINATOR

    # config at 72:104
    buf[72:104] = bytes(CONFIG)

    # creator at 104:136, 32 bytes of 0x01
    buf[104:136] = bytes([1] * 32)

    # base_mint at 136:168
    buf[136:168] = bytes(BASE_MINT)

    # base_vault / quote_vault at 168:200 / 200:232
    buf[168:200] = bytes([3] * 32)
    buf[200:232] = bytes([4] * 32)

    # base_reserve at 232 (u64 LE), quote_reserve at 240 (u64 LE)
    struct.pack_into("<Q", buf, 232, 1_000_000_000)
    struct.pack_into("<Q", buf, 240, 500_000_000)

    # sqrt_price at 280 (u128 LE)
    buf[280:296] = (1 << 64).to_bytes(16, "little")

    # is_migrated at 305 (u8)
    buf[305] = 0

    return bytes(buf)


def _build_pool_config_data(threshold: int = 85_000_000_000) -> bytes:
    buf = bytearray(POOL_CONFIG_MIN_SIZE)
    buf[0:8] = POOL_CONFIG_DISCRIMINATOR
    buf[8:40] = bytes(Pubkey.from_string(WSOL_MINT))
    buf[235] = 6
    struct.pack_into("<Q", buf, 264, threshold)
    return bytes(buf)


def _build_damm_pool_data(sqrt_price: int = 1 << 64) -> bytes:
    buf = bytearray(1112)
    buf[0:8] = DAMM_POOL_DISCRIMINATOR
    buf[168:200] = bytes(BASE_MINT)
    buf[200:232] = bytes(Pubkey.from_string(WSOL_MINT))
    buf[232:264] = bytes([5] * 32)
    buf[264:296] = bytes([6] * 32)
    buf[360:376] = (10**12).to_bytes(16, "little")
    buf[424:440] = (1 << 60).to_bytes(16, "little")
    buf[440:456] = (1 << 70).to_bytes(16, "little")
    buf[456:472] = sqrt_price.to_bytes(16, "little")
    return bytes(buf)


def _build_position_data(unlocked: int = 5_000) -> bytes:
    buf = bytearray(408)
    buf[0:8] = DAMM_POSITION_DISCRIMINATOR
    buf[8:40] = bytes(POOL)
    buf[40:72] = bytes(NFT_MINT)
    buf[152:168] = unlocked.to_bytes(16, "little")
    buf[168:184] = (7).to_bytes(16, "little")
    buf[184:200] = (9).to_bytes(16, "little")
    return bytes(buf)


# ── VirtualPool ────────────────────────────────────────────────────────


def test_decode_returns_none_on_short_data():
    short_data = base64.b64encode(b"tooshort").decode()
    result = decode_virtual_pool("test_pool", short_data)
    assert result is None


def test_decode_returns_none_on_wrong_discriminator():
    buf = bytearray(VIRTUAL_POOL_SIZE)
    buf[0:8] = b"\x00\x00\x00\x00\x00\x00\x00\x00"
    result = decode_virtual_pool("test_pool", _b64(buf))
    assert result is None


def test_decode_returns_none_on_invalid_base64():
    result = decode_virtual_pool("test_pool", "not-valid-base64!!!")
    assert result is None


def test_decode_valid_pool():
    result = decode_virtual_pool("pool_addr_abc", _b64(_build_valid_pool_data()))
    assert result is not None
    assert result.pool_address == "pool_addr_abc"
    assert result.config == str(CONFIG)
    assert result.base_mint == str(BASE_MINT)
    assert result.base_reserve == 1_000_000_000
    assert result.quote_reserve == 500_000_000
    assert result.sqrt_price == 1 << 64
    assert result.is_migrated is False
    assert result.quote_vault == str(Pubkey.from_bytes(bytes([4] * 32)))


def test_decode_migrated_pool():
    pool_data = bytearray(_build_valid_pool_data())
    pool_data[305] = 1  # is_migrated = true
    result = decode_virtual_pool("migrated_pool", _b64(pool_data))
    assert result is not None
    assert result.is_migrated is True


# ── PoolConfig ─────────────────────────────────────────────────────────


def test_decode_pool_config():
    result = decode_pool_config("cfg", _b64(_build_pool_config_data(42_000_000_000)))
    assert result is not None
    assert result.quote_mint == WSOL_MINT
    assert result.token_decimal == 6
    assert result.migration_quote_threshold == 42_000_000_000


def test_decode_pool_config_rejects_virtual_pool_data():
    assert decode_pool_config("cfg", _b64(_build_valid_pool_data())) is None


# ── DAMM v2 pool ───────────────────────────────────────────────────────


def test_decode_damm_pool():
    result = decode_damm_pool("damm", _b64(_build_damm_pool_data(3 << 64)))
    assert result is not None
    assert result.token_a_mint == str(BASE_MINT)
    assert result.token_b_mint == WSOL_MINT
    assert result.liquidity == 10**12
    assert result.sqrt_min_price == 1 << 60
    assert result.sqrt_max_price == 1 << 70
    assert result.sqrt_price == 3 << 64


def test_decode_damm_pool_short_data():
    assert decode_damm_pool("damm", _b64(_build_damm_pool_data()[:400])) is None


def test_decode_damm_pool_wrong_discriminator():
    buf = bytearray(_build_damm_pool_data())
    buf[0:8] = DAMM_POSITION_DISCRIMINATOR
    assert decode_damm_pool("damm", _b64(buf)) is None


# ── DAMM v2 position ───────────────────────────────────────────────────


def test_decode_damm_position():
    result = decode_damm_position("pos", _b64(_build_position_data(123_456)))
    assert result is not None
    assert result.pool == str(POOL)
    assert result.nft_mint == str(NFT_MINT)
    assert result.unlocked_liquidity == 123_456
    assert result.vested_liquidity == 7
    assert result.permanent_locked_liquidity == 9


def test_decode_damm_position_rejects_pool_data():
    assert decode_damm_position("pos", _b64(_build_damm_pool_data())) is None
