"""Meteora program constants: Dynamic Bonding Curve (DBC) and DAMM v2 (cp-amm)."""

import hashlib


def anchor_discriminator(namespace: str, name: str) -> bytes:
    """First 8 bytes of sha256("<namespace>:<name>"), the Anchor account/ix tag."""
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


# ── Dynamic Bonding Curve ────────────────────────────────────────────

# First 8 bytes of VirtualPool account data (Anchor discriminator)
VIRTUAL_POOL_DISCRIMINATOR = bytes([213, 224, 5, 209, 98, 69, 119, 92])
POOL_CONFIG_DISCRIMINATOR = anchor_discriminator("account", "PoolConfig")

# Typical graduation threshold for DBC pools (in lamports, ~85 SOL).
DBC_GRADUATION_THRESHOLD_LAMPORTS = 85_000_000_000

# ── DAMM v2 (cp-amm) ─────────────────────────────────────────────────

DAMM_V2_PROGRAM_ID = "cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG"

DAMM_POOL_DISCRIMINATOR = anchor_discriminator("account", "Pool")
DAMM_POSITION_DISCRIMINATOR = anchor_discriminator("account", "Position")

SWAP_IX_DISCRIMINATOR = anchor_discriminator("global", "swap")
REMOVE_LIQUIDITY_IX_DISCRIMINATOR = anchor_discriminator("global", "remove_liquidity")

SEED_POOL = b"pool"
SEED_POOL_AUTHORITY = b"pool_authority"
SEED_EVENT_AUTHORITY = b"__event_authority"
SEED_POSITION_NFT_ACCOUNT = b"position_nft_account"

# Pool config accounts DBC migrates into, one per DAMM v2 fee tier.
# Order matches the DBC migration fee options: 0.25%, 0.3%, 1%, 2%, 4%, 6%.
DAMM_V2_MIGRATION_FEE_CONFIGS: tuple[str, ...] = (
    "7F6dnUcRuyM2TwR8myT1dYypFXpPSxqwKNSFNkxyNESd",
    "2nHK1kju6XjphBLbNxpM5XRGFj7p9U8vvNzyZiha1z6k",
    "Hv8Lmzmnju6m7kcokVKvwqz7QPmdX9XfKjJsXz8RXcjp",
    "2c4cYd4reUYVRAB9kUUkrq55VPyy2FNQ3FDL4o12JXmq",
    "AkmQWebAwFvWk55wBoCr5D62C6VVDTzi84NJuD9H7cFD",
    "DbCRBj8McvPYHJG1ukj8RE15h2dCNUdTAESG49XpQ44u",
)

# Byte offsets inside the DAMM v2 Pool account (after the 160-byte fee struct)
DAMM_POOL_TOKEN_A_MINT_OFFSET = 168
DAMM_POOL_TOKEN_B_MINT_OFFSET = 200

# ── SPL ──────────────────────────────────────────────────────────────

WSOL_MINT = "So11111111111111111111111111111111111111112"
NATIVE_MINT_2022 = "9pan9bMn5HatX4EJdBwg9VgCa7Uz5HL8N1m5D3NdXejP"
QUOTE_MINTS: frozenset[str] = frozenset({WSOL_MINT, NATIVE_MINT_2022})

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
