"""Program-derived addresses for DAMM v2 and the associated token program."""

from __future__ import annotations

from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from src.parsers.meteora.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    DAMM_V2_PROGRAM_ID,
    SEED_EVENT_AUTHORITY,
    SEED_POOL,
    SEED_POOL_AUTHORITY,
    SEED_POSITION_NFT_ACCOUNT,
    TOKEN_PROGRAM_ID,
)

DAMM_V2_PROGRAM = Pubkey.from_string(DAMM_V2_PROGRAM_ID)
ATA_PROGRAM = Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID)


def _key(value: str | Pubkey) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(value)


def derive_damm_pool_address(config: str | Pubkey, mint_a: str | Pubkey, mint_b: str | Pubkey) -> Pubkey:
    """Pool PDA: ["pool", config, max(mint_a, mint_b), min(mint_a, mint_b)].

    Mints are ordered by raw key bytes, so argument order does not matter.
    """
    a, b = bytes(_key(mint_a)), bytes(_key(mint_b))
    first, second = (a, b) if a > b else (b, a)
    pda, _bump = Pubkey.find_program_address(
        [SEED_POOL, bytes(_key(config)), first, second], DAMM_V2_PROGRAM
    )
    return pda


def derive_pool_authority() -> Pubkey:
    pda, _bump = Pubkey.find_program_address([SEED_POOL_AUTHORITY], DAMM_V2_PROGRAM)
    return pda


def derive_event_authority() -> Pubkey:
    pda, _bump = Pubkey.find_program_address([SEED_EVENT_AUTHORITY], DAMM_V2_PROGRAM)
    return pda


def derive_position_nft_account(nft_mint: str | Pubkey) -> Pubkey:
    pda, _bump = Pubkey.find_program_address(
        [SEED_POSITION_NFT_ACCOUNT, bytes(_key(nft_mint))], DAMM_V2_PROGRAM
    )
    return pda


def derive_associated_token_address(
    owner: str | Pubkey,
    mint: str | Pubkey,
    token_program: str | Pubkey = TOKEN_PROGRAM_ID,
) -> Pubkey:
    ata, _bump = Pubkey.find_program_address(
        [bytes(_key(owner)), bytes(_key(token_program)), bytes(_key(mint))],
        ATA_PROGRAM,
    )
    return ata
