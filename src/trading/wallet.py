"""Settlement wallet: keypair loading, ATA derivation, position NFT lookup.

Private key is loaded ONCE at startup and never logged or exposed.
Only the public key is shown in logs and __repr__.
"""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger
from solders.keypair import Keypair  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from src.core.exceptions import ConfigurationError
from src.parsers.meteora.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from src.parsers.meteora.pda import derive_associated_token_address
from src.trading.solana_rpc import SolanaRpcClient


def _keypair_from_json(raw: str) -> Keypair:
    values = json.loads(raw)
    if not isinstance(values, list) or len(values) != 64:
        raise ValueError("keypair JSON must be an array of 64 integers")
    return Keypair.from_bytes(bytes(values))


class SettlementWallet:
    """The single identity that owns backend positions and pays for swaps.

    Security: private key is only accessible via .keypair property.
    """

    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair
        logger.info(f"[WALLET] Loaded settlement wallet: {self.pubkey_str}")

    @classmethod
    def load(cls, private_key: str = "", keypair_path: str = "") -> SettlementWallet:
        """Build from a base58 secret / JSON array string, or a keypair file.

        Raises ConfigurationError when neither source yields a valid key.
        """
        try:
            if private_key.strip():
                secret = private_key.strip()
                if secret.startswith("["):
                    return cls(_keypair_from_json(secret))
                return cls(Keypair.from_base58_string(secret))
            if keypair_path:
                return cls(_keypair_from_json(Path(keypair_path).expanduser().read_text()))
        except (ValueError, OSError) as e:
            raise ConfigurationError(f"Settlement wallet key is invalid: {type(e).__name__}") from e
        raise ConfigurationError(
            "Settlement wallet key missing: set SETTLEMENT_WALLET_PRIVATE_KEY "
            "or SETTLEMENT_WALLET_KEYPAIR_PATH"
        )

    def __repr__(self) -> str:
        return f"SettlementWallet(pubkey={self.pubkey_str})"

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    @property
    def pubkey_str(self) -> str:
        return str(self._keypair.pubkey())

    @property
    def keypair(self) -> Keypair:
        return self._keypair

    def get_ata_address(self, mint: str, token_program: str = TOKEN_PROGRAM_ID) -> Pubkey:
        """Derive the Associated Token Account for a mint under its token program."""
        return derive_associated_token_address(self.pubkey, mint, token_program)

    async def get_position_nft_mints(self, rpc: SolanaRpcClient) -> set[str]:
        """Mints of DAMM v2 position NFTs (Token-2022, amount 1) held by this wallet."""
        accounts = await rpc.get_token_accounts_by_owner(self.pubkey_str, TOKEN_2022_PROGRAM_ID)
        mints: set[str] = set()
        for item in accounts:
            try:
                info = item["account"]["data"]["parsed"]["info"]
                if info["tokenAmount"]["amount"] == "1" and int(info["tokenAmount"]["decimals"]) == 0:
                    mints.add(info["mint"])
            except (KeyError, TypeError, ValueError):
                continue
        logger.debug(f"[WALLET] {len(mints)} position NFT(s) held by {self.pubkey_str[:12]}")
        return mints
