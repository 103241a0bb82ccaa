"""Account fetcher for Meteora DBC and DAMM v2 on top of Solana JSON-RPC."""

from __future__ import annotations

import base64

from loguru import logger

from src.parsers.meteora.constants import (
    DAMM_POOL_DISCRIMINATOR,
    DAMM_POOL_TOKEN_A_MINT_OFFSET,
    DAMM_POOL_TOKEN_B_MINT_OFFSET,
    DAMM_POSITION_DISCRIMINATOR,
    DAMM_V2_PROGRAM_ID,
)
from src.parsers.meteora.decoder import (
    decode_damm_pool,
    decode_damm_position,
    decode_pool_config,
    decode_virtual_pool,
)
from src.parsers.meteora.models import (
    DammPool,
    DammPosition,
    MeteoraPoolConfig,
    MeteoraVirtualPool,
    MintInfo,
)
from src.trading.solana_rpc import SolanaRpcClient

POSITION_POOL_OFFSET = 8


def _account_b64(account: dict | None) -> str | None:
    """Pull the base64 payload out of an RPC account ``value``."""
    if not account:
        return None
    data = account.get("data")
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, str):
        return data
    return None


def _memcmp(offset: int, raw: bytes | str) -> dict:
    if isinstance(raw, bytes):
        return {
            "memcmp": {
                "offset": offset,
                "bytes": base64.b64encode(raw).decode("ascii"),
                "encoding": "base64",
            }
        }
    # base58 pubkey strings are what the RPC expects by default
    return {"memcmp": {"offset": offset, "bytes": raw}}


class MeteoraClient:
    """Reads and decodes DBC / DAMM v2 accounts.

    RPC failures propagate as ``RpcError``; a missing or undecodable
    account is reported as None so callers can fall through to the
    next protocol.
    """

    def __init__(self, rpc: SolanaRpcClient) -> None:
        self._rpc = rpc

    @property
    def rpc(self) -> SolanaRpcClient:
        return self._rpc

    # ─── DBC ─────────────────────────────────────────────────────────

    async def get_virtual_pool(self, pool_address: str) -> MeteoraVirtualPool | None:
        data = _account_b64(await self._rpc.get_account_info(pool_address))
        if data is None:
            return None
        return decode_virtual_pool(pool_address, data)

    async def get_pool_config(self, config_address: str) -> MeteoraPoolConfig | None:
        data = _account_b64(await self._rpc.get_account_info(config_address))
        if data is None:
            return None
        return decode_pool_config(config_address, data)

    # ─── DAMM v2 ─────────────────────────────────────────────────────

    async def get_damm_pool(self, pool_address: str) -> DammPool | None:
        data = _account_b64(await self._rpc.get_account_info(pool_address))
        if data is None:
            return None
        return decode_damm_pool(pool_address, data)

    async def get_damm_pools(self, pool_addresses: list[str]) -> dict[str, DammPool]:
        """Batch-fetch candidate pool addresses; only existing pools are returned."""
        accounts = await self._rpc.get_multiple_accounts(pool_addresses)
        pools: dict[str, DammPool] = {}
        for address, account in zip(pool_addresses, accounts):
            data = _account_b64(account)
            if data is None:
                continue
            pool = decode_damm_pool(address, data)
            if pool is not None:
                pools[address] = pool
        return pools

    async def find_damm_pools_by_mint(self, mint: str) -> list[DammPool]:
        """Scan the DAMM v2 program for pools holding ``mint`` on either side."""
        pools: dict[str, DammPool] = {}
        for offset in (DAMM_POOL_TOKEN_A_MINT_OFFSET, DAMM_POOL_TOKEN_B_MINT_OFFSET):
            accounts = await self._rpc.get_program_accounts(
                DAMM_V2_PROGRAM_ID,
                [_memcmp(0, DAMM_POOL_DISCRIMINATOR), _memcmp(offset, mint)],
            )
            for item in accounts:
                address = item.get("pubkey", "")
                data = _account_b64(item.get("account"))
                if not address or data is None:
                    continue
                pool = decode_damm_pool(address, data)
                if pool is not None:
                    pools[address] = pool
        logger.debug(f"[METEORA] Program scan for {mint[:12]}: {len(pools)} DAMM v2 pool(s)")
        return list(pools.values())

    async def get_positions_by_pool(self, pool_address: str) -> list[DammPosition]:
        accounts = await self._rpc.get_program_accounts(
            DAMM_V2_PROGRAM_ID,
            [
                _memcmp(0, DAMM_POSITION_DISCRIMINATOR),
                _memcmp(POSITION_POOL_OFFSET, pool_address),
            ],
        )
        positions: list[DammPosition] = []
        for item in accounts:
            data = _account_b64(item.get("account"))
            if data is None:
                continue
            position = decode_damm_position(item.get("pubkey", ""), data)
            if position is not None and position.pool == pool_address:
                positions.append(position)
        return positions

    # ─── SPL ─────────────────────────────────────────────────────────

    async def get_mint_infos(self, mints: list[str]) -> dict[str, MintInfo]:
        """Decimals, supply and owning token program for each mint."""
        accounts = await self._rpc.get_multiple_accounts(mints, encoding="jsonParsed")
        infos: dict[str, MintInfo] = {}
        for mint, account in zip(mints, accounts):
            if not account:
                continue
            try:
                info = account["data"]["parsed"]["info"]
                infos[mint] = MintInfo(
                    mint=mint,
                    decimals=int(info["decimals"]),
                    supply=int(info["supply"]),
                    program_id=account["owner"],
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"[METEORA] Unparseable mint account {mint[:12]}: {e}")
        return infos

    async def get_token_balances(self, accounts: list[str]) -> list[int | None]:
        """Raw token amounts for token accounts; None where the account is missing."""
        values = await self._rpc.get_multiple_accounts(accounts, encoding="jsonParsed")
        balances: list[int | None] = []
        for value in values:
            try:
                balances.append(int(value["data"]["parsed"]["info"]["tokenAmount"]["amount"]))
            except (KeyError, TypeError, ValueError):
                balances.append(None)
        return balances
