"""Tests for DAMM v2 instruction builders and TransactionSender.

RPC calls are mocked; asyncio.sleep is patched so confirmation polling is instant.
"""

from __future__ import annotations

import base64
import struct
from unittest.mock import AsyncMock, patch

import pytest
from solders.hash import Hash  # type: ignore[import-untyped]
from solders.keypair import Keypair  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]
from solders.transaction import VersionedTransaction  # type: ignore[import-untyped]

from src.core.exceptions import RpcError, TransactionError
from src.parsers.meteora.constants import (
    REMOVE_LIQUIDITY_IX_DISCRIMINATOR,
    SWAP_IX_DISCRIMINATOR,
    TOKEN_PROGRAM_ID,
    WSOL_MINT,
)
from src.parsers.meteora.models import DammPool, DammPosition
from src.parsers.meteora.pda import (
    ATA_PROGRAM,
    DAMM_V2_PROGRAM,
    derive_associated_token_address,
    derive_pool_authority,
    derive_position_nft_account,
)
from src.trading.damm_v2_tx import (
    TransactionSender,
    build_create_ata_idempotent_ix,
    build_remove_liquidity_ix,
    build_swap_ix,
)
from src.trading.solana_rpc import SolanaRpcClient
from src.trading.wallet import SettlementWallet


# ── Fixtures ───────────────────────────────────────────────────────────


def _pool() -> DammPool:
    return DammPool(
        pool_address=str(Pubkey.new_unique()),
        token_a_mint=str(Pubkey.new_unique()),
        token_b_mint=WSOL_MINT,
        token_a_vault=str(Pubkey.new_unique()),
        token_b_vault=str(Pubkey.new_unique()),
        liquidity=10**20,
        sqrt_min_price=1,
        sqrt_max_price=1 << 80,
        sqrt_price=1 << 64,
    )


def _position(pool: DammPool) -> DammPosition:
    return DammPosition(
        position_address=str(Pubkey.new_unique()),
        pool=pool.pool_address,
        nft_mint=str(Pubkey.new_unique()),
        unlocked_liquidity=10**18,
        vested_liquidity=0,
        permanent_locked_liquidity=0,
    )


@pytest.fixture
def wallet() -> SettlementWallet:
    return SettlementWallet(Keypair())


@pytest.fixture
def rpc() -> AsyncMock:
    mock = AsyncMock(spec=SolanaRpcClient)
    mock.get_latest_blockhash.return_value = (str(Hash.new_unique()), 1_000)
    mock.send_transaction.return_value = "ignored"
    return mock


@pytest.fixture
def sender(rpc: AsyncMock, wallet: SettlementWallet) -> TransactionSender:
    return TransactionSender(rpc, wallet, confirm_timeout=10)


def _dummy_ix(wallet: SettlementWallet):
    return build_create_ata_idempotent_ix(wallet.pubkey, wallet.pubkey, WSOL_MINT, TOKEN_PROGRAM_ID)


# ── Instruction layout ─────────────────────────────────────────────────


class TestInstructions:
    """Account order and data encoding of each instruction."""

    def test_create_ata_idempotent(self, wallet: SettlementWallet):
        ix = _dummy_ix(wallet)
        assert ix.program_id == ATA_PROGRAM
        assert bytes(ix.data) == b"\x01"
        assert ix.accounts[0].is_signer is True
        assert ix.accounts[1].pubkey == derive_associated_token_address(wallet.pubkey, WSOL_MINT)

    def test_remove_liquidity(self, wallet: SettlementWallet):
        pool = _pool()
        position = _position(pool)
        ix = build_remove_liquidity_ix(
            owner=wallet.pubkey,
            pool=pool,
            position=position,
            token_a_account=Pubkey.new_unique(),
            token_b_account=Pubkey.new_unique(),
            token_a_program=TOKEN_PROGRAM_ID,
            token_b_program=TOKEN_PROGRAM_ID,
            liquidity_delta=12345,
        )

        data = bytes(ix.data)
        assert ix.program_id == DAMM_V2_PROGRAM
        assert data[:8] == REMOVE_LIQUIDITY_IX_DISCRIMINATOR
        assert int.from_bytes(data[8:24], "little") == 12345
        assert struct.unpack("<QQ", data[24:40]) == (0, 0)
        assert len(ix.accounts) == 15
        assert ix.accounts[0].pubkey == derive_pool_authority()
        assert str(ix.accounts[1].pubkey) == pool.pool_address
        assert ix.accounts[1].is_writable is True
        assert str(ix.accounts[2].pubkey) == position.position_address
        assert ix.accounts[9].pubkey == derive_position_nft_account(position.nft_mint)
        assert ix.accounts[10].pubkey == wallet.pubkey
        assert ix.accounts[10].is_signer is True
        assert ix.accounts[-1].pubkey == DAMM_V2_PROGRAM

    def test_swap(self, wallet: SettlementWallet):
        pool = _pool()
        ix = build_swap_ix(
            payer=wallet.pubkey,
            pool=pool,
            input_token_account=Pubkey.new_unique(),
            output_token_account=Pubkey.new_unique(),
            token_a_program=TOKEN_PROGRAM_ID,
            token_b_program=TOKEN_PROGRAM_ID,
            amount_in=1_000_000,
            minimum_amount_out=400_000,
        )

        data = bytes(ix.data)
        assert data[:8] == SWAP_IX_DISCRIMINATOR
        assert struct.unpack("<QQ", data[8:24]) == (1_000_000, 400_000)
        assert len(ix.accounts) == 14
        assert ix.accounts[8].pubkey == wallet.pubkey
        assert ix.accounts[8].is_signer is True
        assert ix.accounts[11].pubkey == DAMM_V2_PROGRAM


# ── Signing ────────────────────────────────────────────────────────────


class TestBuildAndSign:
    async def test_signed_with_compute_budget(
        self, sender: TransactionSender, wallet: SettlementWallet
    ):
        tx_b64, signature = await sender.build_and_sign([_dummy_ix(wallet)])

        tx = VersionedTransaction.from_bytes(base64.b64decode(tx_b64))
        assert str(tx.signatures[0]) == signature
        assert tx.message.account_keys[0] == wallet.pubkey
        # limit + price + the instruction itself
        assert len(tx.message.instructions) == 3


# ── Send / confirm ─────────────────────────────────────────────────────


class TestSend:
    async def test_confirmed(self, sender: TransactionSender, rpc: AsyncMock, wallet):
        rpc.get_signature_statuses.return_value = [{"confirmationStatus": "confirmed", "err": None}]

        with patch("src.trading.damm_v2_tx.asyncio.sleep", new_callable=AsyncMock):
            signature = await sender.send([_dummy_ix(wallet)], label="test")

        assert len(signature) > 60
        rpc.send_transaction.assert_awaited_once()
        assert rpc.send_transaction.call_args.kwargs["skip_preflight"] is False

    async def test_preflight_rejection_carries_logs(
        self, sender: TransactionSender, rpc: AsyncMock, wallet
    ):
        rpc.send_transaction.side_effect = RpcError(
            "simulation failed", code=-32002, data={"logs": ["Program log: ExceededSlippage"]}
        )

        with pytest.raises(TransactionError) as exc_info:
            await sender.send([_dummy_ix(wallet)], label="swap")

        assert exc_info.value.logs == ["Program log: ExceededSlippage"]
        assert exc_info.value.signature is not None
        assert "ExceededSlippage" in exc_info.value.describe()
        rpc.get_signature_statuses.assert_not_awaited()

    async def test_onchain_error_fetches_logs(
        self, sender: TransactionSender, rpc: AsyncMock, wallet
    ):
        rpc.get_signature_statuses.return_value = [
            {"confirmationStatus": "confirmed", "err": {"InstructionError": [2, {"Custom": 6004}]}}
        ]
        rpc.get_transaction.return_value = {"meta": {"logMessages": ["Program failed: 6004"]}}

        with patch("src.trading.damm_v2_tx.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(TransactionError, match="failed on-chain") as exc_info:
                await sender.send([_dummy_ix(wallet)], label="withdraw")

        assert exc_info.value.logs == ["Program failed: 6004"]

    async def test_timeout_resends(self, sender: TransactionSender, rpc: AsyncMock, wallet):
        rpc.get_signature_statuses.return_value = [None]

        with patch("src.trading.damm_v2_tx.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(TransactionError, match="confirmation timeout"):
                await sender.send([_dummy_ix(wallet)], label="withdraw")

        resends = [
            c for c in rpc.send_transaction.call_args_list if c.kwargs.get("max_retries") == 0
        ]
        assert resends
        assert all(c.kwargs["skip_preflight"] is True for c in resends)

    async def test_status_errors_are_retried(self, sender: TransactionSender, rpc: AsyncMock, wallet):
        rpc.get_signature_statuses.side_effect = [
            RpcError("flaky"),
            [{"confirmationStatus": "finalized", "err": None}],
        ]

        with patch("src.trading.damm_v2_tx.asyncio.sleep", new_callable=AsyncMock):
            await sender.send([_dummy_ix(wallet)], label="swap")

        assert rpc.get_signature_statuses.await_count == 2

    async def test_blockhash_failure(self, sender: TransactionSender, rpc: AsyncMock, wallet):
        rpc.get_latest_blockhash.side_effect = RpcError("down")
        with pytest.raises(TransactionError, match="blockhash"):
            await sender.send([_dummy_ix(wallet)], label="swap")
