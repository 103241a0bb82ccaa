"""Tests for LiquidityRedistributor: withdraw, 10/20/70 split, buy legs.

MeteoraClient and TransactionSender are AsyncMocks; the wallet is real so
instruction building runs for real.
"""

from __future__ import annotations

import struct
from unittest.mock import AsyncMock

import pytest
from solders.keypair import Keypair  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from src.core.exceptions import RpcError, SettlementError, TransactionError
from src.parsers.meteora.client import MeteoraClient
from src.parsers.meteora.constants import TOKEN_PROGRAM_ID, WSOL_MINT
from src.parsers.meteora.math import Q64, U64_MAX
from src.parsers.meteora.models import DammPool, DammPosition, MintInfo
from src.trading.damm_v2_tx import TransactionSender
from src.trading.liquidity_redistributor import (
    LiquidityRedistributor,
    split_value,
)
from src.trading.solana_rpc import SolanaRpcClient
from src.trading.wallet import SettlementWallet

LOSER_POOL = str(Pubkey.new_unique())
WINNER_POOL = str(Pubkey.new_unique())
PLATFORM_POOL = str(Pubkey.new_unique())

# Liquidity at price 1 inside [1/4, 4] pays out L / 2^65 of each side
ONE_SOL_LIQUIDITY = 10**9 * (1 << 65)


# ── Fixtures ───────────────────────────────────────────────────────────


def _pool(address: str, mint: str, *, quote_on_a: bool = False) -> DammPool:
    token_a, token_b = (WSOL_MINT, mint) if quote_on_a else (mint, WSOL_MINT)
    return DammPool(
        pool_address=address,
        token_a_mint=token_a,
        token_b_mint=token_b,
        token_a_vault=str(Pubkey.new_unique()),
        token_b_vault=str(Pubkey.new_unique()),
        liquidity=10**30,
        sqrt_min_price=Q64 >> 1,
        sqrt_max_price=Q64 << 1,
        sqrt_price=Q64,
    )


def _position(nft: str, liquidity: int = ONE_SOL_LIQUIDITY) -> DammPosition:
    return DammPosition(
        position_address=str(Pubkey.new_unique()),
        pool=LOSER_POOL,
        nft_mint=nft,
        unlocked_liquidity=liquidity,
        vested_liquidity=0,
        permanent_locked_liquidity=0,
    )


class Env:
    """Pools for loser / winner / platform plus the mocks around them."""

    def __init__(self) -> None:
        self.loser_mint = str(Pubkey.new_unique())
        self.winner_mint = str(Pubkey.new_unique())
        self.platform_mint = str(Pubkey.new_unique())
        self.pools = {
            LOSER_POOL: _pool(LOSER_POOL, self.loser_mint),
            WINNER_POOL: _pool(WINNER_POOL, self.winner_mint),
            PLATFORM_POOL: _pool(PLATFORM_POOL, self.platform_mint, quote_on_a=True),
        }
        self.nfts = [str(Pubkey.new_unique()), str(Pubkey.new_unique())]

        self.client = AsyncMock(spec=MeteoraClient)
        self.client.rpc = AsyncMock(spec=SolanaRpcClient)
        self.client.get_damm_pool.side_effect = lambda address: self.pools.get(address)
        self.client.get_positions_by_pool.return_value = [_position(self.nfts[0])]
        self.client.get_mint_infos.side_effect = lambda mints: {
            m: MintInfo(mint=m, decimals=9 if m == WSOL_MINT else 6, supply=10**15,
                        program_id=TOKEN_PROGRAM_ID)
            for m in mints
        }

        self.wallet = SettlementWallet(Keypair())
        self.wallet.get_position_nft_mints = AsyncMock(return_value=set(self.nfts))

        self.sender = AsyncMock(spec=TransactionSender)
        self.sender.send.side_effect = self._next_signature
        self._counter = 0

        self.redistributor = LiquidityRedistributor(self.client, self.wallet, self.sender)

    async def _next_signature(self, ixs, *, label):
        self._counter += 1
        return f"sig{self._counter}"

    async def settle(self):
        return await self.redistributor.settle(LOSER_POOL, WINNER_POOL, PLATFORM_POOL)


@pytest.fixture
def env() -> Env:
    return Env()


# ── split_value ────────────────────────────────────────────────────────


class TestSplit:
    def test_exact_split(self):
        d = split_value(1_000_000_000)
        assert (d.platform, d.retained, d.winner) == (100_000_000, 200_000_000, 700_000_000)

    def test_dust_goes_to_retained(self):
        d = split_value(999)
        assert (d.platform, d.winner) == (99, 699)
        assert d.platform + d.retained + d.winner == 999

    def test_to_dict_uses_strings(self):
        assert split_value(10).to_dict() == {
            "total_removed": "10",
            "platform_buy": "1",
            "retained": "2",
            "winner_buy": "7",
        }


# ── No-op paths ────────────────────────────────────────────────────────


class TestNoPositions:
    async def test_no_positions_is_noop(self, env: Env):
        env.client.get_positions_by_pool.return_value = []

        result = await env.settle()

        assert result.status == "no_positions"
        assert result.liquidity_removed is False
        env.sender.send.assert_not_awaited()

    async def test_positions_not_owned_is_noop(self, env: Env):
        env.wallet.get_position_nft_mints.return_value = {str(Pubkey.new_unique())}

        result = await env.settle()

        assert result.status == "no_positions"
        env.sender.send.assert_not_awaited()

    async def test_zero_unlocked_liquidity(self, env: Env):
        env.client.get_positions_by_pool.return_value = [_position(env.nfts[0], liquidity=0)]

        result = await env.settle()

        assert result.status == "nothing_removed"
        assert result.liquidity_removed is False
        env.sender.send.assert_not_awaited()

    async def test_loser_pool_not_damm(self, env: Env):
        env.pools.pop(LOSER_POOL)
        with pytest.raises(SettlementError) as exc_info:
            await env.settle()
        assert exc_info.value.retryable is False

    async def test_rpc_failure_before_withdrawal(self, env: Env):
        env.client.get_positions_by_pool.side_effect = RpcError("scan failed", code=429)
        with pytest.raises(SettlementError) as exc_info:
            await env.settle()
        assert exc_info.value.retryable is True
        env.sender.send.assert_not_awaited()

    async def test_prepare_sends_nothing(self, env: Env):
        plan = await env.redistributor.prepare(LOSER_POOL)

        assert plan.loser_pool == LOSER_POOL
        assert [p.nft_mint for p in plan.positions] == [env.nfts[0]]
        assert plan.quote_is_b is True
        env.sender.send.assert_not_awaited()


# ── Full settlement ────────────────────────────────────────────────────


class TestSettle:
    async def test_withdraw_then_both_buys(self, env: Env):
        result = await env.settle()

        assert result.status == "settled"
        assert result.liquidity_removed is True
        assert result.removed_value == 10**9
        d = result.distribution
        assert (d.platform, d.retained, d.winner) == (10**8, 2 * 10**8, 7 * 10**8)
        assert d.platform + d.retained + d.winner == result.removed_value
        assert [leg.name for leg in result.legs] == ["platform", "winner"]
        assert all(leg.success for leg in result.legs)
        assert result.transaction_ids == ["sig1", "sig2", "sig3"]
        assert result.partial is False

        labels = [c.kwargs["label"] for c in env.sender.send.call_args_list]
        assert labels[0].startswith("withdraw")
        assert labels[1:] == ["platform buy", "winner buy"]

    async def test_buy_amounts_and_slippage(self, env: Env):
        await env.settle()

        swap_platform = env.sender.send.call_args_list[1].args[0][-1]
        swap_winner = env.sender.send.call_args_list[2].args[0][-1]
        # price 1 raw/raw, 50% slippage floor
        assert struct.unpack("<QQ", bytes(swap_platform.data)[8:24]) == (10**8, 5 * 10**7)
        assert struct.unpack("<QQ", bytes(swap_winner.data)[8:24]) == (7 * 10**8, 35 * 10**7)

    async def test_withdrawal_uses_full_unlocked_liquidity(self, env: Env):
        await env.settle()

        remove_ix = env.sender.send.call_args_list[0].args[0][-1]
        assert int.from_bytes(bytes(remove_ix.data)[8:24], "little") == ONE_SOL_LIQUIDITY

    async def test_distribution_record(self, env: Env):
        result = await env.settle()
        record = result.distribution_record()

        assert record["total_removed"] == str(10**9)
        assert record["winner_buy"] == str(7 * 10**8)
        assert [leg["signature"] for leg in record["legs"]] == ["sig2", "sig3"]
        assert "errors" not in record


# ── Failure isolation ──────────────────────────────────────────────────


class TestFailures:
    async def test_platform_leg_failure_does_not_block_winner(self, env: Env):
        env.sender.send.side_effect = [
            "w1",
            TransactionError("platform buy: failed on-chain", signature="bad"),
            "winner-sig",
        ]

        result = await env.settle()

        assert result.liquidity_removed is True
        assert result.legs[0].success is False
        assert "failed on-chain" in result.legs[0].error
        assert result.legs[1].signature == "winner-sig"
        assert result.partial is True
        assert result.transaction_ids == ["w1", "winner-sig"]

    async def test_missing_winner_pool_recorded_on_leg(self, env: Env):
        env.pools.pop(WINNER_POOL)

        result = await env.settle()

        assert result.legs[0].success is True
        assert result.legs[1].success is False
        assert "not a DAMM v2 pool" in result.legs[1].error

    async def test_failed_withdrawal_stops_remaining(self, env: Env):
        env.client.get_positions_by_pool.return_value = [
            _position(env.nfts[0]),
            _position(env.nfts[1]),
            _position(env.nfts[1]),
        ]
        env.sender.send.side_effect = [
            "w1",
            TransactionError("withdraw: confirmation timeout"),
            "p1",
            "x1",
        ]

        result = await env.settle()

        assert result.withdrawal_ids == ["w1"]
        assert result.removed_value == 10**9
        assert len(result.errors) == 1
        assert env.sender.send.await_count == 4  # 2 withdrawals + 2 buys
        assert result.partial is True
        assert result.distribution_record()["errors"] == result.errors

    async def test_first_withdrawal_failure_moves_nothing(self, env: Env):
        env.sender.send.side_effect = [TransactionError("withdraw: rejected")]

        result = await env.settle()

        assert result.status == "failed"
        assert result.liquidity_removed is False
        assert result.legs == []

    async def test_unexpected_leg_error_does_not_block_winner(self, env: Env):
        env.sender.send.side_effect = ["w1", RuntimeError("serializer exploded"), "winner-sig"]

        result = await env.settle()

        assert result.liquidity_removed is True
        assert "RuntimeError" in result.legs[0].error
        assert result.legs[1].signature == "winner-sig"
        assert result.transaction_ids == ["w1", "winner-sig"]

    async def test_unexpected_withdrawal_error_keeps_earlier_ids(self, env: Env):
        env.client.get_positions_by_pool.return_value = [
            _position(env.nfts[0]),
            _position(env.nfts[1]),
        ]
        env.sender.send.side_effect = ["w1", ValueError("bad account data"), "p1", "b1"]

        result = await env.settle()

        assert result.liquidity_removed is True
        assert result.withdrawal_ids == ["w1"]
        assert "ValueError" in result.errors[0]
        assert result.transaction_ids == ["w1", "p1", "b1"]

    async def test_extreme_pool_price_caps_min_out(self, env: Env):
        env.pools[PLATFORM_POOL] = _pool(PLATFORM_POOL, env.platform_mint).model_copy(
            update={"sqrt_price": 1 << 20}
        )

        result = await env.settle()

        assert all(leg.success for leg in result.legs)
        swap_platform = env.sender.send.call_args_list[1].args[0][-1]
        assert struct.unpack("<QQ", bytes(swap_platform.data)[8:24]) == (10**8, U64_MAX)
