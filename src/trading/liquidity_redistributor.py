"""Withdraw the loser's backend liquidity and redistribute the quote side.

    removed quote value V
      10%  → buy the platform token on its pool
      20%  → stays in the settlement wallet (as WSOL)
      70%  → buy the winning token on its pool

Withdrawals run first, sequentially; the first failed withdrawal stops the
rest. The two buy legs are independent of each other. Once anything was
withdrawn the result reports ``liquidity_removed`` so the caller marks the
battle settled regardless of how the buys went.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from loguru import logger

from src.core.exceptions import RpcError, SettlementError, TransactionError
from src.parsers.meteora.client import MeteoraClient
from src.parsers.meteora.constants import QUOTE_MINTS
from src.parsers.meteora.math import (
    estimate_swap_out,
    get_withdraw_quote,
    minimum_amount_out,
)
from src.parsers.meteora.models import DammPool, DammPosition, MintInfo
from src.trading.damm_v2_tx import (
    TransactionSender,
    build_create_ata_idempotent_ix,
    build_remove_liquidity_ix,
    build_swap_ix,
)
from src.trading.wallet import SettlementWallet

PLATFORM_SHARE_PCT = 10
WINNER_SHARE_PCT = 70

SettlementStatus = Literal["settled", "no_positions", "nothing_removed", "failed"]


@dataclass(frozen=True)
class Distribution:
    total: int
    platform: int
    retained: int
    winner: int

    def to_dict(self) -> dict[str, str]:
        # raw u64 amounts as strings
        return {
            "total_removed": str(self.total),
            "platform_buy": str(self.platform),
            "retained": str(self.retained),
            "winner_buy": str(self.winner),
        }


def split_value(total: int) -> Distribution:
    """10 / 20 / 70 split in raw units; rounding dust goes to the retained share."""
    platform = total * PLATFORM_SHARE_PCT // 100
    winner = total * WINNER_SHARE_PCT // 100
    return Distribution(
        total=total,
        platform=platform,
        retained=total - platform - winner,
        winner=winner,
    )


@dataclass
class LegResult:
    name: str
    pool_address: str
    amount_in: int
    signature: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.signature is not None


@dataclass
class SettlementResult:
    status: SettlementStatus
    liquidity_removed: bool = False
    removed_value: int = 0
    distribution: Distribution | None = None
    withdrawal_ids: list[str] = field(default_factory=list)
    legs: list[LegResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def transaction_ids(self) -> list[str]:
        return self.withdrawal_ids + [leg.signature for leg in self.legs if leg.signature]

    @property
    def partial(self) -> bool:
        return bool(self.errors) or any(not leg.success for leg in self.legs)

    def distribution_record(self) -> dict[str, Any]:
        record: dict[str, Any] = dict(self.distribution.to_dict()) if self.distribution else {}
        record["legs"] = [
            {
                "name": leg.name,
                "pool": leg.pool_address,
                "amount_in": str(leg.amount_in),
                "signature": leg.signature,
                "error": leg.error,
            }
            for leg in self.legs
        ]
        if self.errors:
            record["errors"] = list(self.errors)
        return record


@dataclass
class SettlementPlan:
    """Loser-pool state gathered before anything is withdrawn."""

    loser_pool: str
    pool: DammPool | None = None
    positions: list[DammPosition] = field(default_factory=list)
    mints: dict[str, MintInfo] = field(default_factory=dict)
    quote_is_b: bool = True


class LiquidityRedistributor:
    def __init__(
        self,
        client: MeteoraClient,
        wallet: SettlementWallet,
        sender: TransactionSender,
        *,
        slippage_bps: int = 5000,
    ) -> None:
        self._client = client
        self._wallet = wallet
        self._sender = sender
        self._slippage_bps = slippage_bps

    async def settle(
        self, loser_pool: str, winner_pool: str, platform_pool: str
    ) -> SettlementResult:
        """Withdraw, split and buy. Raises SettlementError only before any withdrawal."""
        plan = await self.prepare(loser_pool)
        return await self.execute(plan, winner_pool, platform_pool)

    async def prepare(self, loser_pool: str) -> SettlementPlan:
        """Read-only: load the loser pool and the positions this wallet owns.

        RPC failures raise a retryable SettlementError; a pool that can never
        be settled raises a non-retryable one.
        """
        try:
            pool = await self._client.get_damm_pool(loser_pool)
            if pool is None:
                raise SettlementError(f"Loser pool {loser_pool} is not a DAMM v2 pool")
            owned = await self._owned_positions(loser_pool)
            if not owned:
                return SettlementPlan(loser_pool=loser_pool, pool=pool)
            mints = await self._mint_infos(pool)
        except RpcError as e:
            raise SettlementError(
                f"Settlement preparation failed for {loser_pool[:12]}: {e}", retryable=True
            ) from e

        if pool.token_b_mint in QUOTE_MINTS:
            quote_is_b = True
        elif pool.token_a_mint in QUOTE_MINTS:
            quote_is_b = False
        else:
            raise SettlementError(f"Loser pool {loser_pool[:12]} has no quote-asset side")

        return SettlementPlan(
            loser_pool=loser_pool,
            pool=pool,
            positions=owned,
            mints=mints,
            quote_is_b=quote_is_b,
        )

    async def execute(
        self, plan: SettlementPlan, winner_pool: str, platform_pool: str
    ) -> SettlementResult:
        """Withdraw the planned positions, split and buy. Never raises."""
        loser_pool = plan.loser_pool
        if plan.pool is None or not plan.positions:
            logger.info(f"[SETTLE] No backend positions in {loser_pool[:12]}, nothing to redistribute")
            return SettlementResult(status="no_positions")

        result = SettlementResult(status="failed")
        removed = await self._withdraw_all(
            plan.pool, plan.positions, plan.mints, plan.quote_is_b, result
        )
        result.removed_value = removed
        result.liquidity_removed = bool(result.withdrawal_ids)

        if not result.liquidity_removed:
            result.status = "failed" if result.errors else "nothing_removed"
            logger.warning(
                f"[SETTLE] Nothing withdrawn from {loser_pool[:12]} "
                f"({len(plan.positions)} owned position(s), errors={len(result.errors)})"
            )
            return result

        distribution = split_value(removed)
        result.distribution = distribution
        result.status = "settled"
        logger.info(
            f"[SETTLE] Removed {removed} quote units from {loser_pool[:12]}: "
            f"platform={distribution.platform} retained={distribution.retained} "
            f"winner={distribution.winner}"
        )

        result.legs.append(await self._buy("platform", platform_pool, distribution.platform))
        result.legs.append(await self._buy("winner", winner_pool, distribution.winner))
        return result

    async def _owned_positions(self, pool_address: str) -> list[DammPosition]:
        positions = await self._client.get_positions_by_pool(pool_address)
        if not positions:
            return []
        held = await self._wallet.get_position_nft_mints(self._client.rpc)
        owned = [p for p in positions if p.nft_mint in held]
        logger.debug(
            f"[SETTLE] {len(positions)} position(s) in {pool_address[:12]}, "
            f"{len(owned)} owned by {self._wallet.pubkey_str[:12]}"
        )
        return owned

    async def _mint_infos(self, pool: DammPool) -> dict[str, MintInfo]:
        mints = await self._client.get_mint_infos([pool.token_a_mint, pool.token_b_mint])
        missing = {pool.token_a_mint, pool.token_b_mint} - set(mints)
        if missing:
            raise SettlementError(f"Mint accounts missing: {sorted(missing)}")
        return mints

    async def _withdraw_all(
        self,
        pool: DammPool,
        positions: list[DammPosition],
        mints: dict[str, MintInfo],
        quote_is_b: bool,
        result: SettlementResult,
    ) -> int:
        owner = self._wallet.pubkey
        program_a = mints[pool.token_a_mint].program_id
        program_b = mints[pool.token_b_mint].program_id
        removed = 0

        for position in positions:
            liquidity = position.unlocked_liquidity
            if liquidity <= 0:
                logger.debug(f"[SETTLE] Position {position.position_address[:12]} has no unlocked liquidity")
                continue

            label = f"withdraw {position.position_address[:8]}"
            try:
                state = await self._client.get_damm_pool(pool.pool_address) or pool
                quote = get_withdraw_quote(
                    liquidity, state.sqrt_price, state.sqrt_min_price, state.sqrt_max_price
                )
                ixs = [
                    build_create_ata_idempotent_ix(owner, owner, pool.token_a_mint, program_a),
                    build_create_ata_idempotent_ix(owner, owner, pool.token_b_mint, program_b),
                    build_remove_liquidity_ix(
                        owner=owner,
                        pool=state,
                        position=position,
                        token_a_account=self._wallet.get_ata_address(pool.token_a_mint, program_a),
                        token_b_account=self._wallet.get_ata_address(pool.token_b_mint, program_b),
                        token_a_program=program_a,
                        token_b_program=program_b,
                        liquidity_delta=liquidity,
                    ),
                ]
                signature = await self._sender.send(ixs, label=label)
            except TransactionError as e:
                logger.error(f"[SETTLE] {label} failed, stopping withdrawals: {e.describe()}")
                result.errors.append(e.describe())
                break
            except RpcError as e:
                logger.error(f"[SETTLE] {label} failed, stopping withdrawals: {e}")
                result.errors.append(f"{label}: {e}")
                break
            except Exception as e:
                logger.opt(exception=e).error(f"[SETTLE] {label} crashed, stopping withdrawals: {e}")
                result.errors.append(f"{label}: {type(e).__name__}: {e}")
                break

            result.withdrawal_ids.append(signature)
            removed += quote.out_amount_b if quote_is_b else quote.out_amount_a
            logger.info(
                f"[SETTLE] Withdrew position {position.position_address[:12]}: "
                f"a={quote.out_amount_a} b={quote.out_amount_b} tx={signature}"
            )

        return removed

    async def _buy(self, name: str, pool_address: str, amount_in: int) -> LegResult:
        """Swap ``amount_in`` of the quote asset for the pool's project token."""
        leg = LegResult(name=name, pool_address=pool_address, amount_in=amount_in)
        if amount_in <= 0:
            leg.error = "zero amount"
            logger.warning(f"[SETTLE] Skipping {name} buy: zero amount")
            return leg

        try:
            pool = await self._client.get_damm_pool(pool_address)
            if pool is None:
                raise SettlementError(f"{pool_address} is not a DAMM v2 pool")
            if pool.token_b_mint in QUOTE_MINTS:
                quote_mint, token_mint, a_to_b = pool.token_b_mint, pool.token_a_mint, False
            elif pool.token_a_mint in QUOTE_MINTS:
                quote_mint, token_mint, a_to_b = pool.token_a_mint, pool.token_b_mint, True
            else:
                raise SettlementError(f"Pool {pool_address[:12]} has no quote-asset side")

            mints = await self._mint_infos(pool)
            program_a = mints[pool.token_a_mint].program_id
            program_b = mints[pool.token_b_mint].program_id
            quote_program = mints[quote_mint].program_id
            token_program = mints[token_mint].program_id

            expected = estimate_swap_out(amount_in, pool.sqrt_price, a_to_b=a_to_b)
            min_out = minimum_amount_out(expected, self._slippage_bps)
            owner = self._wallet.pubkey
            ixs = [
                build_create_ata_idempotent_ix(owner, owner, token_mint, token_program),
                build_swap_ix(
                    payer=owner,
                    pool=pool,
                    input_token_account=self._wallet.get_ata_address(quote_mint, quote_program),
                    output_token_account=self._wallet.get_ata_address(token_mint, token_program),
                    token_a_program=program_a,
                    token_b_program=program_b,
                    amount_in=amount_in,
                    minimum_amount_out=min_out,
                ),
            ]
            leg.signature = await self._sender.send(ixs, label=f"{name} buy")
        except TransactionError as e:
            leg.error = e.describe()
            logger.error(f"[SETTLE] {name} buy on {pool_address[:12]} failed: {leg.error}")
            return leg
        except (SettlementError, RpcError) as e:
            leg.error = str(e)
            logger.error(f"[SETTLE] {name} buy on {pool_address[:12]} failed: {e}")
            return leg
        except Exception as e:
            leg.error = f"{type(e).__name__}: {e}"
            logger.opt(exception=e).error(f"[SETTLE] {name} buy on {pool_address[:12]} crashed: {e}")
            return leg

        logger.info(
            f"[SETTLE] {name} buy: {amount_in} in, min_out={min_out} on {pool_address[:12]} "
            f"tx={leg.signature}"
        )
        return leg
