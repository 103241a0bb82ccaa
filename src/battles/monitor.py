"""Battle monitor: the polling pass that drives every open battle forward.

One pass:
  1. Load open battles (status new / about_to_bond / bonded)
  2. Split into batches; battles inside a batch run concurrently,
     batches run one after another with a fixed delay in between
  3. Per battle: resolve token1, short delay, resolve token2
  4. Feed the state machine, persist the transition
  5. Bonded battles past end_time: pick the winner, read the loser pool,
     persist completion, then settle the loser's liquidity exactly once

A failure in one battle is logged and recorded as that battle's outcome;
it never stops the batch or the pass. The timer and ``force_check`` share
one guard, so two passes never run at the same time.

Run a single instance per settlement wallet: two monitors against the same
battles would race on withdrawals.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger

from src.battles.repository import BattleRepository
from src.battles.scheduler import PassScheduler
from src.battles.state_machine import (
    completion_transition,
    decide_transition,
    decide_winner,
    is_battle_due,
)
from src.battles.types import BattleRecord, BattleStatus, TokenRecord, WinnerDecision
from src.core.exceptions import ConfigurationError, ResolutionError, SettlementError
from src.parsers.meteora.models import PoolSnapshot
from src.parsers.pool_resolver import PoolInfoResolver
from src.trading.liquidity_redistributor import LiquidityRedistributor, SettlementPlan

DEFAULT_INTERVAL = 60.0
DEFAULT_BATCH_SIZE = 3
DEFAULT_BATCH_DELAY = 2.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BattleOutcome:
    battle_id: str
    action: str  # unchanged | about_to_bond | bonded | completed | settled | deferred | skipped | error
    error: str | None = None


@dataclass
class PassReport:
    started_at: datetime
    finished_at: datetime | None = None
    battles: int = 0
    outcomes: list[BattleOutcome] = field(default_factory=list)
    skipped: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return not self.skipped and self.error is None

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for outcome in self.outcomes:
            counts[outcome.action] = counts.get(outcome.action, 0) + 1
        return counts

    def summary(self) -> dict:
        """Aggregate metadata only, never per-battle errors."""
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "battles": self.battles,
            "actions": self.counts(),
            "success": self.success,
            "skipped": self.skipped,
        }


class BattleMonitor:
    def __init__(
        self,
        repository: BattleRepository,
        resolver: PoolInfoResolver,
        redistributor: LiquidityRedistributor,
        *,
        platform_pool: str,
        interval: float = DEFAULT_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        pre_resolve_delay: float = 0.5,
        token_delay: float = 0.3,
        about_to_bond_pct: float = 90.0,
        max_tie_deferrals: int = 3,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not platform_pool:
            raise ConfigurationError("Platform pool address is required for settlement")
        if batch_size < 1:
            raise ConfigurationError("Batch size must be at least 1")

        self._repo = repository
        self._resolver = resolver
        self._redistributor = redistributor
        self._platform_pool = platform_pool
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._pre_resolve_delay = pre_resolve_delay
        self._token_delay = token_delay
        self._about_to_bond_pct = about_to_bond_pct
        self._max_tie_deferrals = max_tie_deferrals
        self._clock = clock
        self._sleep = sleep

        self._scheduler = PassScheduler(self.run_pass, interval)
        self._pass_lock = asyncio.Lock()
        self._tie_deferrals: dict[str, int] = {}
        self._last_report: PassReport | None = None
        self._passes = 0

    # ─── Control ─────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def pass_in_progress(self) -> bool:
        return self._pass_lock.locked()

    def start(self) -> bool:
        """Start the timer; a second call is a logged no-op."""
        if not self._scheduler.start():
            logger.info("[MONITOR] Already running")
            return False
        logger.info(
            f"[MONITOR] Started: every {self._scheduler.interval:.0f}s, "
            f"batches of {self._batch_size}, {self._batch_delay}s between batches"
        )
        return True

    def stop(self) -> bool:
        """Cancel future passes; an in-flight pass finishes on its own."""
        if not self._scheduler.stop():
            logger.info("[MONITOR] Not running")
            return False
        logger.info("[MONITOR] Stopped")
        return True

    async def shutdown(self) -> None:
        self._scheduler.stop()
        await self._scheduler.wait_stopped()

    async def force_check(self) -> PassReport:
        logger.info("[MONITOR] Forced check requested")
        return await self.run_pass()

    def status(self) -> dict:
        next_run = self._scheduler.next_run_at
        return {
            "running": self.running,
            "pass_in_progress": self.pass_in_progress,
            "interval_sec": self._scheduler.interval,
            "batch_size": self._batch_size,
            "batch_delay_sec": self._batch_delay,
            "next_check": (
                datetime.fromtimestamp(next_run, timezone.utc).isoformat() if next_run else None
            ),
            "passes": self._passes,
            "last_pass": self._last_report.summary() if self._last_report else None,
        }

    # ─── Pass ────────────────────────────────────────────────────────

    async def run_pass(self) -> PassReport:
        if self._pass_lock.locked():
            logger.warning("[MONITOR] A pass is already running, skipping this trigger")
            return PassReport(started_at=self._clock(), finished_at=self._clock(), skipped=True)

        async with self._pass_lock:
            report = PassReport(started_at=self._clock())
            try:
                battles = await self._repo.list_open_battles()
            except Exception as e:
                logger.error(f"[MONITOR] Failed to load open battles: {e}")
                report.error = str(e)
            else:
                report.battles = len(battles)
                if battles:
                    logger.info(f"[MONITOR] Checking {len(battles)} open battle(s)")
                    report.outcomes = await self._process_in_batches(battles)
                else:
                    logger.debug("[MONITOR] No open battles")

            report.finished_at = self._clock()
            self._passes += 1
            self._last_report = report
            if report.outcomes:
                logger.info(f"[MONITOR] Pass done: {report.counts()}")
            return report

    async def _process_in_batches(self, battles: list[BattleRecord]) -> list[BattleOutcome]:
        outcomes: list[BattleOutcome] = []
        total_batches = (len(battles) + self._batch_size - 1) // self._batch_size

        for start in range(0, len(battles), self._batch_size):
            batch = battles[start : start + self._batch_size]
            number = start // self._batch_size + 1
            logger.debug(f"[MONITOR] Batch {number}/{total_batches} ({len(batch)} battles)")

            results = await asyncio.gather(
                *(self.process_battle(b) for b in batch), return_exceptions=True
            )
            for battle, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.opt(exception=result).error(
                        f"[MONITOR] Battle {battle.id} crashed: {result}"
                    )
                    outcomes.append(BattleOutcome(battle.id, "error", str(result)))
                else:
                    outcomes.append(result)

            if start + self._batch_size < len(battles):
                await self._sleep(self._batch_delay)

        return outcomes

    async def process_battle(self, battle: BattleRecord) -> BattleOutcome:
        if not battle.token1.pool_address or not battle.token2.pool_address:
            logger.debug(f"[MONITOR] Battle {battle.id} has a token without pool address, skipped")
            return BattleOutcome(battle.id, "skipped", "missing pool address")

        try:
            if battle.status in (BattleStatus.NEW, BattleStatus.ABOUT_TO_BOND):
                return await self._advance(battle)
            if is_battle_due(battle, self._clock()):
                return await self._complete(battle)
            if battle.status == BattleStatus.BONDED:
                # keeps graduation redirects current while the battle runs
                await self._resolve_pair(battle)
        except ResolutionError as e:
            logger.warning(f"[MONITOR] Battle {battle.id}: resolution failed, retry next pass: {e}")
            return BattleOutcome(battle.id, "error", str(e))
        return BattleOutcome(battle.id, "unchanged")

    # ─── Resolution ──────────────────────────────────────────────────

    async def _resolve_pair(self, battle: BattleRecord) -> tuple[PoolSnapshot, PoolSnapshot]:
        await self._sleep(self._pre_resolve_delay)
        first = await self._resolve_token(battle.token1)
        await self._sleep(self._token_delay)
        second = await self._resolve_token(battle.token2)
        return first, second

    async def _resolve_token(self, token: TokenRecord) -> PoolSnapshot:
        """Resolve one token, persisting a graduation redirect when one is seen."""
        snapshot = await self._resolver.resolve(token.mint, token.pool_address or "", token.migrated)

        if snapshot.is_migrated:
            if snapshot.pool_address != token.pool_address:
                logger.info(
                    f"[MONITOR] {token.label} graduated: pool {token.pool_address} "
                    f"-> {snapshot.pool_address}"
                )
                await self._repo.update_token(
                    token.id, pool_address=snapshot.pool_address, migrated=True
                )
            return snapshot

        if snapshot.progress >= 100 or snapshot.curve_completed:
            try:
                amm_pool = await self._resolver.find_amm_pool(token.mint)
            except ResolutionError as e:
                logger.warning(f"[MONITOR] {token.label}: AMM pool discovery failed: {e}")
                return snapshot
            if amm_pool is None:
                logger.info(f"[MONITOR] {token.label} curve complete, AMM pool not found yet")
                return snapshot
            await self._repo.update_token(token.id, pool_address=amm_pool, migrated=True)
            logger.info(f"[MONITOR] {token.label} redirected to discovered pool {amm_pool}")
            return await self._resolver.resolve_amm(amm_pool)

        return snapshot

    # ─── Transitions ─────────────────────────────────────────────────

    async def _advance(self, battle: BattleRecord) -> BattleOutcome:
        first, second = await self._resolve_pair(battle)
        transition = decide_transition(
            battle, first, second, self._clock(), about_to_bond_pct=self._about_to_bond_pct
        )
        if transition is None:
            logger.debug(
                f"[MONITOR] Battle {battle.id} stays {battle.status.value} "
                f"(progress {first.progress:.1f}% / {second.progress:.1f}%)"
            )
            return BattleOutcome(battle.id, "unchanged")

        if not await self._repo.update_battle(battle.id, **transition.battle_fields):
            return BattleOutcome(battle.id, "error", "status write refused")
        for update in transition.token_updates:
            await self._repo.update_token(
                update.token_id, pool_address=update.pool_address, migrated=update.migrated
            )

        logger.info(
            f"[MONITOR] Battle {battle.id}: {battle.status.value} -> {transition.next_status.value}"
        )
        return BattleOutcome(battle.id, transition.next_status.value)

    async def _complete(self, battle: BattleRecord) -> BattleOutcome:
        first, second = await self._resolve_pair(battle)
        deferrals = self._tie_deferrals.get(battle.id, 0)
        decision = decide_winner(
            battle,
            first.market_cap,
            second.market_cap,
            tie_deferrals=deferrals,
            max_tie_deferrals=self._max_tie_deferrals,
        )
        if decision.winner_id is None:
            self._tie_deferrals[battle.id] = deferrals + 1
            logger.warning(
                f"[MONITOR] Battle {battle.id}: market caps tied at ${first.market_cap:,.2f}, "
                f"deferring ({deferrals + 1}/{self._max_tie_deferrals})"
            )
            return BattleOutcome(battle.id, "deferred")

        transition = completion_transition(battle, decision)
        if transition is None:
            return BattleOutcome(battle.id, "unchanged")

        winner = battle.token1 if decision.winner_id == battle.token1.id else battle.token2
        winner_snap, loser_snap = (first, second) if winner is battle.token1 else (second, first)

        # Nothing is written until the loser pool has been read successfully
        plan: SettlementPlan | None = None
        unsettleable: str | None = None
        try:
            plan = await self._redistributor.prepare(loser_snap.pool_address)
        except SettlementError as e:
            if e.retryable:
                logger.warning(
                    f"[MONITOR] Battle {battle.id}: settlement preparation failed, "
                    f"completion retried next pass: {e}"
                )
                return BattleOutcome(battle.id, "error", str(e))
            logger.error(f"[MONITOR] Battle {battle.id}: loser pool cannot be settled: {e}")
            unsettleable = str(e)

        if not await self._repo.update_battle(battle.id, **transition.battle_fields):
            return BattleOutcome(battle.id, "error", "completion write refused")
        self._tie_deferrals.pop(battle.id, None)

        logger.info(
            f"[MONITOR] Battle {battle.id} completed: winner {winner.label} "
            f"(${decision.winner_market_cap:,.2f} vs ${decision.loser_market_cap:,.2f})"
        )
        if plan is None:
            return BattleOutcome(battle.id, "completed", unsettleable)
        return await self._settle(battle, decision, plan, winner_snap)

    async def _settle(
        self,
        battle: BattleRecord,
        decision: WinnerDecision,
        plan: SettlementPlan,
        winner_snap: PoolSnapshot,
    ) -> BattleOutcome:
        current = await self._repo.get_battle(battle.id)
        if current is not None and current.liquidity_pouring_completed:
            logger.warning(f"[MONITOR] Battle {battle.id} already settled elsewhere, skipping")
            return BattleOutcome(battle.id, "completed")

        result = await self._redistributor.execute(plan, winner_snap.pool_address, self._platform_pool)

        if result.status == "no_positions":
            logger.info(f"[MONITOR] Battle {battle.id}: loser {decision.loser_id} has no backend positions")
            return BattleOutcome(battle.id, "completed")

        if not result.liquidity_removed:
            return BattleOutcome(battle.id, "completed", "; ".join(result.errors) or result.status)

        recorded = await self._repo.mark_liquidity_poured(
            battle.id, result.transaction_ids, result.distribution_record()
        )
        if not recorded:
            logger.error(
                f"[MONITOR] Battle {battle.id}: liquidity moved but settlement not recorded; "
                f"txs={result.transaction_ids}"
            )
            return BattleOutcome(battle.id, "settled", "settlement record refused")
        if result.partial:
            logger.warning(f"[MONITOR] Battle {battle.id} settled with failed legs")
        return BattleOutcome(battle.id, "settled")
