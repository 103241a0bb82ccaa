"""Pure battle status decisions.

Nothing here touches the network or the database: callers feed in the
stored battle plus fresh pool snapshots and apply the returned
``Transition`` themselves.

    new ──(both progress ≥ 90)──► about_to_bond
    new / about_to_bond ──(both migrated)──► bonded   (start/end time set)
    bonded ──(now ≥ end_time, not settled)──► completed (winner set)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from src.battles.types import (
    BattleRecord,
    BattleStatus,
    TokenUpdate,
    Transition,
    WinnerDecision,
)
from src.parsers.meteora.models import PoolSnapshot

ABOUT_TO_BOND_PROGRESS_PCT = 90.0


def can_transition(current: BattleStatus, target: BattleStatus) -> bool:
    """Status only moves forward through the lifecycle."""
    return target.rank > current.rank


def decide_transition(
    battle: BattleRecord,
    token1: PoolSnapshot,
    token2: PoolSnapshot,
    now: datetime,
    *,
    about_to_bond_pct: float = ABOUT_TO_BOND_PROGRESS_PCT,
) -> Transition | None:
    """Decide the pre-battle transition for ``new`` / ``about_to_bond`` battles.

    Migration of both sides wins over the progress threshold when both
    hold at once. Returns None when the status should stay as it is.
    """
    if battle.status not in (BattleStatus.NEW, BattleStatus.ABOUT_TO_BOND):
        return None

    if token1.is_migrated and token2.is_migrated:
        end_time = now + timedelta(hours=battle.duration_hours)
        return Transition(
            next_status=BattleStatus.BONDED,
            battle_fields={
                "status": BattleStatus.BONDED.value,
                "start_time": now,
                "end_time": end_time,
            },
            token_updates=(
                TokenUpdate(token_id=battle.token1.id, migrated=True),
                TokenUpdate(token_id=battle.token2.id, migrated=True),
            ),
        )

    both_near = (
        float(token1.progress) >= about_to_bond_pct
        and float(token2.progress) >= about_to_bond_pct
    )
    if both_near and battle.status == BattleStatus.NEW:
        return Transition(
            next_status=BattleStatus.ABOUT_TO_BOND,
            battle_fields={"status": BattleStatus.ABOUT_TO_BOND.value},
        )

    return None


def is_battle_due(battle: BattleRecord, now: datetime) -> bool:
    """True when a bonded battle reached its end time and has not settled."""
    if battle.status != BattleStatus.BONDED:
        return False
    if battle.end_time is None or battle.liquidity_pouring_completed:
        return False
    return now >= battle.end_time


def decide_winner(
    battle: BattleRecord,
    token1_market_cap: Decimal,
    token2_market_cap: Decimal,
    *,
    tie_deferrals: int = 0,
    max_tie_deferrals: int = 3,
) -> WinnerDecision:
    """Strict market-cap comparison.

    An exact tie defers the decision (winner_id None) so the next pass
    re-polls both pools; once ``max_tie_deferrals`` passes have tied in a
    row, the first-listed token wins.
    """
    t1, t2 = battle.token1.id, battle.token2.id

    if token1_market_cap > token2_market_cap:
        return WinnerDecision(t1, t2, token1_market_cap, token2_market_cap)
    if token2_market_cap > token1_market_cap:
        return WinnerDecision(t2, t1, token2_market_cap, token1_market_cap)

    if tie_deferrals < max_tie_deferrals:
        return WinnerDecision(None, None, token1_market_cap, token2_market_cap, tie=True)
    return WinnerDecision(t1, t2, token1_market_cap, token2_market_cap, tie=True)


def completion_transition(battle: BattleRecord, decision: WinnerDecision) -> Transition | None:
    if decision.winner_id is None or not can_transition(battle.status, BattleStatus.COMPLETED):
        return None
    return Transition(
        next_status=BattleStatus.COMPLETED,
        battle_fields={
            "status": BattleStatus.COMPLETED.value,
            "winner_id": decision.winner_id,
        },
    )
