"""Domain types for the battle lifecycle.

Records are immutable views loaded from the repository once per pass.
The engine never mutates them; every change goes back through the
repository so the stored row stays the single source of truth.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class BattleStatus(str, Enum):
    """Battle status, declared in lifecycle order."""

    NEW = "new"
    ABOUT_TO_BOND = "about_to_bond"
    BONDED = "bonded"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER: list[BattleStatus] = [
    BattleStatus.NEW,
    BattleStatus.ABOUT_TO_BOND,
    BattleStatus.BONDED,
    BattleStatus.COMPLETED,
]

OPEN_STATUSES: tuple[BattleStatus, ...] = (
    BattleStatus.NEW,
    BattleStatus.ABOUT_TO_BOND,
    BattleStatus.BONDED,
)


@dataclass(frozen=True)
class TokenRecord:
    id: str
    mint: str
    pool_address: str | None
    migrated: bool = False
    name: str | None = None
    ticker: str | None = None

    @property
    def label(self) -> str:
        return self.ticker or self.name or self.mint[:8]


@dataclass(frozen=True)
class BattleRecord:
    id: str
    status: BattleStatus
    duration_hours: int
    token1: TokenRecord
    token2: TokenRecord
    start_time: datetime | None = None
    end_time: datetime | None = None
    winner_id: str | None = None
    liquidity_pouring_completed: bool = False


@dataclass(frozen=True)
class TokenUpdate:
    """Side effect: write onto a Token row."""

    token_id: str
    pool_address: str | None = None
    migrated: bool | None = None


@dataclass(frozen=True)
class Transition:
    """Outcome of a state machine decision for one battle."""

    next_status: BattleStatus
    battle_fields: dict[str, Any] = field(default_factory=dict)
    token_updates: tuple[TokenUpdate, ...] = ()


@dataclass(frozen=True)
class WinnerDecision:
    winner_id: str | None  # None = deferred (tie re-poll)
    loser_id: str | None
    winner_market_cap: Decimal
    loser_market_cap: Decimal
    tie: bool = False
