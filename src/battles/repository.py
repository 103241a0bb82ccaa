"""Battle/token persistence behind a narrow, typed interface.

Reads raise on database errors so the caller can abandon the pass. Writes
never raise: they log (flagging constraint/trigger rejections) and report
False, and every write is guarded so a stale caller cannot regress a
status, un-migrate a token, or settle a battle twice.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.battles.types import OPEN_STATUSES, BattleRecord, BattleStatus, TokenRecord
from src.models.battle import Battle, Token

BATTLE_WRITABLE_FIELDS = frozenset({"status", "start_time", "end_time", "winner_id"})

# SQLSTATE classes raised by constraints (23xxx), multi-row subqueries (21000)
# and RAISE EXCEPTION in triggers (P0001)
_REJECTION_STATES = ("21000", "P0001")


class BattleRepository(Protocol):
    async def list_open_battles(self) -> list[BattleRecord]: ...

    async def get_battle(self, battle_id: str) -> BattleRecord | None: ...

    async def update_battle(self, battle_id: str, **fields: Any) -> bool: ...

    async def update_token(
        self,
        token_id: str,
        *,
        pool_address: str | None = None,
        migrated: bool | None = None,
    ) -> bool: ...

    async def mark_liquidity_poured(
        self, battle_id: str, transactions: list[str], distribution: dict[str, Any]
    ) -> bool: ...


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def sqlstate_of(exc: BaseException) -> str | None:
    """SQLSTATE of a wrapped DBAPI error (asyncpg exposes ``sqlstate``)."""
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_rejection(code: str | None) -> bool:
    return code is not None and (code.startswith("23") or code in _REJECTION_STATES)


def _token_record(token: Token) -> TokenRecord:
    return TokenRecord(
        id=token.id,
        mint=token.contract_address,
        pool_address=token.pool_address,
        migrated=bool(token.migrated),
        name=token.name,
        ticker=token.ticker,
    )


def _battle_record(battle: Battle) -> BattleRecord:
    return BattleRecord(
        id=battle.id,
        status=BattleStatus(battle.status),
        duration_hours=int(battle.duration or 0),
        token1=_token_record(battle.token1),
        token2=_token_record(battle.token2),
        start_time=_utc(battle.start_time),
        end_time=_utc(battle.end_time),
        winner_id=battle.winner_id,
        liquidity_pouring_completed=bool(battle.liquidity_pouring_completed),
    )


class SqlBattleRepository:
    """SQLAlchemy async implementation of :class:`BattleRepository`."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_open_battles(self) -> list[BattleRecord]:
        """Battles not yet completed, both tokens joined, newest first."""
        stmt = (
            select(Battle)
            .where(Battle.status.in_([s.value for s in OPEN_STATUSES]))
            .order_by(Battle.created_at.desc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            battles = result.unique().scalars().all()

        records: list[BattleRecord] = []
        for battle in battles:
            try:
                records.append(_battle_record(battle))
            except ValueError:
                logger.warning(f"[REPO] Battle {battle.id} has unknown status {battle.status!r}, skipped")
        return records

    async def get_battle(self, battle_id: str) -> BattleRecord | None:
        async with self._session_factory() as session:
            battle = await session.get(Battle, battle_id)
            if battle is None:
                return None
            return _battle_record(battle)

    async def update_battle(self, battle_id: str, **fields: Any) -> bool:
        """Write battle fields; a ``status`` write only moves forward.

        Returns True when a row changed.
        """
        unknown = set(fields) - BATTLE_WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported battle fields: {sorted(unknown)}")
        if not fields:
            return False

        values = dict(fields)
        stmt = update(Battle).where(Battle.id == battle_id)
        if "status" in values:
            target = BattleStatus(values["status"])
            values["status"] = target.value
            earlier = [s.value for s in BattleStatus if s.rank < target.rank]
            stmt = stmt.where(Battle.status.in_(earlier))

        changed = await self._execute(stmt.values(**values), f"update battle {battle_id}")
        if changed is False:
            logger.warning(f"[REPO] Battle {battle_id} not updated (status guard or missing row)")
        return bool(changed)

    async def update_token(
        self,
        token_id: str,
        *,
        pool_address: str | None = None,
        migrated: bool | None = None,
    ) -> bool:
        values: dict[str, Any] = {}
        if pool_address:
            values["pool_address"] = pool_address
        if migrated:
            values["migrated"] = True
        elif migrated is False:
            logger.debug(f"[REPO] Ignoring migrated=False for token {token_id}")
        if not values:
            return False

        stmt = update(Token).where(Token.id == token_id).values(**values)
        return bool(await self._execute(stmt, f"update token {token_id}"))

    async def mark_liquidity_poured(
        self, battle_id: str, transactions: list[str], distribution: dict[str, Any]
    ) -> bool:
        """Record settlement; a battle already marked is left untouched."""
        stmt = (
            update(Battle)
            .where(Battle.id == battle_id, Battle.liquidity_pouring_completed.is_(False))
            .values(
                liquidity_pouring_completed=True,
                liquidity_pouring_transactions=list(transactions),
                liquidity_distribution=distribution,
            )
        )
        changed = await self._execute(stmt, f"mark battle {battle_id} settled")
        if changed is False:
            logger.warning(f"[REPO] Battle {battle_id} was already marked settled")
        return bool(changed)

    async def _execute(self, stmt: Any, action: str) -> bool | None:
        """Run one guarded write. None means the database refused it."""
        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                code = sqlstate_of(e)
                if is_rejection(code):
                    logger.error(
                        f"[REPO] {action} rejected by a constraint/trigger "
                        f"(SQLSTATE {code}): {e}"
                    )
                else:
                    logger.error(f"[REPO] {action} failed (SQLSTATE {code}): {e}")
                return None
            return result.rowcount > 0
