import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models.base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Token(Base):
    __tablename__ = "tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str | None] = mapped_column(String(255))
    ticker: Mapped[str | None] = mapped_column(String(50))
    contract_address: Mapped[str] = mapped_column(String(64))  # mint
    pool_address: Mapped[str | None] = mapped_column(String(64))
    migrated: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (Index("idx_tokens_contract_address", "contract_address"),)


class Battle(Base):
    __tablename__ = "battles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    status: Mapped[str] = mapped_column(String(20), default="new")
    duration: Mapped[int] = mapped_column(Integer, default=24)  # hours
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    winner_id: Mapped[str | None] = mapped_column(ForeignKey("tokens.id"))
    liquidity_pouring_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    liquidity_pouring_transactions: Mapped[list | None] = mapped_column(JSON)
    liquidity_distribution: Mapped[dict | None] = mapped_column(JSON)
    token1_id: Mapped[str] = mapped_column(ForeignKey("tokens.id"))
    token2_id: Mapped[str] = mapped_column(ForeignKey("tokens.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    token1: Mapped[Token] = relationship(foreign_keys=[token1_id], lazy="joined")
    token2: Mapped[Token] = relationship(foreign_keys=[token2_id], lazy="joined")

    __table_args__ = (Index("idx_battles_status", "status"),)
