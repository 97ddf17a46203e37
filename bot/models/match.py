"""Finished match records (stats)."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bot.models.base import Base
from bot.models.state import utcnow


class MatchRecord(Base):
    """A pickup that started."""

    __tablename__ = "pickups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    # No FK: stats outlive the pickup config
    pickup_config_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(32), nullable=False)
    has_teams: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    players = relationship(
        "MatchPlayer", back_populates="match", cascade="all, delete-orphan"
    )


class MatchPlayer(Base):
    """Player who took part in a started pickup."""

    __tablename__ = "pickup_players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pickup_id: Mapped[int] = mapped_column(ForeignKey("pickups.id", ondelete="CASCADE"), nullable=False)
    player_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    team: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    is_captain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    match: Mapped["MatchRecord"] = relationship("MatchRecord", back_populates="players")
