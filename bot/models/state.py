"""Live pickup state: stage marker, queued players, team assignments, player timers."""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from bot.models.base import Base
from bot.models.pickup import enum_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Stage(str, enum.Enum):
    FILL = "fill"
    AFK_CHECK = "afk_check"
    PICKING_MANUAL = "picking_manual"


class LiveState(Base):
    """One row per pending pickup. Absence of a row = not pending any stage."""

    __tablename__ = "state_pickup"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    pickup_config_id: Mapped[int] = mapped_column(
        ForeignKey("pickup_configs.id", ondelete="CASCADE"), primary_key=True
    )
    stage: Mapped[Stage] = mapped_column(enum_column(Stage), nullable=False, default=Stage.FILL)
    in_stage_since: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    stage_iteration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class QueuedPlayer(Base):
    """Membership of a player in a pickup queue."""

    __tablename__ = "state_pickup_players"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    pickup_config_id: Mapped[int] = mapped_column(
        ForeignKey("pickup_configs.id", ondelete="CASCADE"), primary_key=True
    )
    player_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class TeamAssignment(Base):
    """Player placed on a team during manual picking."""

    __tablename__ = "state_teams"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    pickup_config_id: Mapped[int] = mapped_column(
        ForeignKey("pickup_configs.id", ondelete="CASCADE"), primary_key=True
    )
    player_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    team: Mapped[str] = mapped_column(String(8), nullable=False)  # A, B, C...
    is_captain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    captain_turn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    picked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PlayerState(Base):
    """Per guild player away-status and last add time."""

    __tablename__ = "state_guild_player"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    player_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    last_add: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_afk: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)


class PlayerExpire(Base):
    """Time after which a player is removed from every pickup in the guild."""

    __tablename__ = "state_active_expires"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    player_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    expiration_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
