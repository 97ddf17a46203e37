"""Pickup configuration model."""
from __future__ import annotations

import enum
from typing import Optional

from sqlalchemy import BigInteger, Boolean, Enum, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bot.models.base import Base


class PickMode(str, enum.Enum):
    """How teams are formed once a pickup is ready to start."""

    NO_TEAMS = "no_teams"
    MANUAL = "manual"
    ELO = "elo"


def enum_column(enum_cls: type[enum.Enum], length: int = 16) -> Enum:
    """Store enum values (not names) in a plain VARCHAR column."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )


class PickupConfig(Base):
    """Configured match template within a guild (name, player/team counts, rules)."""

    __tablename__ = "pickup_configs"
    __table_args__ = (UniqueConstraint("guild_id", "name", name="uq_pickup_configs_guild_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(32), nullable=False)
    player_count: Mapped[int] = mapped_column(Integer, nullable=False)
    team_count: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    is_default_pickup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    afk_check: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pick_mode: Mapped[PickMode] = mapped_column(enum_column(PickMode), nullable=False, default=PickMode.NO_TEAMS)
    # Role restrictions, None = no restriction
    whitelist_role: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    blacklist_role: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    promotion_role: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    captain_role: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    mappool_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    server_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    @property
    def team_size(self) -> int:
        if self.team_count < 1:
            return self.player_count
        return self.player_count // self.team_count
