"""Player model."""
from __future__ import annotations

from typing import Optional

from sqlalchemy import BigInteger, Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from bot.models.base import Base


class Player(Base):
    """Discord user known to a guild. Notifications are opt-in start DMs."""

    __tablename__ = "players"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    current_nick: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)  # Discord display name
    notifications: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
