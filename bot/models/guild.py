"""Guild settings: pickup channel and message templates."""
from __future__ import annotations

from typing import Optional

from sqlalchemy import BigInteger, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from bot.models.base import Base


class GuildSettings(Base):
    """Per guild configuration. Templates fall back to config defaults when None."""

    __tablename__ = "guilds"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    pickup_channel_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    start_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notify_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    default_expire: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # minutes
