"""Database models."""
from bot.models.base import Base, init_db
from bot.models.guild import GuildSettings
from bot.models.match import MatchPlayer, MatchRecord
from bot.models.pickup import PickMode, PickupConfig
from bot.models.player import Player
from bot.models.state import (
    LiveState,
    PlayerExpire,
    PlayerState,
    QueuedPlayer,
    Stage,
    TeamAssignment,
)

__all__ = [
    "Base",
    "GuildSettings",
    "LiveState",
    "MatchPlayer",
    "MatchRecord",
    "PickMode",
    "PickupConfig",
    "Player",
    "PlayerExpire",
    "PlayerState",
    "QueuedPlayer",
    "Stage",
    "TeamAssignment",
    "init_db",
]
