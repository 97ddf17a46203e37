"""Contracts between the lifecycle and its stage collaborators."""
from __future__ import annotations

import enum
from typing import Protocol, Sequence

from bot.context import GuildContext
from bot.services.state_store import ActivePickup


class StageOutcome(str, enum.Enum):
    COMPLETED = "completed"  # stage done, go on to the next one
    ABORTED = "aborted"  # pickup went back to fill (player left, away players removed): stop here


class AwayCheck(Protocol):
    async def run(self, ctx: GuildContext, config_id: int, must_send_initial: bool) -> StageOutcome:
        """Raise (anything) when the check failed or timed out."""
        ...


class ManualPicking(Protocol):
    async def run(self, ctx: GuildContext, config_id: int, must_send_initial: bool) -> StageOutcome:
        """Return COMPLETED once every team is assigned and persisted; raise when picking is abandoned."""
        ...


class TeamGenerator(Protocol):
    async def generate(self, pickup: ActivePickup) -> Sequence[Sequence[int]]:
        """Split the pickup's players into teams (team A first)."""
        ...
