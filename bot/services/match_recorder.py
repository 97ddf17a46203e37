"""Stores started pickups for stats."""
from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bot.errors import StoreFailure
from bot.models import MatchPlayer, MatchRecord
from bot.services.captain_turns import team_labels
from bot.services.state_store import ActivePickup

logger = logging.getLogger("pickups.recorder")


class MatchRecorder:
    """Writes one pickups row plus its pickup_players rows in a single transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def store(
        self,
        pickup: ActivePickup,
        teams: Optional[Sequence[Sequence[int]]] = None,
        captains: Optional[Sequence[int]] = None,
    ) -> int:
        captain_set = set(captains or ())
        record = MatchRecord(
            guild_id=pickup.guild_id,
            pickup_config_id=pickup.config_id,
            name=pickup.name,
            has_teams=bool(teams),
        )
        if teams:
            for label, members in zip(team_labels(len(teams)), teams):
                for pid in members:
                    record.players.append(MatchPlayer(player_id=pid, team=label, is_captain=pid in captain_set))
        else:
            for pid in pickup.player_ids:
                record.players.append(MatchPlayer(player_id=pid, team=None, is_captain=pid in captain_set))
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(record)
                    await session.flush()
                    match_id = record.id
        except SQLAlchemyError as e:
            raise StoreFailure(f"Could not store pickup {pickup.name}: {e}") from e
        logger.info("Stored pickup %s as #%s (%d players)", pickup.name, match_id, len(record.players))
        return match_id
