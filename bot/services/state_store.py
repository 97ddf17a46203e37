"""Transactional store for pickup configuration and live pickup state.

Every public method runs in exactly one session and one transaction. Either
all of its statements commit or none do; SQLAlchemy errors roll the
transaction back and surface as StoreFailure. Nothing here retries.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Iterable, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bot.errors import (
    AlreadyExists,
    AlreadyTransitioned,
    InvalidPick,
    NotFound,
    PickupFull,
    StoreFailure,
)
from bot.models import (
    GuildSettings,
    LiveState,
    PickMode,
    PickupConfig,
    Player,
    PlayerExpire,
    PlayerState,
    QueuedPlayer,
    Stage,
    TeamAssignment,
)
from bot.models.state import utcnow
from bot.services import captain_turns

logger = logging.getLogger("pickups.store")

PickupRef = int | str

# Settings editable through modify_pickup (admin /pickup set, web API)
EDITABLE_SETTINGS = {
    "player_count": int,
    "team_count": int,
    "is_default_pickup": bool,
    "afk_check": bool,
    "pick_mode": PickMode,
    "whitelist_role": int,
    "blacklist_role": int,
    "promotion_role": int,
    "captain_role": int,
    "mappool_id": int,
    "server_id": int,
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class QueuedPlayerView:
    id: int
    nick: Optional[str]


@dataclass(slots=True)
class TeamSlot:
    player_id: int
    team: str
    is_captain: bool = False
    captain_turn: bool = False


@dataclass(slots=True)
class ActivePickup:
    """Point-in-time snapshot of one pickup: config, stage marker, queue and teams."""

    config: PickupConfig
    stage: Optional[Stage]
    in_stage_since: Optional[datetime]
    stage_iteration: int
    players: list[QueuedPlayerView] = field(default_factory=list)
    teams: list[TeamSlot] = field(default_factory=list)

    @property
    def config_id(self) -> int:
        return self.config.id

    @property
    def guild_id(self) -> int:
        return self.config.guild_id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def player_ids(self) -> list[int]:
        return [p.id for p in self.players]

    @property
    def is_full(self) -> bool:
        return len(self.players) >= self.config.player_count

    def rosters(self) -> list[list[int]]:
        """Assigned players per team in label order, captains first."""
        result = []
        for label in captain_turns.team_labels(self.config.team_count):
            members = [t for t in self.teams if t.team == label]
            members.sort(key=lambda t: not t.is_captain)
            result.append([t.player_id for t in members])
        return result

    def captains(self) -> list[int]:
        by_team = {t.team: t.player_id for t in self.teams if t.is_captain}
        return [by_team[label] for label in captain_turns.team_labels(self.config.team_count) if label in by_team]

    def unassigned(self) -> list[int]:
        assigned = {t.player_id for t in self.teams}
        return [p.id for p in self.players if p.id not in assigned]


@dataclass(slots=True)
class AddResult:
    added: list[str] = field(default_factory=list)
    triggered: list[int] = field(default_factory=list)  # config ids that just became full
    skipped: dict[str, str] = field(default_factory=dict)  # name -> reason


@dataclass(slots=True)
class PickResult:
    team: str
    next_team: Optional[str]
    auto_assigned: list[int] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return self.next_team is None


class StateStore:
    """Sole writer of pickup configuration and live state rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.warning("Store transaction rolled back: %s", e)
            raise StoreFailure(str(e)) from e

    # --- lookups ---

    async def _config(self, session: AsyncSession, guild_id: int, pickup: PickupRef) -> PickupConfig:
        stmt = select(PickupConfig).where(PickupConfig.guild_id == guild_id)
        if isinstance(pickup, int):
            stmt = stmt.where(PickupConfig.id == pickup)
        else:
            stmt = stmt.where(func.lower(PickupConfig.name) == pickup.lower())
        cfg = (await session.execute(stmt)).scalar_one_or_none()
        if cfg is None:
            raise NotFound(f"Pickup {pickup} not found")
        return cfg

    async def _queued_count(self, session: AsyncSession, guild_id: int, config_id: int) -> int:
        result = await session.execute(
            select(func.count()).select_from(QueuedPlayer).where(
                QueuedPlayer.guild_id == guild_id,
                QueuedPlayer.pickup_config_id == config_id,
            )
        )
        return result.scalar_one()

    async def _team_rows(self, session: AsyncSession, guild_id: int, config_id: int) -> list[TeamAssignment]:
        result = await session.execute(
            select(TeamAssignment)
            .where(TeamAssignment.guild_id == guild_id, TeamAssignment.pickup_config_id == config_id)
            .order_by(TeamAssignment.picked_at)
        )
        return list(result.scalars().all())

    async def _snapshot(self, session: AsyncSession, cfg: PickupConfig) -> ActivePickup:
        state = await session.get(LiveState, (cfg.guild_id, cfg.id))
        rows = await session.execute(
            select(QueuedPlayer.player_id, Player.current_nick)
            .outerjoin(
                Player,
                (Player.guild_id == QueuedPlayer.guild_id) & (Player.user_id == QueuedPlayer.player_id),
            )
            .where(QueuedPlayer.guild_id == cfg.guild_id, QueuedPlayer.pickup_config_id == cfg.id)
            .order_by(QueuedPlayer.added_at, QueuedPlayer.player_id)
        )
        teams = await self._team_rows(session, cfg.guild_id, cfg.id)
        return ActivePickup(
            config=cfg,
            stage=state.stage if state else None,
            in_stage_since=as_utc(state.in_stage_since) if state else None,
            stage_iteration=state.stage_iteration if state else 0,
            players=[QueuedPlayerView(id=pid, nick=nick) for pid, nick in rows.all()],
            teams=[
                TeamSlot(player_id=t.player_id, team=t.team, is_captain=t.is_captain, captain_turn=t.captain_turn)
                for t in teams
            ],
        )

    async def get_pickup_config(self, guild_id: int, pickup: PickupRef) -> PickupConfig:
        async with self._transaction() as session:
            return await self._config(session, guild_id, pickup)

    async def read_active_pickup(self, guild_id: int, pickup: PickupRef) -> ActivePickup:
        """Snapshot of live state, queued players (with nick) and team assignments."""
        async with self._transaction() as session:
            cfg = await self._config(session, guild_id, pickup)
            return await self._snapshot(session, cfg)

    async def active_pickups(self, guild_id: int, include_defaults: bool = False) -> list[ActivePickup]:
        """Pickups with queued players (plus default pickups if asked), fullest first."""
        async with self._transaction() as session:
            result = await session.execute(
                select(PickupConfig).where(PickupConfig.guild_id == guild_id).order_by(PickupConfig.name)
            )
            snapshots = []
            for cfg in result.scalars().all():
                snap = await self._snapshot(session, cfg)
                if snap.players or (include_defaults and cfg.is_default_pickup):
                    snapshots.append(snap)
        snapshots.sort(key=lambda s: (len(s.players), s.config.player_count), reverse=True)
        return snapshots

    async def list_pickups(self, guild_id: int) -> list[PickupConfig]:
        async with self._transaction() as session:
            result = await session.execute(
                select(PickupConfig).where(PickupConfig.guild_id == guild_id).order_by(PickupConfig.name)
            )
            return list(result.scalars().all())

    async def pending_pickups(self, guild_id: int) -> list[tuple[int, Stage]]:
        """(config_id, stage) of every live state row in the guild."""
        async with self._transaction() as session:
            result = await session.execute(
                select(LiveState.pickup_config_id, LiveState.stage).where(LiveState.guild_id == guild_id)
            )
            return [(cid, stage) for cid, stage in result.all()]

    # --- stage marker ---

    async def set_stage(
        self,
        guild_id: int,
        config_id: int,
        stage: Stage,
        expected: Stage | Sequence[Stage] | None = None,
        require_full: bool = False,
    ) -> None:
        """Move the pickup to `stage`, resetting in_stage_since and stage_iteration.

        With `expected`, only rows currently in one of those stages move; a row
        in any other stage raises AlreadyTransitioned (duplicate trigger).
        With `require_full`, a pickup whose queue is below its player count
        raises AlreadyTransitioned too (a player left since the trigger).
        """
        async with self._transaction() as session:
            if require_full:
                cfg = await self._config(session, guild_id, config_id)
                if await self._queued_count(session, guild_id, config_id) < cfg.player_count:
                    raise AlreadyTransitioned(f"Pickup {cfg.name} is no longer full")
            await self._set_stage(session, guild_id, config_id, stage, expected)

    async def release_stage(self, guild_id: int, config_id: int) -> bool:
        """Back to fill (teams cleared) if the pickup sits in a stage without a full queue.

        A full pickup keeps its stage: a running handler still owns it.
        Returns True when the stage was released.
        """
        async with self._transaction() as session:
            cfg = await self._config(session, guild_id, config_id)
            state = await session.get(LiveState, (guild_id, config_id))
            if state is None or state.stage == Stage.FILL:
                return False
            if await self._queued_count(session, guild_id, config_id) >= cfg.player_count:
                return False
            await self._set_stage(session, guild_id, config_id, Stage.FILL)
            await self._delete_teams(session, guild_id, config_id)
        logger.info("Pickup %s in guild %s released back to fill", cfg.name, guild_id)
        return True

    async def _set_stage(self, session, guild_id, config_id, stage, expected=None) -> None:
        stmt = update(LiveState).where(
            LiveState.guild_id == guild_id,
            LiveState.pickup_config_id == config_id,
        )
        if expected is not None:
            allowed = [expected] if isinstance(expected, Stage) else list(expected)
            stmt = stmt.where(LiveState.stage.in_(allowed))
        result = await session.execute(
            stmt.values(stage=stage, in_stage_since=utcnow(), stage_iteration=0)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        if await session.get(LiveState, (guild_id, config_id)) is None:
            raise NotFound(f"No live state for pickup {config_id}")
        raise AlreadyTransitioned(f"Pickup {config_id} is not in {expected}")

    async def increment_iteration(self, guild_id: int, config_id: int) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                update(LiveState)
                .where(LiveState.guild_id == guild_id, LiveState.pickup_config_id == config_id)
                .values(stage_iteration=LiveState.stage_iteration + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFound(f"No live state for pickup {config_id}")
            value = await session.execute(
                select(LiveState.stage_iteration).where(
                    LiveState.guild_id == guild_id, LiveState.pickup_config_id == config_id
                )
            )
            return value.scalar_one()

    async def reset_iteration(self, guild_id: int, config_id: int) -> None:
        async with self._transaction() as session:
            result = await session.execute(
                update(LiveState)
                .where(LiveState.guild_id == guild_id, LiveState.pickup_config_id == config_id)
                .values(stage_iteration=0)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFound(f"No live state for pickup {config_id}")

    # --- queue membership ---

    async def _upsert_player(self, session, guild_id: int, player_id: int, nick: Optional[str]) -> Player:
        player = await session.get(Player, (guild_id, player_id))
        if player is None:
            player = Player(guild_id=guild_id, user_id=player_id, current_nick=nick, notifications=False)
            session.add(player)
        elif nick and player.current_nick != nick:
            player.current_nick = nick
        return player

    async def _ensure_live_state(self, session, guild_id: int, config_id: int) -> LiveState:
        state = await session.get(LiveState, (guild_id, config_id))
        if state is None:
            state = LiveState(
                guild_id=guild_id,
                pickup_config_id=config_id,
                stage=Stage.FILL,
                in_stage_since=utcnow(),
                stage_iteration=0,
            )
            session.add(state)
        return state

    async def queue_players(self, guild_id: int, config_id: int, player_ids: Iterable[int]) -> None:
        """Idempotent: creates the live state row if needed and ignores players already queued.

        Raises PickupFull (and writes nothing) when the queue would exceed the
        player count.
        """
        async with self._transaction() as session:
            cfg = await self._config(session, guild_id, config_id)
            await self._ensure_live_state(session, guild_id, config_id)
            for pid in dict.fromkeys(player_ids):
                if await session.get(QueuedPlayer, (guild_id, config_id, pid)) is None:
                    session.add(QueuedPlayer(guild_id=guild_id, pickup_config_id=config_id, player_id=pid))
            await session.flush()
            if await self._queued_count(session, guild_id, config_id) > cfg.player_count:
                raise PickupFull(f"Pickup {cfg.name} has only {cfg.player_count} slots")

    async def add_players(
        self,
        guild_id: int,
        player_id: int,
        pickups: Sequence[PickupRef],
        nick: Optional[str] = None,
    ) -> AddResult:
        """Queue a player into pickups. Reports which pickups just became full (lifecycle triggers).

        Each pickup is added under its own savepoint: the queue is re-counted
        after the insert and an overfull pickup is rolled back alone.
        """
        out = AddResult()
        async with self._transaction() as session:
            await self._upsert_player(session, guild_id, player_id, nick)
            configs = [await self._config(session, guild_id, ref) for ref in pickups]
            for cfg in configs:
                if await session.get(QueuedPlayer, (guild_id, cfg.id, player_id)) is not None:
                    out.skipped[cfg.name] = "already added"
                    continue
                state = await session.get(LiveState, (guild_id, cfg.id))
                if state is not None and state.stage != Stage.FILL:
                    out.skipped[cfg.name] = "in progress"
                    continue
                savepoint = await session.begin_nested()
                await self._ensure_live_state(session, guild_id, cfg.id)
                session.add(QueuedPlayer(guild_id=guild_id, pickup_config_id=cfg.id, player_id=player_id))
                await session.flush()
                count = await self._queued_count(session, guild_id, cfg.id)
                if count > cfg.player_count:
                    await savepoint.rollback()
                    out.skipped[cfg.name] = "full"
                    continue
                await savepoint.commit()
                out.added.append(cfg.name)
                if count == cfg.player_count:
                    out.triggered.append(cfg.id)

            if out.added:
                now = utcnow()
                player_state = await session.get(PlayerState, (guild_id, player_id))
                if player_state is None:
                    session.add(PlayerState(guild_id=guild_id, player_id=player_id, last_add=now))
                else:
                    player_state.last_add = now
                    player_state.is_afk = None
                guild = await session.get(GuildSettings, guild_id)
                if guild and guild.default_expire and await session.get(PlayerExpire, (guild_id, player_id)) is None:
                    session.add(
                        PlayerExpire(
                            guild_id=guild_id,
                            player_id=player_id,
                            expiration_date=now + timedelta(minutes=guild.default_expire),
                        )
                    )
        if out.added:
            logger.info("Player %s added to %s in guild %s", player_id, ", ".join(out.added), guild_id)
        return out

    async def _dequeue(
        self,
        session: AsyncSession,
        guild_id: int,
        player_ids: Sequence[int],
        exclude_configs: Sequence[int] = (),
    ) -> list[int]:
        if not player_ids:
            return []
        where = [QueuedPlayer.guild_id == guild_id, QueuedPlayer.player_id.in_(list(player_ids))]
        if exclude_configs:
            where.append(QueuedPlayer.pickup_config_id.not_in(list(exclude_configs)))
        affected = await session.execute(select(QueuedPlayer.pickup_config_id).where(*where).distinct())
        affected_ids = list(affected.scalars().all())
        await session.execute(delete(QueuedPlayer).where(*where).execution_options(synchronize_session=False))
        await self._collect_orphan_states(session, guild_id)
        return affected_ids

    async def _collect_orphan_states(self, session: AsyncSession, guild_id: int) -> None:
        """Live state rows without queued players must not survive the transaction."""
        still_queued = select(QueuedPlayer.pickup_config_id).where(QueuedPlayer.guild_id == guild_id)
        orphans = (
            await session.execute(
                select(LiveState.pickup_config_id).where(
                    LiveState.guild_id == guild_id,
                    LiveState.pickup_config_id.not_in(still_queued),
                )
            )
        ).scalars().all()
        if not orphans:
            return
        await session.execute(
            delete(TeamAssignment)
            .where(TeamAssignment.guild_id == guild_id, TeamAssignment.pickup_config_id.in_(orphans))
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            delete(LiveState)
            .where(LiveState.guild_id == guild_id, LiveState.pickup_config_id.in_(orphans))
            .execution_options(synchronize_session=False)
        )

    async def dequeue_players(
        self,
        guild_id: int,
        player_ids: Sequence[int],
        exclude_configs: Sequence[int] = (),
    ) -> list[int]:
        """Remove players from every pickup they are in (except excluded ones). Returns affected config ids."""
        async with self._transaction() as session:
            return await self._dequeue(session, guild_id, player_ids, exclude_configs)

    async def remove_players(
        self,
        guild_id: int,
        player_ids: Sequence[int],
        pickups: Sequence[PickupRef] = (),
    ) -> tuple[list[int], list[int]]:
        """Player-initiated removal (/remove, expiry).

        Pickups the players leave while in afk_check or picking_manual fall back
        to fill and lose their team assignments. Returns (affected, aborted)
        config ids.
        """
        async with self._transaction() as session:
            only = [(await self._config(session, guild_id, ref)).id for ref in pickups]
            where = [QueuedPlayer.guild_id == guild_id, QueuedPlayer.player_id.in_(list(player_ids))]
            if only:
                where.append(QueuedPlayer.pickup_config_id.in_(only))
            affected = list((await session.execute(select(QueuedPlayer.pickup_config_id).where(*where).distinct())).scalars().all())
            aborted = await self._abort_stages(session, guild_id, affected)
            await session.execute(delete(QueuedPlayer).where(*where).execution_options(synchronize_session=False))
            await self._collect_orphan_states(session, guild_id)
            await self._clear_orphan_timers(session, guild_id, player_ids)
        return affected, aborted

    async def _abort_stages(self, session: AsyncSession, guild_id: int, config_ids: Sequence[int]) -> list[int]:
        if not config_ids:
            return []
        pending = (
            await session.execute(
                select(LiveState.pickup_config_id).where(
                    LiveState.guild_id == guild_id,
                    LiveState.pickup_config_id.in_(list(config_ids)),
                    LiveState.stage != Stage.FILL,
                )
            )
        ).scalars().all()
        for config_id in pending:
            await self._set_stage(session, guild_id, config_id, Stage.FILL)
            await self._delete_teams(session, guild_id, config_id)
        return list(pending)

    async def take_players_for_start(self, guild_id: int, config_id: int) -> tuple[ActivePickup, list[int]]:
        """Snapshot a full pickup and dequeue its players from every pickup, atomically.

        Other pickups that lose players while in afk_check or picking_manual
        fall back to fill; their ids are returned with the snapshot. Raises
        AlreadyTransitioned when the pickup is no longer full, i.e. a
        concurrent trigger already started it or players left.
        """
        async with self._transaction() as session:
            cfg = await self._config(session, guild_id, config_id)
            snapshot = await self._snapshot(session, cfg)
            if not snapshot.players or not snapshot.is_full:
                raise AlreadyTransitioned(f"Pickup {cfg.name} is not ready to start")
            others = (
                await session.execute(
                    select(QueuedPlayer.pickup_config_id)
                    .where(
                        QueuedPlayer.guild_id == guild_id,
                        QueuedPlayer.player_id.in_(snapshot.player_ids),
                        QueuedPlayer.pickup_config_id != config_id,
                    )
                    .distinct()
                )
            ).scalars().all()
            aborted = await self._abort_stages(session, guild_id, others)
            await self._delete_teams(session, guild_id, config_id)
            await self._dequeue(session, guild_id, snapshot.player_ids)
            await self._clear_orphan_timers(session, guild_id, snapshot.player_ids)
        return snapshot, aborted

    async def _clear_pickup(self, session: AsyncSession, guild_id: int, config_id: int) -> None:
        for model in (QueuedPlayer, TeamAssignment, LiveState):
            await session.execute(
                delete(model)
                .where(model.guild_id == guild_id, model.pickup_config_id == config_id)
                .execution_options(synchronize_session=False)
            )

    async def clear_pickup(self, guild_id: int, config_id: int) -> None:
        async with self._transaction() as session:
            await self._clear_pickup(session, guild_id, config_id)

    async def _clear_orphan_timers(
        self,
        session: AsyncSession,
        guild_id: int,
        player_ids: Optional[Sequence[int]] = None,
    ) -> None:
        """Clear away-status and expiry of players not queued in any pickup of the guild."""
        queued = select(QueuedPlayer.player_id).where(QueuedPlayer.guild_id == guild_id)
        state_where = [PlayerState.guild_id == guild_id, PlayerState.player_id.not_in(queued)]
        expire_where = [PlayerExpire.guild_id == guild_id, PlayerExpire.player_id.not_in(queued)]
        if player_ids is not None:
            state_where.append(PlayerState.player_id.in_(list(player_ids)))
            expire_where.append(PlayerExpire.player_id.in_(list(player_ids)))
        await session.execute(
            update(PlayerState)
            .where(*state_where)
            .values(last_add=None, is_afk=None)
            .execution_options(synchronize_session=False)
        )
        await session.execute(delete(PlayerExpire).where(*expire_where).execution_options(synchronize_session=False))

    async def reset_pickup(self, guild_id: int, config_id: int) -> None:
        """Clear the pickup entirely, plus timers of guild players left without any pickup."""
        async with self._transaction() as session:
            await self._clear_pickup(session, guild_id, config_id)
            await self._clear_orphan_timers(session, guild_id)
        logger.info("Pickup %s in guild %s reset", config_id, guild_id)

    # --- teams ---

    async def _delete_teams(self, session: AsyncSession, guild_id: int, config_id: int) -> None:
        await session.execute(
            delete(TeamAssignment)
            .where(TeamAssignment.guild_id == guild_id, TeamAssignment.pickup_config_id == config_id)
            .execution_options(synchronize_session=False)
        )

    async def assign_teams(self, guild_id: int, config_id: int, assignments: Iterable[TeamSlot]) -> None:
        async with self._transaction() as session:
            await self._assign(session, guild_id, config_id, assignments)

    async def _assign(self, session, guild_id: int, config_id: int, assignments: Iterable[TeamSlot]) -> None:
        for a in assignments:
            await session.merge(
                TeamAssignment(
                    guild_id=guild_id,
                    pickup_config_id=config_id,
                    player_id=a.player_id,
                    team=a.team,
                    is_captain=a.is_captain,
                    captain_turn=a.captain_turn,
                    picked_at=utcnow(),
                )
            )
        await session.flush()
        turns = await session.execute(
            select(func.count()).select_from(TeamAssignment).where(
                TeamAssignment.guild_id == guild_id,
                TeamAssignment.pickup_config_id == config_id,
                TeamAssignment.captain_turn.is_(True),
            )
        )
        if turns.scalar_one() > 1:
            raise InvalidPick("Only one captain can hold the turn")

    async def clear_teams(self, guild_id: int, config_id: int) -> None:
        async with self._transaction() as session:
            await self._delete_teams(session, guild_id, config_id)

    async def _give_turn(self, session: AsyncSession, guild_id: int, config_id: int, team: str) -> None:
        captain = (
            await session.execute(
                select(TeamAssignment.player_id)
                .where(
                    TeamAssignment.guild_id == guild_id,
                    TeamAssignment.pickup_config_id == config_id,
                    TeamAssignment.team == team,
                    TeamAssignment.is_captain.is_(True),
                )
                .order_by(TeamAssignment.picked_at)
                .limit(1)
            )
        ).scalar_one_or_none()
        if captain is None:
            raise NotFound(f"Team {team} has no captain")
        await session.execute(
            update(TeamAssignment)
            .where(
                TeamAssignment.guild_id == guild_id,
                TeamAssignment.pickup_config_id == config_id,
                TeamAssignment.captain_turn.is_(True),
            )
            .values(captain_turn=False)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(TeamAssignment)
            .where(
                TeamAssignment.guild_id == guild_id,
                TeamAssignment.pickup_config_id == config_id,
                TeamAssignment.player_id == captain,
            )
            .values(captain_turn=True)
            .execution_options(synchronize_session=False)
        )

    async def set_captain_turn(self, guild_id: int, config_id: int, team: str) -> None:
        """Hand the turn to the first captain of `team`; any other turn is cleared."""
        async with self._transaction() as session:
            await self._give_turn(session, guild_id, config_id, team)

    async def begin_picking(self, guild_id: int, config_id: int, captain_ids: Sequence[int]) -> ActivePickup:
        """Seat one captain per team (in team order) and give team A the turn."""
        async with self._transaction() as session:
            cfg = await self._config(session, guild_id, config_id)
            state = await session.get(LiveState, (guild_id, config_id))
            if state is None or state.stage != Stage.PICKING_MANUAL:
                raise AlreadyTransitioned(f"Pickup {cfg.name} is not in picking")
            labels = captain_turns.team_labels(cfg.team_count)
            if len(captain_ids) != len(labels):
                raise InvalidPick(f"Need {len(labels)} captains, got {len(captain_ids)}")
            for pid in captain_ids:
                if await session.get(QueuedPlayer, (guild_id, config_id, pid)) is None:
                    raise InvalidPick(f"Captain {pid} is not added to {cfg.name}")
            slots = [TeamSlot(player_id=pid, team=label, is_captain=True) for label, pid in zip(labels, captain_ids)]
            await self._delete_teams(session, guild_id, config_id)
            await self._assign(session, guild_id, config_id, slots)
            first = captain_turns.next_captain_team(slots, cfg.team_count, cfg.team_size)
            if first is not None:
                await self._give_turn(session, guild_id, config_id, first)
            return await self._snapshot(session, cfg)

    async def record_pick(self, guild_id: int, config_id: int, captain_id: int, player_id: int) -> PickResult:
        """Apply one captain pick and pass the turn on.

        The turn is claimed with a conditional update, so two concurrent picks
        for the same turn cannot both succeed.
        """
        async with self._transaction() as session:
            cfg = await self._config(session, guild_id, config_id)
            claimed = await session.execute(
                update(TeamAssignment)
                .where(
                    TeamAssignment.guild_id == guild_id,
                    TeamAssignment.pickup_config_id == config_id,
                    TeamAssignment.player_id == captain_id,
                    TeamAssignment.captain_turn.is_(True),
                )
                .values(captain_turn=False)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                state = await session.get(LiveState, (guild_id, config_id))
                if state is None or state.stage != Stage.PICKING_MANUAL:
                    raise AlreadyTransitioned(f"Pickup {cfg.name} is not in picking")
                raise InvalidPick("It is not your turn to pick")
            if await session.get(QueuedPlayer, (guild_id, config_id, player_id)) is None:
                raise InvalidPick("That player is not added to this pickup")

            rows = await self._team_rows(session, guild_id, config_id)
            if any(r.player_id == player_id for r in rows):
                raise InvalidPick("That player is already on a team")
            team = next(r.team for r in rows if r.player_id == captain_id)
            session.add(TeamAssignment(guild_id=guild_id, pickup_config_id=config_id, player_id=player_id, team=team))
            slots = [
                TeamSlot(player_id=r.player_id, team=r.team, is_captain=r.is_captain, captain_turn=r.player_id == captain_id)
                for r in rows
            ]
            slots.append(TeamSlot(player_id=player_id, team=team))

            auto: list[int] = []
            lone = captain_turns.last_open_team(slots, cfg.team_count, cfg.team_size)
            if lone is not None:
                assigned = {s.player_id for s in slots}
                queued = (
                    await session.execute(
                        select(QueuedPlayer.player_id)
                        .where(QueuedPlayer.guild_id == guild_id, QueuedPlayer.pickup_config_id == config_id)
                        .order_by(QueuedPlayer.added_at, QueuedPlayer.player_id)
                    )
                ).scalars().all()
                leftover = [pid for pid in queued if pid not in assigned]
                free = captain_turns.open_slots(slots, cfg.team_count, cfg.team_size)[lone]
                if len(leftover) <= free:
                    for pid in leftover:
                        session.add(TeamAssignment(guild_id=guild_id, pickup_config_id=config_id, player_id=pid, team=lone))
                        slots.append(TeamSlot(player_id=pid, team=lone))
                    auto = leftover

            next_team = captain_turns.next_captain_team(slots, cfg.team_count, cfg.team_size)
            await session.flush()
            if next_team is not None:
                await self._give_turn(session, guild_id, config_id, next_team)
        return PickResult(team=team, next_team=next_team, auto_assigned=auto)

    async def abort_picking(self, guild_id: int, config_id: int, player_id: int) -> None:
        """Leaving player cancels picking: back to fill, teams cleared, player removed."""
        async with self._transaction() as session:
            await self._set_stage(session, guild_id, config_id, Stage.FILL)
            await self._delete_teams(session, guild_id, config_id)
            await session.execute(
                delete(QueuedPlayer)
                .where(
                    QueuedPlayer.guild_id == guild_id,
                    QueuedPlayer.pickup_config_id == config_id,
                    QueuedPlayer.player_id == player_id,
                )
                .execution_options(synchronize_session=False)
            )
            await self._collect_orphan_states(session, guild_id)

    async def abort_afk_check(self, guild_id: int, config_id: int, player_ids: Sequence[int] = ()) -> None:
        """Back to fill; the given (away) players are removed from this pickup."""
        async with self._transaction() as session:
            await self._set_stage(session, guild_id, config_id, Stage.FILL)
            if player_ids:
                await session.execute(
                    delete(QueuedPlayer)
                    .where(
                        QueuedPlayer.guild_id == guild_id,
                        QueuedPlayer.pickup_config_id == config_id,
                        QueuedPlayer.player_id.in_(list(player_ids)),
                    )
                    .execution_options(synchronize_session=False)
                )
                await self._collect_orphan_states(session, guild_id)
                await self._clear_orphan_timers(session, guild_id, player_ids)

    async def discard_pending_stage(self, guild_id: int, config_id: int) -> None:
        """Drop a failed stage: marker back to fill and partial teams cleared."""
        async with self._transaction() as session:
            await self._set_stage(session, guild_id, config_id, Stage.FILL)
            await self._delete_teams(session, guild_id, config_id)

    # --- away status ---

    async def set_afk(self, guild_id: int, player_ids: Sequence[int]) -> None:
        async with self._transaction() as session:
            for pid in player_ids:
                state = await session.get(PlayerState, (guild_id, pid))
                if state is None:
                    session.add(PlayerState(guild_id=guild_id, player_id=pid, is_afk=True))
                else:
                    state.is_afk = True

    async def clear_afks(self, guild_id: int, player_ids: Sequence[int]) -> None:
        if not player_ids:
            return
        async with self._transaction() as session:
            await session.execute(
                update(PlayerState)
                .where(PlayerState.guild_id == guild_id, PlayerState.player_id.in_(list(player_ids)))
                .values(is_afk=None)
                .execution_options(synchronize_session=False)
            )

    async def afk_players(self, guild_id: int, config_id: int) -> list[int]:
        """Queued players of the pickup currently flagged away."""
        async with self._transaction() as session:
            result = await session.execute(
                select(QueuedPlayer.player_id)
                .join(
                    PlayerState,
                    (PlayerState.guild_id == QueuedPlayer.guild_id) & (PlayerState.player_id == QueuedPlayer.player_id),
                )
                .where(
                    QueuedPlayer.guild_id == guild_id,
                    QueuedPlayer.pickup_config_id == config_id,
                    PlayerState.is_afk.is_(True),
                )
            )
            return list(result.scalars().all())

    async def stale_players(self, guild_id: int, config_id: int, older_than: timedelta) -> list[int]:
        """Queued players whose last add is older than `older_than` (or unknown)."""
        cutoff = utcnow() - older_than
        async with self._transaction() as session:
            result = await session.execute(
                select(QueuedPlayer.player_id, PlayerState.last_add)
                .outerjoin(
                    PlayerState,
                    (PlayerState.guild_id == QueuedPlayer.guild_id) & (PlayerState.player_id == QueuedPlayer.player_id),
                )
                .where(QueuedPlayer.guild_id == guild_id, QueuedPlayer.pickup_config_id == config_id)
            )
            return [pid for pid, last_add in result.all() if last_add is None or as_utc(last_add) < cutoff]

    # --- expiry timers ---

    async def set_expire(self, guild_id: int, player_id: int, minutes: int) -> datetime:
        expires = utcnow() + timedelta(minutes=minutes)
        async with self._transaction() as session:
            await session.merge(PlayerExpire(guild_id=guild_id, player_id=player_id, expiration_date=expires))
        return expires

    async def get_expire(self, guild_id: int, player_id: int) -> Optional[datetime]:
        async with self._transaction() as session:
            row = await session.get(PlayerExpire, (guild_id, player_id))
            return as_utc(row.expiration_date) if row else None

    async def remove_expires(self, guild_id: int, player_ids: Sequence[int]) -> None:
        async with self._transaction() as session:
            await session.execute(
                delete(PlayerExpire)
                .where(PlayerExpire.guild_id == guild_id, PlayerExpire.player_id.in_(list(player_ids)))
                .execution_options(synchronize_session=False)
            )

    async def expired_players(self, now: Optional[datetime] = None) -> list[tuple[int, int]]:
        """(guild_id, player_id) of every expiry timer that has run out."""
        now = now or utcnow()
        async with self._transaction() as session:
            result = await session.execute(
                select(PlayerExpire.guild_id, PlayerExpire.player_id).where(PlayerExpire.expiration_date <= now)
            )
            return [(g, p) for g, p in result.all()]

    # --- configuration ---

    async def create_pickup(
        self,
        guild_id: int,
        name: str,
        player_count: int,
        team_count: int = 2,
        **settings,
    ) -> PickupConfig:
        if player_count < 1:
            raise ValueError("Player count must be positive")
        if team_count < 1 or team_count > player_count:
            raise ValueError("Team count must be between 1 and the player count")
        async with self._transaction() as session:
            existing = await session.execute(
                select(PickupConfig.id).where(
                    PickupConfig.guild_id == guild_id,
                    func.lower(PickupConfig.name) == name.lower(),
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise AlreadyExists(f"Pickup {name} already exists")
            cfg = PickupConfig(guild_id=guild_id, name=name, player_count=player_count, team_count=team_count)
            for key, value in self._parse_settings(settings).items():
                setattr(cfg, key, value)
            session.add(cfg)
            await session.flush()
        logger.info("Created pickup %s (%d players) in guild %s", name, player_count, guild_id)
        return cfg

    def _parse_settings(self, settings: dict) -> dict:
        parsed = {}
        for key, value in settings.items():
            if key not in EDITABLE_SETTINGS:
                raise ValueError(f"Unknown pickup setting: {key}")
            kind = EDITABLE_SETTINGS[key]
            if value is None:
                parsed[key] = None
            elif kind is bool and isinstance(value, str):
                parsed[key] = value.strip().lower() in ("1", "true", "yes", "on")
            else:
                parsed[key] = kind(value)
        return parsed

    async def modify_pickup(self, guild_id: int, pickup: PickupRef, **settings) -> tuple[PickupConfig, bool]:
        """Edit settings. Refused while the pickup is past fill.

        Returns the config and whether the change left the queue exactly full
        (a lifecycle trigger, like AddResult.triggered).
        """
        async with self._transaction() as session:
            cfg = await self._config(session, guild_id, pickup)
            state = await session.get(LiveState, (guild_id, cfg.id))
            if state is not None and state.stage != Stage.FILL:
                raise AlreadyTransitioned(f"Pickup {cfg.name} is in progress")
            for key, value in self._parse_settings(settings).items():
                setattr(cfg, key, value)
            if cfg.player_count < 1 or cfg.team_count < 1 or cfg.team_count > cfg.player_count:
                raise ValueError("Invalid player/team count")
            queued = await self._queued_count(session, guild_id, cfg.id)
            if queued > cfg.player_count:
                raise ValueError("More players are added than the new player count")
        return cfg, queued == cfg.player_count

    async def remove_pickups(self, guild_id: int, pickups: Sequence[PickupRef]) -> list[PickupConfig]:
        """Delete configs and their live state. Returns the deleted configs."""
        removed = []
        async with self._transaction() as session:
            for ref in pickups:
                try:
                    cfg = await self._config(session, guild_id, ref)
                except NotFound:
                    continue
                await self._clear_pickup(session, guild_id, cfg.id)
                await session.delete(cfg)
                removed.append(cfg)
            await self._clear_orphan_timers(session, guild_id)
        return removed

    # --- guild & player settings ---

    async def get_guild_settings(self, guild_id: int) -> GuildSettings:
        async with self._transaction() as session:
            settings = await session.get(GuildSettings, guild_id)
            if settings is None:
                settings = GuildSettings(guild_id=guild_id)
                session.add(settings)
                await session.flush()
            return settings

    async def update_guild_settings(self, guild_id: int, **changes) -> GuildSettings:
        allowed = {"pickup_channel_id", "start_message", "notify_message", "default_expire"}
        async with self._transaction() as session:
            settings = await session.get(GuildSettings, guild_id)
            if settings is None:
                settings = GuildSettings(guild_id=guild_id)
                session.add(settings)
            for key, value in changes.items():
                if key not in allowed:
                    raise ValueError(f"Unknown guild setting: {key}")
                setattr(settings, key, value)
        return settings

    async def set_notifications(self, guild_id: int, player_id: int, enabled: bool, nick: Optional[str] = None) -> None:
        async with self._transaction() as session:
            player = await self._upsert_player(session, guild_id, player_id, nick)
            player.notifications = enabled

    async def players_with_notify(self, guild_id: int, player_ids: Sequence[int]) -> list[int]:
        if not player_ids:
            return []
        async with self._transaction() as session:
            result = await session.execute(
                select(Player.user_id).where(
                    Player.guild_id == guild_id,
                    Player.user_id.in_(list(player_ids)),
                    Player.notifications.is_(True),
                )
            )
            return list(result.scalars().all())
