"""Pickup lifecycle: what happens once a pickup is full.

    fill -> (afk_check) -> dispatch{no_teams | manual | elo} -> started
                                                          \\-> reset

Dispatch runs an ordered list of fallback tiers for the pickup's pick mode.
The first tier that returns ends the cascade; a failing tier posts its notice
and hands over to the next one; when every tier failed the pickup is reset.
A reset only ever happens before the players were dequeued: once
take_players_for_start committed, nothing in start_pickup raises.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Optional, Sequence

import config
from bot.context import GuildContext
from bot.errors import CollaboratorFailure, NotFound, PickupError
from bot.models import PickMode, PickupConfig, Stage
from bot.services.announcer import Announcer, build_start_context, render, status_line
from bot.services.match_recorder import MatchRecorder
from bot.services.stages import AwayCheck, ManualPicking, StageOutcome, TeamGenerator
from bot.services.state_store import ActivePickup, StateStore

logger = logging.getLogger("pickups.lifecycle")

Teams = Optional[Sequence[Sequence[int]]]


@dataclass(frozen=True)
class FallbackTier:
    name: str
    attempt: Callable[[GuildContext, PickupConfig], Awaitable[StageOutcome]]
    notice: Optional[str] = None  # posted when the attempt fails, {pickup} is the pickup name


class PickupLifecycle:
    def __init__(
        self,
        store: StateStore,
        announcer: Announcer,
        recorder: MatchRecorder,
        afk_check: AwayCheck,
        picking: ManualPicking,
        team_generator: Optional[TeamGenerator] = None,
    ):
        self.store = store
        self.announcer = announcer
        self.recorder = recorder
        self.afk_check = afk_check
        self.picking = picking
        self.team_generator = team_generator

    # --- triggers ---

    async def handle(self, ctx: GuildContext, config_id: int) -> None:
        """Entry point once add_players reported the pickup full. Never raises."""
        try:
            cfg = await self.store.get_pickup_config(ctx.guild_id, config_id)
            if cfg.afk_check:
                await self.store.set_stage(
                    ctx.guild_id, cfg.id, Stage.AFK_CHECK, expected=Stage.FILL, require_full=True
                )
        except NotFound:
            logger.info("Trigger for pickup %s in guild %s already handled", config_id, ctx.guild_id)
            return
        except PickupError:
            logger.exception("Could not start the lifecycle of pickup %s in guild %s", config_id, ctx.guild_id)
            return

        if cfg.afk_check and not await self._check_afk(ctx, cfg, must_send_initial=True):
            return
        await self.dispatch(ctx, cfg)

    async def resume(self, ctx: GuildContext) -> None:
        """Pick up where a previous process stopped: re-enter pending stages, re-trigger full pickups."""
        try:
            pending = await self.store.pending_pickups(ctx.guild_id)
        except PickupError:
            logger.exception("Could not read pending pickups of guild %s", ctx.guild_id)
            return

        jobs = []
        for config_id, stage in pending:
            if stage == Stage.FILL:
                jobs.append(self._resume_fill(ctx, config_id))
            else:
                jobs.append(self._resume_stage(ctx, config_id, stage))
        if jobs:
            logger.info("Resuming %d pickup(s) in guild %s", len(jobs), ctx.guild_id)
            await asyncio.gather(*jobs)

    async def _resume_fill(self, ctx: GuildContext, config_id: int) -> None:
        try:
            pickup = await self.store.read_active_pickup(ctx.guild_id, config_id)
        except PickupError:
            logger.exception("Could not resume pickup %s in guild %s", config_id, ctx.guild_id)
            return
        if pickup.is_full:
            await self.handle(ctx, config_id)

    async def _resume_stage(self, ctx: GuildContext, config_id: int, stage: Stage) -> None:
        try:
            cfg = await self.store.get_pickup_config(ctx.guild_id, config_id)
        except PickupError:
            logger.exception("Could not resume pickup %s in guild %s", config_id, ctx.guild_id)
            return
        if stage == Stage.AFK_CHECK:
            if not await self._check_afk(ctx, cfg, must_send_initial=False):
                return
            await self.dispatch(ctx, cfg)
        else:
            await self.dispatch(ctx, cfg, must_send_initial=False)

    # --- away check ---

    async def _check_afk(self, ctx: GuildContext, cfg: PickupConfig, must_send_initial: bool) -> bool:
        """Run the away check. True when dispatch should follow."""
        try:
            outcome = await self.afk_check.run(ctx, cfg.id, must_send_initial)
        except NotFound:
            logger.info("Pickup %s in guild %s is gone, away check stopped", cfg.name, ctx.guild_id)
            return False
        except Exception:
            logger.exception("Away check failed for %s in guild %s", cfg.name, ctx.guild_id)
            try:
                pickup = await self.store.read_active_pickup(ctx.guild_id, cfg.id)
                await self.store.clear_afks(ctx.guild_id, pickup.player_ids)
            except PickupError:
                logger.exception("Could not clear away flags of %s", cfg.name)
            await self._notice(
                ctx,
                f"afk check failed, attempting to progress to the next stage for **pickup {cfg.name}** without checking",
            )
            return True
        if outcome == StageOutcome.ABORTED:
            logger.info("Away check for %s ended without start", cfg.name)
            return False
        return True

    # --- dispatch ---

    def tiers(self, cfg: PickupConfig, must_send_initial: bool = True) -> list[FallbackTier]:
        if cfg.pick_mode == PickMode.MANUAL:
            return [
                FallbackTier(
                    "manual",
                    partial(self._pick_and_start, must_send_initial=must_send_initial),
                    "something went wrong with **pickup {pickup}** in picking phase, attempting to start without teams",
                ),
                FallbackTier(
                    "no_teams",
                    self._discard_and_start,
                    "something went wrong starting **pickup {pickup}** without teams, pickup cleared",
                ),
            ]
        if cfg.pick_mode == PickMode.ELO:
            return [
                FallbackTier(
                    "elo",
                    self._generate_and_start,
                    "could not generate teams for **pickup {pickup}**, attempting to start without teams",
                ),
                FallbackTier(
                    "no_teams",
                    self._start_without_teams,
                    "something went wrong starting **pickup {pickup}** without teams, pickup cleared",
                ),
            ]
        return [
            FallbackTier(
                "no_teams",
                self._start_without_teams,
                "something went wrong starting the pickup, **pickup {pickup}** cleared",
            )
        ]

    async def dispatch(self, ctx: GuildContext, cfg: PickupConfig, must_send_initial: bool = True) -> None:
        for tier in self.tiers(cfg, must_send_initial):
            try:
                outcome = await tier.attempt(ctx, cfg)
            except NotFound:
                logger.info("Pickup %s moved on during %s, nothing to do", cfg.name, tier.name)
                await self._release(ctx, cfg)
                return
            except Exception:
                logger.exception("Tier %s failed for %s in guild %s", tier.name, cfg.name, ctx.guild_id)
                if tier.notice:
                    await self._notice(ctx, render(tier.notice, {"pickup": cfg.name}))
                continue
            if outcome == StageOutcome.ABORTED:
                logger.info("Pickup %s went back to fill during %s", cfg.name, tier.name)
            return
        await self.reset_pickup(ctx, cfg)

    async def _release(self, ctx: GuildContext, cfg: PickupConfig) -> None:
        """A stage left behind by a pickup that is no longer full goes back to fill."""
        try:
            released = await self.store.release_stage(ctx.guild_id, cfg.id)
        except NotFound:
            return
        except PickupError:
            logger.exception("Could not release the stage of %s in guild %s", cfg.name, ctx.guild_id)
            return
        if released:
            ctx.wake(cfg.id)

    async def _start_without_teams(self, ctx: GuildContext, cfg: PickupConfig) -> StageOutcome:
        return await self.start_pickup(ctx, cfg.id)

    async def _pick_and_start(self, ctx: GuildContext, cfg: PickupConfig, must_send_initial: bool) -> StageOutcome:
        if must_send_initial:
            expected = Stage.AFK_CHECK if cfg.afk_check else Stage.FILL
            await self.store.set_stage(
                ctx.guild_id, cfg.id, Stage.PICKING_MANUAL, expected=expected, require_full=True
            )
        outcome = await self.picking.run(ctx, cfg.id, must_send_initial)
        if outcome == StageOutcome.ABORTED:
            return outcome
        pickup = await self.store.read_active_pickup(ctx.guild_id, cfg.id)
        return await self.start_pickup(ctx, cfg.id, pickup.rosters(), pickup.captains())

    async def _discard_and_start(self, ctx: GuildContext, cfg: PickupConfig) -> StageOutcome:
        await self.store.discard_pending_stage(ctx.guild_id, cfg.id)
        return await self.start_pickup(ctx, cfg.id)

    async def _generate_and_start(self, ctx: GuildContext, cfg: PickupConfig) -> StageOutcome:
        if self.team_generator is None:
            raise CollaboratorFailure("No team generator configured")
        pickup = await self.store.read_active_pickup(ctx.guild_id, cfg.id)
        teams = [list(team) for team in await self.team_generator.generate(pickup)]
        if sorted(pid for team in teams for pid in team) != sorted(pickup.player_ids):
            raise CollaboratorFailure(f"Generated teams do not match the players of {cfg.name}")
        return await self.start_pickup(ctx, cfg.id, teams)

    # --- start & reset ---

    async def start_pickup(
        self,
        ctx: GuildContext,
        config_id: int,
        teams: Teams = None,
        captains: Optional[Sequence[int]] = None,
    ) -> StageOutcome:
        """Dequeue, announce, notify, record.

        Raises only before the players were dequeued. Afterwards every failure
        is logged (and the recorder failure posted) but the pickup counts as
        started.
        """
        pickup, aborted = await self.store.take_players_for_start(ctx.guild_id, config_id)
        for other in aborted:
            ctx.wake(other)
        logger.info("Pickup %s started in guild %s (%d players)", pickup.name, ctx.guild_id, len(pickup.players))

        await self._announce(ctx, pickup, teams, captains)

        try:
            await self.recorder.store(pickup, teams, captains)
        except Exception:
            logger.exception("Could not store pickup %s", pickup.name)
            await self._notice(ctx, f"something went wrong storing the **{pickup.name}** pickup, pickup not stored")
        return StageOutcome.COMPLETED

    async def _announce(self, ctx: GuildContext, pickup: ActivePickup, teams: Teams, captains) -> None:
        """Start message, pickup status refresh, then DMs. Each step fails on its own."""
        start_template = config.DEFAULT_START_MESSAGE
        notify_template = config.DEFAULT_NOTIFY_MESSAGE
        try:
            settings = await self.store.get_guild_settings(ctx.guild_id)
            start_template = settings.start_message or start_template
            notify_template = settings.notify_message or notify_template
        except PickupError as e:
            logger.warning("Using default templates for guild %s: %s", ctx.guild_id, e)

        context = build_start_context(pickup, teams, captains)
        message = render(start_template, context)
        if message:
            try:
                await self.announcer.send_start(ctx, message)
            except Exception:
                logger.exception("Could not announce pickup %s", pickup.name)

        await self.show_status(ctx)

        direct = render(notify_template, context)
        if not direct:
            return
        try:
            recipients = await self.store.players_with_notify(ctx.guild_id, pickup.player_ids)
        except PickupError as e:
            logger.warning("Could not read notification settings in guild %s: %s", ctx.guild_id, e)
            return
        for player_id in recipients:
            try:
                await self.announcer.send_direct(ctx, player_id, direct)
            except Exception:
                logger.exception("Could not notify player %s of %s", player_id, pickup.name)

    async def show_status(self, ctx: GuildContext) -> None:
        """Post who is still added to the guild's pickups (nothing when all queues are empty)."""
        try:
            active = await self.store.active_pickups(ctx.guild_id)
        except PickupError as e:
            logger.warning("Could not read pickup status of guild %s: %s", ctx.guild_id, e)
            return
        if active:
            await self._notice(ctx, "\n".join(status_line(p) for p in active))

    async def remove_pickups(self, ctx: GuildContext, names: Sequence[str]) -> list[str]:
        """Delete pickups; stage handlers still running for them are woken and stop."""
        removed = await self.store.remove_pickups(ctx.guild_id, names)
        for cfg in removed:
            ctx.wake(cfg.id)
        return [cfg.name for cfg in removed]

    async def reset_pickup(self, ctx: GuildContext, cfg: PickupConfig, notice: Optional[str] = None) -> None:
        """Full reset: players must add again. Running stage handlers see the pickup gone and stop."""
        try:
            await self.store.reset_pickup(ctx.guild_id, cfg.id)
        except PickupError:
            logger.exception("Could not reset pickup %s in guild %s", cfg.name, ctx.guild_id)
            return
        ctx.wake(cfg.id)
        if notice:
            await self._notice(ctx, notice)

    async def _notice(self, ctx: GuildContext, message: str) -> None:
        try:
            await self.announcer.send_notice(ctx, message)
        except Exception:
            logger.exception("Could not post notice in guild %s", ctx.guild_id)
