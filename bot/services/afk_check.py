"""Away check stage.

Players whose last add is older than the afk time are flagged away and must
confirm with /ready. The stage polls the store: it wakes on every
confirmation, and on every reminder interval without one it bumps the stage
iteration. When iterations run out the players still away are removed and the
pickup goes back to fill.
"""
from __future__ import annotations

import logging
from datetime import timedelta

import config
from bot.context import GuildContext
from bot.models import Stage
from bot.services.announcer import Announcer, mention
from bot.services.stages import StageOutcome
from bot.services.state_store import StateStore

logger = logging.getLogger("pickups.afk_check")


class AfkCheckStage:
    def __init__(
        self,
        store: StateStore,
        announcer: Announcer,
        afk_time: int = config.AFK_TIME,
        interval: float = config.AFK_CHECK_INTERVAL,
        max_iterations: int = config.AFK_CHECK_ITERATIONS,
    ):
        self.store = store
        self.announcer = announcer
        self.afk_time = afk_time
        self.interval = interval
        self.max_iterations = max_iterations

    async def run(self, ctx: GuildContext, config_id: int, must_send_initial: bool) -> StageOutcome:
        pickup = await self.store.read_active_pickup(ctx.guild_id, config_id)
        if pickup.stage != Stage.AFK_CHECK:
            return StageOutcome.ABORTED
        if must_send_initial:
            stale = await self.store.stale_players(ctx.guild_id, config_id, timedelta(seconds=self.afk_time))
            if stale:
                await self.store.set_afk(ctx.guild_id, stale)

        remind = must_send_initial
        while True:
            pickup = await self.store.read_active_pickup(ctx.guild_id, config_id)
            if pickup.stage != Stage.AFK_CHECK:
                return StageOutcome.ABORTED
            away = await self.store.afk_players(ctx.guild_id, config_id)
            if not away:
                logger.info("Away check passed for %s in guild %s", pickup.name, ctx.guild_id)
                return StageOutcome.COMPLETED

            if remind:
                await self.announcer.send_notice(
                    ctx,
                    f"**{pickup.name}** is about to start, {', '.join(mention(p) for p in away)} "
                    f"use /ready to confirm you are there",
                )
            if await ctx.wait(config_id, self.interval):
                remind = False
                continue

            iteration = await self.store.increment_iteration(ctx.guild_id, config_id)
            if iteration >= self.max_iterations:
                await self.store.abort_afk_check(ctx.guild_id, config_id, away)
                await self.announcer.send_notice(
                    ctx,
                    f"{', '.join(mention(p) for p in away)} removed from **{pickup.name}** for being away",
                )
                logger.info("Away check for %s removed %d player(s)", pickup.name, len(away))
                return StageOutcome.ABORTED
            remind = True

    async def confirm(self, ctx: GuildContext, player_id: int) -> list[int]:
        """Clear the player's away flag and wake every running away check in the guild."""
        await self.store.clear_afks(ctx.guild_id, [player_id])
        checking = [cid for cid, stage in await self.store.pending_pickups(ctx.guild_id) if stage == Stage.AFK_CHECK]
        for config_id in checking:
            ctx.wake(config_id)
        return checking
