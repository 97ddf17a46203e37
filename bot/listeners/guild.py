"""Guild lifecycle listeners and the expiry sweeper."""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Optional

import discord
from discord.ext import commands, tasks

import config
from bot.context import GuildContexts
from bot.errors import PickupError
from bot.services.announcer import Announcer, mention
from bot.services.state_store import StateStore

logger = logging.getLogger("pickups.listeners")


async def sweep_expired(
    store: StateStore,
    contexts: GuildContexts,
    announcer: Announcer,
    now: Optional[datetime] = None,
) -> dict[int, list[int]]:
    """Remove players whose expiry ran out from every pickup. Returns guild -> removed players."""
    by_guild: dict[int, list[int]] = defaultdict(list)
    for guild_id, player_id in await store.expired_players(now):
        by_guild[guild_id].append(player_id)

    for guild_id, players in by_guild.items():
        ctx = contexts.get(guild_id)
        affected, aborted = await store.remove_players(guild_id, players)
        for config_id in aborted:
            ctx.wake(config_id)
        if affected:
            await announcer.send_notice(
                ctx, f"{', '.join(mention(p) for p in players)} removed from all pickups (expired)"
            )
        logger.info("Expired %d player(s) in guild %s", len(players), guild_id)
    return dict(by_guild)


def setup(bot: commands.Bot) -> None:
    """Register guild listeners and start the expiry sweeper."""

    async def on_ready() -> None:
        if bot.resumed:
            return
        bot.resumed = True
        for guild in bot.guilds:
            bot.spawn(bot.lifecycle.resume(bot.contexts.get(guild.id)))

    async def on_guild_join(guild: discord.Guild) -> None:
        try:
            await bot.store.get_guild_settings(guild.id)
            logger.info("Joined guild %s (%s)", guild.name, guild.id)
        except PickupError as e:
            logger.warning("Could not store settings for guild %s: %s", guild.id, e)

    async def on_guild_remove(guild: discord.Guild) -> None:
        bot.contexts.drop(guild.id)

    @tasks.loop(seconds=config.EXPIRE_SWEEP_SECONDS)
    async def expire_sweep() -> None:
        try:
            await sweep_expired(bot.store, bot.contexts, bot.announcer)
        except PickupError:
            logger.exception("Expiry sweep failed")

    @expire_sweep.before_loop
    async def _before_sweep() -> None:
        await bot.wait_until_ready()

    bot.add_listener(on_ready, "on_ready")
    bot.add_listener(on_guild_join, "on_guild_join")
    bot.add_listener(on_guild_remove, "on_guild_remove")
    expire_sweep.start()
    bot.expire_sweep = expire_sweep
