"""Main bot entry point."""
import asyncio
import logging

import discord
from discord import app_commands
from discord.ext import commands

import config
from bot.checks import role_member_ids
from bot.cogs import pickup_admin, pickups
from bot.context import GuildContexts
from bot.errors import PickupError
from bot.listeners import guild as guild_listeners
from bot.models import init_db
from bot.models.base import async_session_factory
from bot.services.afk_check import AfkCheckStage
from bot.services.announcer import DiscordAnnouncer
from bot.services.lifecycle import PickupLifecycle
from bot.services.manual_picking import ManualPickingStage
from bot.services.match_recorder import MatchRecorder
from bot.services.state_store import StateStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("pickups")

intents = discord.Intents.default()
intents.members = True  # Required for captain/whitelist roles; enable in Developer Portal → Bot → Server Members Intent


class PickupBot(commands.Bot):
    """Pickup Discord bot."""

    def __init__(self):
        super().__init__(
            command_prefix="!",
            intents=intents,
            chunk_guilds_at_startup=True,  # Populate member cache so role lookups work
        )
        self.store = StateStore(async_session_factory)
        self.contexts = GuildContexts()
        self.announcer = DiscordAnnouncer(self, self.store)
        self.afk_check = AfkCheckStage(self.store, self.announcer)
        self.picking = ManualPickingStage(
            self.store,
            self.announcer,
            captain_candidates=lambda ctx, pickup: role_member_ids(
                self.get_guild(ctx.guild_id), pickup.config.captain_role
            ),
        )
        self.lifecycle = PickupLifecycle(
            self.store,
            self.announcer,
            MatchRecorder(async_session_factory),
            self.afk_check,
            self.picking,
        )
        self.resumed = False
        self.expire_sweep = None
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro) -> asyncio.Task:
        """Run a lifecycle coroutine in the background, keeping a reference until it finishes."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def setup_hook(self) -> None:
        """Setup before connecting."""
        await init_db()

        # Add commands
        for command in pickups.COMMANDS:
            self.tree.add_command(command)
        self.tree.add_command(pickup_admin.pickup_group)

        # Sync commands
        await self.tree.sync()
        logger.info("Commands synced")

        # Global error handler: always respond so Discord doesn't show "application did not respond"
        async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError) -> None:
            msg = "Something went wrong. Check bot logs."
            if isinstance(error, app_commands.errors.CheckFailure):
                msg = "You don't have permission to use this command."
            elif isinstance(error, app_commands.CommandInvokeError) and isinstance(error.original, PickupError):
                logger.warning("Command %s failed: %s", interaction.command and interaction.command.name, error.original)
            else:
                logger.exception("Command error: %s", error)
            try:
                if interaction.response.is_done():
                    await interaction.followup.send(msg, ephemeral=True)
                else:
                    await interaction.response.send_message(msg, ephemeral=True)
            except discord.DiscordException as e:
                logger.warning("Could not report command error: %s", e)

        self.tree.on_error = on_app_command_error

        # on_ready resume, guild join/remove, expiry sweeper
        guild_listeners.setup(self)

    async def close(self) -> None:
        """Cleanup on shutdown."""
        if self.expire_sweep is not None:
            self.expire_sweep.cancel()
        for task in list(self._tasks):
            task.cancel()
        await super().close()


def main() -> None:
    """Run the bot."""
    if not config.DISCORD_TOKEN:
        raise ValueError("DISCORD_TOKEN is required")

    bot = PickupBot()
    bot.run(config.DISCORD_TOKEN)


if __name__ == "__main__":
    main()
