"""Pickup administration - /pickup create|delete|set|reset|channel|message."""
from __future__ import annotations

from typing import Literal, Optional

import discord
from discord import app_commands

from bot.errors import AlreadyExists, AlreadyTransitioned, NotFound
from bot.models import PickMode
from bot.services.state_store import EDITABLE_SETTINGS

ADMIN_ERRORS = (NotFound, AlreadyExists, AlreadyTransitioned, ValueError)

pickup_group = app_commands.Group(
    name="pickup",
    description="Pickup administration",
    guild_only=True,
    default_permissions=discord.Permissions(manage_guild=True),
)


@pickup_group.command(name="create", description="Create a pickup")
@app_commands.describe(
    name="Pickup name",
    player_count="Players needed to start",
    team_count="Number of teams",
    pick_mode="How teams are formed",
    afk_check="Check for away players before starting",
)
async def create(
    interaction: discord.Interaction,
    name: str,
    player_count: app_commands.Range[int, 1, 100],
    team_count: app_commands.Range[int, 1, 16] = 2,
    pick_mode: Literal["no_teams", "manual", "elo"] = "no_teams",
    afk_check: bool = False,
) -> None:
    bot = interaction.client
    try:
        cfg = await bot.store.create_pickup(
            interaction.guild_id,
            name,
            player_count,
            team_count,
            pick_mode=PickMode(pick_mode),
            afk_check=afk_check,
        )
    except ADMIN_ERRORS as e:
        await interaction.response.send_message(str(e), ephemeral=True)
        return
    await interaction.response.send_message(
        f"Pickup **{cfg.name}** created ({cfg.player_count} players, {cfg.team_count} teams, {cfg.pick_mode.value})"
    )


@pickup_group.command(name="delete", description="Delete pickups and their state")
@app_commands.describe(names="Pickup names, space separated")
async def delete(interaction: discord.Interaction, names: str) -> None:
    bot = interaction.client
    ctx = bot.contexts.get(interaction.guild_id)
    removed = await bot.lifecycle.remove_pickups(ctx, names.replace(",", " ").split())
    if not removed:
        await interaction.response.send_message("No such pickup.", ephemeral=True)
        return
    await interaction.response.send_message(f"Deleted {', '.join(f'**{n}**' for n in removed)}")


@pickup_group.command(name="set", description="Change a pickup setting")
@app_commands.describe(name="Pickup name", key="Setting", value="New value (none to clear)")
@app_commands.choices(key=[app_commands.Choice(name=k, value=k) for k in EDITABLE_SETTINGS])
async def set_(interaction: discord.Interaction, name: str, key: str, value: str) -> None:
    bot = interaction.client
    parsed: Optional[str] = None if value.strip().lower() in ("none", "null", "") else value.strip()
    try:
        cfg, triggered = await bot.store.modify_pickup(interaction.guild_id, name, **{key: parsed})
    except ADMIN_ERRORS as e:
        await interaction.response.send_message(str(e), ephemeral=True)
        return
    if triggered:
        bot.spawn(bot.lifecycle.handle(bot.contexts.get(interaction.guild_id), cfg.id))
    await interaction.response.send_message(f"**{cfg.name}**: {key} set to {getattr(cfg, key)}", ephemeral=True)


@pickup_group.command(name="reset", description="Clear a pickup: everyone is removed")
@app_commands.describe(name="Pickup name")
async def reset(interaction: discord.Interaction, name: str) -> None:
    bot = interaction.client
    try:
        cfg = await bot.store.get_pickup_config(interaction.guild_id, name)
    except ADMIN_ERRORS as e:
        await interaction.response.send_message(str(e), ephemeral=True)
        return
    await bot.lifecycle.reset_pickup(bot.contexts.get(interaction.guild_id), cfg)
    await interaction.response.send_message(f"**{cfg.name}** reset")


@pickup_group.command(name="channel", description="Channel for start announcements and notices")
@app_commands.describe(channel="Pickup channel (this channel when empty)")
async def channel(interaction: discord.Interaction, channel: Optional[discord.TextChannel] = None) -> None:
    bot = interaction.client
    target = channel.id if channel else interaction.channel_id
    await bot.store.update_guild_settings(interaction.guild_id, pickup_channel_id=target)
    await interaction.response.send_message(f"Pickup channel set to <#{target}>", ephemeral=True)


@pickup_group.command(name="message", description="Start or notify message template")
@app_commands.describe(
    which="Message to change",
    template="Tokens: {pickup} {players} {teams} {captains} {count}; empty restores the default",
)
async def message(
    interaction: discord.Interaction,
    which: Literal["start", "notify"],
    template: Optional[str] = None,
) -> None:
    bot = interaction.client
    await bot.store.update_guild_settings(interaction.guild_id, **{f"{which}_message": template or None})
    await interaction.response.send_message(f"{which.capitalize()} message updated.", ephemeral=True)
