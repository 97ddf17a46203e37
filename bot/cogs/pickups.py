"""Player commands - /add, /remove, /who, /ready, /pick, /abort, /expire, /notify."""
from __future__ import annotations

import logging
from typing import Optional

import discord
from discord import app_commands

from bot.checks import member_refusal
from bot.errors import AlreadyExists, InvalidPick, NotFound, PickupFull
from bot.models import Stage
from bot.services.announcer import mention, status_line
from bot.services.captain_turns import current_turn
from bot.services.state_store import ActivePickup, AddResult

logger = logging.getLogger("pickups.commands")

# Shown to the user; anything else goes to tree.on_error
USER_ERRORS = (NotFound, AlreadyExists, InvalidPick, PickupFull, ValueError)


def _names(text: Optional[str]) -> list[str]:
    return [n for n in (text or "").replace(",", " ").split() if n]


async def _picking_pickup(bot, guild_id: int, player_id: int, captain: bool) -> ActivePickup:
    """The pickup in picking the player is queued in (as captain when asked)."""
    for config_id, stage in await bot.store.pending_pickups(guild_id):
        if stage != Stage.PICKING_MANUAL:
            continue
        pickup = await bot.store.read_active_pickup(guild_id, config_id)
        if captain and player_id in pickup.captains():
            return pickup
        if not captain and player_id in pickup.player_ids:
            return pickup
    raise NotFound("You are not in a pickup that is picking teams")


@app_commands.command(description="Add yourself to pickups (default pickups when none given)")
@app_commands.describe(pickups="Pickup names, space separated")
@app_commands.guild_only()
async def add(interaction: discord.Interaction, pickups: Optional[str] = None) -> None:
    bot = interaction.client
    guild_id = interaction.guild_id
    try:
        if _names(pickups):
            configs = [await bot.store.get_pickup_config(guild_id, name) for name in _names(pickups)]
        else:
            configs = [c for c in await bot.store.list_pickups(guild_id) if c.is_default_pickup]
    except USER_ERRORS as e:
        await interaction.response.send_message(str(e), ephemeral=True)
        return
    if not configs:
        await interaction.response.send_message("No pickup given and no default pickups configured.", ephemeral=True)
        return

    refused = {}
    allowed = []
    for cfg in configs:
        reason = member_refusal(interaction, cfg)
        if reason:
            refused[cfg.name] = reason
        else:
            allowed.append(cfg.id)

    result = AddResult()
    if allowed:
        result = await bot.store.add_players(guild_id, interaction.user.id, allowed, nick=interaction.user.display_name)
    ctx = bot.contexts.get(guild_id)
    for config_id in result.triggered:
        logger.info("Pickup %s full in guild %s", config_id, guild_id)
        bot.spawn(bot.lifecycle.handle(ctx, config_id))

    lines = []
    if result.added:
        lines.append(f"Added to {', '.join(f'**{n}**' for n in result.added)}")
    for name, reason in {**refused, **result.skipped}.items():
        lines.append(f"Not added to **{name}**: {reason}")
    await interaction.response.send_message("\n".join(lines), ephemeral=not result.added)


@app_commands.command(description="Remove yourself from pickups (all when none given)")
@app_commands.describe(pickups="Pickup names, space separated")
@app_commands.guild_only()
async def remove(interaction: discord.Interaction, pickups: Optional[str] = None) -> None:
    bot = interaction.client
    try:
        affected, aborted = await bot.store.remove_players(interaction.guild_id, [interaction.user.id], _names(pickups))
    except USER_ERRORS as e:
        await interaction.response.send_message(str(e), ephemeral=True)
        return
    ctx = bot.contexts.get(interaction.guild_id)
    for config_id in aborted:
        ctx.wake(config_id)
    if not affected:
        await interaction.response.send_message("You are not added to any of those pickups.", ephemeral=True)
        return
    await interaction.response.send_message(f"{interaction.user.display_name} removed from {len(affected)} pickup(s)")


@app_commands.command(description="Show who is added")
@app_commands.describe(pickup="Only this pickup")
@app_commands.guild_only()
async def who(interaction: discord.Interaction, pickup: Optional[str] = None) -> None:
    bot = interaction.client
    try:
        if pickup:
            active = [await bot.store.read_active_pickup(interaction.guild_id, pickup)]
        else:
            active = await bot.store.active_pickups(interaction.guild_id)
    except USER_ERRORS as e:
        await interaction.response.send_message(str(e), ephemeral=True)
        return
    if not active:
        await interaction.response.send_message("No one is added to any pickup.", ephemeral=True)
        return
    await interaction.response.send_message("\n".join(status_line(p) for p in active))


@app_commands.command(description="Confirm you are not away")
@app_commands.guild_only()
async def ready(interaction: discord.Interaction) -> None:
    bot = interaction.client
    checking = await bot.afk_check.confirm(bot.contexts.get(interaction.guild_id), interaction.user.id)
    msg = "You are marked ready." if checking else "You are marked ready (no away check running)."
    await interaction.response.send_message(msg, ephemeral=True)


@app_commands.command(description="Pick a player for your team")
@app_commands.describe(player="Player to pick")
@app_commands.guild_only()
async def pick(interaction: discord.Interaction, player: discord.Member) -> None:
    bot = interaction.client
    ctx = bot.contexts.get(interaction.guild_id)
    try:
        pickup = await _picking_pickup(bot, interaction.guild_id, interaction.user.id, captain=True)
        result = await bot.picking.pick(ctx, pickup.config_id, interaction.user.id, player.id)
    except USER_ERRORS as e:
        await interaction.response.send_message(str(e), ephemeral=True)
        return

    lines = [f"{mention(player.id)} picked for team {result.team}"]
    if result.auto_assigned:
        lines.append(f"{', '.join(mention(p) for p in result.auto_assigned)} go to the remaining team")
    if not result.done:
        updated = await bot.store.read_active_pickup(interaction.guild_id, pickup.config_id)
        turn = current_turn(updated.teams)
        captain = next((t.player_id for t in updated.teams if t.team == turn and t.captain_turn), None)
        if captain is not None:
            lines.append(f"{mention(captain)} your pick")
    await interaction.response.send_message("\n".join(lines))


@app_commands.command(description="Leave the pickup you are picking teams in")
@app_commands.guild_only()
async def abort(interaction: discord.Interaction) -> None:
    bot = interaction.client
    try:
        pickup = await _picking_pickup(bot, interaction.guild_id, interaction.user.id, captain=False)
        await bot.store.abort_picking(interaction.guild_id, pickup.config_id, interaction.user.id)
    except USER_ERRORS as e:
        await interaction.response.send_message(str(e), ephemeral=True)
        return
    bot.contexts.get(interaction.guild_id).wake(pickup.config_id)
    await interaction.response.send_message(
        f"{interaction.user.display_name} left **{pickup.name}**, picking cancelled and the pickup is open again"
    )


@app_commands.command(description="Remove yourself from all pickups after some minutes (0 cancels)")
@app_commands.describe(minutes="Minutes from now")
@app_commands.guild_only()
async def expire(interaction: discord.Interaction, minutes: app_commands.Range[int, 0, 24 * 60]) -> None:
    bot = interaction.client
    if minutes == 0:
        await bot.store.remove_expires(interaction.guild_id, [interaction.user.id])
        await interaction.response.send_message("Expiry removed.", ephemeral=True)
        return
    expires = await bot.store.set_expire(interaction.guild_id, interaction.user.id, minutes)
    await interaction.response.send_message(
        f"You will be removed from all pickups {discord.utils.format_dt(expires, 'R')}.", ephemeral=True
    )


@app_commands.command(description="Get a direct message when your pickup starts")
@app_commands.describe(enabled="On or off")
@app_commands.guild_only()
async def notify(interaction: discord.Interaction, enabled: bool) -> None:
    bot = interaction.client
    await bot.store.set_notifications(
        interaction.guild_id, interaction.user.id, enabled, nick=interaction.user.display_name
    )
    await interaction.response.send_message(
        f"Start notifications {'enabled' if enabled else 'disabled'}.", ephemeral=True
    )


COMMANDS = [add, remove, who, ready, pick, abort, expire, notify]
