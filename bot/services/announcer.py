"""Start announcement and notification delivery.

Rendering is a plain token substitution over guild templates. Delivery is
best-effort: every send is isolated, failures are logged and never raised.
"""
from __future__ import annotations

import logging
import re
from typing import Mapping, Optional, Protocol, Sequence

import discord

from bot.context import GuildContext
from bot.errors import DeliveryFailure, PickupError
from bot.models import Stage
from bot.services.captain_turns import team_labels
from bot.services.state_store import ActivePickup, StateStore

logger = logging.getLogger("pickups.announcer")

_TOKEN = re.compile(r"\{(\w+)\}")


def render(template: Optional[str], context: Mapping[str, object]) -> str:
    """Substitute {token}s. Unknown tokens are left as they are. Empty result = do not send."""
    if not template:
        return ""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in context:
            return match.group(0)
        return str(context[key])

    return _TOKEN.sub(_sub, template).strip()


def mention(player_id: int) -> str:
    return f"<@{player_id}>"


def status_line(pickup: ActivePickup) -> str:
    names = ", ".join(p.nick or str(p.id) for p in pickup.players)
    stage = f" ({pickup.stage.value})" if pickup.stage and pickup.stage != Stage.FILL else ""
    return f"**{pickup.name}** [{len(pickup.players)}/{pickup.config.player_count}]{stage}: {names or '-'}"


def build_start_context(
    pickup: ActivePickup,
    teams: Optional[Sequence[Sequence[int]]] = None,
    captains: Optional[Sequence[int]] = None,
) -> dict[str, object]:
    """Template context for start and notify messages."""
    captain_set = set(captains or ())
    lines = []
    if teams:
        for label, members in zip(team_labels(len(teams)), teams):
            names = [mention(pid) + (" (c)" if pid in captain_set else "") for pid in members]
            lines.append(f"**Team {label}**: {', '.join(names) or '-'}")
    return {
        "pickup": pickup.name,
        "players": ", ".join(mention(pid) for pid in pickup.player_ids),
        "teams": "\n".join(lines),
        "captains": ", ".join(mention(pid) for pid in captains or ()),
        "count": len(pickup.players),
    }


class Announcer(Protocol):
    async def send_start(self, ctx: GuildContext, message: str) -> None: ...

    async def send_notice(self, ctx: GuildContext, message: str) -> None: ...

    async def send_direct(self, ctx: GuildContext, player_id: int, message: str) -> None: ...


class DiscordAnnouncer:
    """Posts to the guild's pickup channel and DMs members."""

    def __init__(self, client: discord.Client, store: StateStore):
        self._client = client
        self._store = store

    async def _pickup_channel(self, guild_id: int) -> discord.abc.Messageable:
        settings = await self._store.get_guild_settings(guild_id)
        if not settings.pickup_channel_id:
            raise DeliveryFailure(f"No pickup channel set in guild {guild_id}")
        channel = self._client.get_channel(settings.pickup_channel_id)
        if channel is None:
            channel = await self._client.fetch_channel(settings.pickup_channel_id)
        return channel

    async def _send_channel(self, ctx: GuildContext, message: str) -> None:
        if not message:
            return
        try:
            channel = await self._pickup_channel(ctx.guild_id)
            await channel.send(message)
        except (discord.DiscordException, PickupError) as e:
            logger.warning("Could not post to pickup channel of guild %s: %s", ctx.guild_id, e)

    async def send_start(self, ctx: GuildContext, message: str) -> None:
        await self._send_channel(ctx, message)

    async def send_notice(self, ctx: GuildContext, message: str) -> None:
        await self._send_channel(ctx, message)

    async def send_direct(self, ctx: GuildContext, player_id: int, message: str) -> None:
        if not message:
            return
        try:
            guild = self._client.get_guild(ctx.guild_id)
            member = guild.get_member(player_id) if guild else None
            if member is None:
                raise DeliveryFailure(f"Member {player_id} not cached")
            await member.send(message)
        except (discord.DiscordException, DeliveryFailure) as e:
            logger.warning("Could not DM player %s in guild %s: %s", player_id, ctx.guild_id, e)
