"""Role restrictions of pickups (whitelist, blacklist, captain role)."""
from __future__ import annotations

from typing import Iterable, Optional

import discord

from bot.models import PickupConfig


def _get_member(interaction: discord.Interaction) -> discord.Member | None:
    """Get Member from interaction."""
    if not interaction.guild:
        return None
    member = getattr(interaction, "member", None) or (
        interaction.user if isinstance(interaction.user, discord.Member) else None
    )
    return member


def _get_role_ids(member: discord.Member) -> set[int]:
    """Get member's role IDs. Uses raw _roles to bypass guild.get_role() returning None.
    discord.py's member.roles filters through guild.get_role(); if the guild role cache
    is incomplete, roles can appear empty even when _roles has IDs from the API payload."""
    ids = set()
    raw = getattr(member, "_roles", None)
    if raw is not None:
        ids.update(int(r) for r in raw)
    for r in member.roles:
        ids.add(r.id)
    return ids


def join_refusal(role_ids: Iterable[int], cfg: PickupConfig) -> Optional[str]:
    """Why a member with these roles may not add to the pickup, None if they may."""
    roles = set(role_ids)
    if cfg.whitelist_role is not None and cfg.whitelist_role not in roles:
        return "missing the required role"
    if cfg.blacklist_role is not None and cfg.blacklist_role in roles:
        return "not allowed to add"
    return None


def member_refusal(interaction: discord.Interaction, cfg: PickupConfig) -> Optional[str]:
    member = _get_member(interaction)
    return join_refusal(_get_role_ids(member) if member else (), cfg)


def role_member_ids(guild: discord.Guild | None, role_id: Optional[int]) -> list[int]:
    """IDs of cached members holding the role (captain role preference)."""
    if guild is None or role_id is None:
        return []
    role = guild.get_role(role_id)
    if role is None:
        return []
    return [m.id for m in role.members]
