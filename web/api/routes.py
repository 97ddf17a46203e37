"""API routes for pickup configuration and live state."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_serializer

from bot.errors import PickupError
from bot.models import PickMode, Stage
from bot.services.captain_turns import team_labels
from bot.services.state_store import ActivePickup, StateStore
from web.api.utils import get_store, http_error, id_for_json

logger = logging.getLogger("pickups.api")

router = APIRouter(prefix="/api/guilds/{guild_id}/pickups", tags=["pickups"])


# --- Pydantic schemas ---


class QueuedPlayerResponse(BaseModel):
    id: int
    nick: Optional[str] = None

    @field_serializer("id")
    def _snowflake(self, v: int):
        return id_for_json(v)


class TeamResponse(BaseModel):
    team: str
    players: list[int]
    captain: Optional[int] = None

    @field_serializer("players")
    def _snowflakes(self, v: list[int]):
        return [id_for_json(p) for p in v]

    @field_serializer("captain")
    def _snowflake(self, v: Optional[int]):
        return id_for_json(v)


class PickupResponse(BaseModel):
    id: int
    name: str
    player_count: int
    team_count: int
    pick_mode: PickMode
    afk_check: bool
    is_default_pickup: bool
    stage: Optional[Stage] = None
    in_stage_since: Optional[datetime] = None
    stage_iteration: int = 0
    players: list[QueuedPlayerResponse] = []
    teams: list[TeamResponse] = []


class PickupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=32)
    player_count: int = Field(ge=1)
    team_count: int = Field(default=2, ge=1)
    pick_mode: PickMode = PickMode.NO_TEAMS
    afk_check: bool = False
    is_default_pickup: bool = False
    captain_role: Optional[int] = None
    whitelist_role: Optional[int] = None
    blacklist_role: Optional[int] = None


def pickup_response(pickup: ActivePickup) -> PickupResponse:
    cfg = pickup.config
    teams = []
    if pickup.teams:
        captain_of = {t.team: t.player_id for t in pickup.teams if t.is_captain}
        teams = [
            TeamResponse(team=label, players=members, captain=captain_of.get(label))
            for label, members in zip(team_labels(cfg.team_count), pickup.rosters())
        ]
    return PickupResponse(
        id=cfg.id,
        name=cfg.name,
        player_count=cfg.player_count,
        team_count=cfg.team_count,
        pick_mode=cfg.pick_mode,
        afk_check=cfg.afk_check,
        is_default_pickup=cfg.is_default_pickup,
        stage=pickup.stage,
        in_stage_since=pickup.in_stage_since,
        stage_iteration=pickup.stage_iteration,
        players=[QueuedPlayerResponse(id=p.id, nick=p.nick) for p in pickup.players],
        teams=teams,
    )


# --- Routes ---


@router.get("", response_model=list[PickupResponse])
async def list_pickups(guild_id: int, store: StateStore = Depends(get_store)):
    """All configured pickups of the guild with their live state."""
    try:
        configs = await store.list_pickups(guild_id)
        return [pickup_response(await store.read_active_pickup(guild_id, cfg.id)) for cfg in configs]
    except PickupError as e:
        raise http_error(e)


@router.get("/{name}", response_model=PickupResponse)
async def get_pickup(guild_id: int, name: str, store: StateStore = Depends(get_store)):
    try:
        return pickup_response(await store.read_active_pickup(guild_id, name))
    except PickupError as e:
        raise http_error(e)


@router.post("", response_model=PickupResponse)
async def create_pickup(guild_id: int, body: PickupCreate, store: StateStore = Depends(get_store)):
    settings = body.model_dump(exclude={"name", "player_count", "team_count"}, exclude_none=True)
    try:
        cfg = await store.create_pickup(guild_id, body.name, body.player_count, body.team_count, **settings)
        return pickup_response(await store.read_active_pickup(guild_id, cfg.id))
    except (PickupError, ValueError) as e:
        raise http_error(e)


@router.delete("/{name}")
async def delete_pickup(guild_id: int, name: str, store: StateStore = Depends(get_store)):
    try:
        removed = [cfg.name for cfg in await store.remove_pickups(guild_id, [name])]
    except PickupError as e:
        raise http_error(e)
    if not removed:
        raise HTTPException(status_code=404, detail=f"Pickup {name} not found")
    logger.info("Pickup %s removed from guild %s via API", name, guild_id)
    return {"removed": removed}
