"""Guild settings API: pickup channel, start/notify templates, default expiry."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_serializer

import config
from bot.errors import PickupError
from bot.services.state_store import StateStore
from web.api.utils import get_store, http_error, id_for_json

router = APIRouter(prefix="/api/guilds/{guild_id}/settings", tags=["settings"])


class SettingsResponse(BaseModel):
    guild_id: int
    pickup_channel_id: Optional[int] = None
    start_message: str
    notify_message: str
    default_expire: Optional[int] = None

    @field_serializer("guild_id", "pickup_channel_id")
    def _snowflake(self, v: Optional[int]):
        return id_for_json(v)


class SettingsUpdate(BaseModel):
    pickup_channel_id: Optional[int] = None
    start_message: Optional[str] = None
    notify_message: Optional[str] = None
    default_expire: Optional[int] = Field(default=None, ge=1)


def _response(settings) -> SettingsResponse:
    return SettingsResponse(
        guild_id=settings.guild_id,
        pickup_channel_id=settings.pickup_channel_id,
        start_message=settings.start_message or config.DEFAULT_START_MESSAGE,
        notify_message=settings.notify_message or config.DEFAULT_NOTIFY_MESSAGE,
        default_expire=settings.default_expire,
    )


@router.get("", response_model=SettingsResponse)
async def get_settings(guild_id: int, store: StateStore = Depends(get_store)):
    """Guild settings; templates fall back to the defaults."""
    try:
        return _response(await store.get_guild_settings(guild_id))
    except PickupError as e:
        raise http_error(e)


@router.patch("", response_model=SettingsResponse)
async def update_settings(guild_id: int, body: SettingsUpdate, store: StateStore = Depends(get_store)):
    """Only fields present in the body are changed."""
    try:
        settings = await store.update_guild_settings(guild_id, **body.model_dump(exclude_unset=True))
    except (PickupError, ValueError) as e:
        raise http_error(e)
    return _response(settings)
