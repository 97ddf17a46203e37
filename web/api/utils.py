"""Shared API utilities."""
from __future__ import annotations

from typing import Optional

from fastapi import HTTPException

from bot.errors import AlreadyExists, AlreadyTransitioned, NotFound, PickupError, StoreFailure
from bot.models.base import async_session_factory
from bot.services.state_store import StateStore

JS_MAX_SAFE_INTEGER = 9007199254740991


def id_for_json(value: Optional[int]) -> Optional[int | str]:
    """Discord snowflakes go out as strings so JS keeps their precision."""
    if value is None:
        return None
    return str(value) if value > JS_MAX_SAFE_INTEGER else value


def get_store() -> StateStore:
    """FastAPI dependency. Overridden in tests."""
    return StateStore(async_session_factory)


def http_error(error: Exception) -> HTTPException:
    """Map pickup errors onto HTTP status codes."""
    if isinstance(error, AlreadyTransitioned):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, NotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, AlreadyExists):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, StoreFailure):
        return HTTPException(status_code=503, detail="Database unavailable")
    if isinstance(error, (ValueError, PickupError)):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=500, detail="Internal error")
