"""Configuration for the pickup bot."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Discord
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "")

# Database
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(__file__).parent / 'pickups.db'}",
)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


# Away check: players whose last add is older than AFK_TIME seconds must confirm
AFK_TIME = _int_env("AFK_TIME", 30 * 60)
AFK_CHECK_INTERVAL = _int_env("AFK_CHECK_INTERVAL", 60)  # seconds between reminders
AFK_CHECK_ITERATIONS = _int_env("AFK_CHECK_ITERATIONS", 3)  # reminders before away players are removed

# Manual picking
PICKING_INTERVAL = _int_env("PICKING_INTERVAL", 60)
PICKING_ITERATIONS = _int_env("PICKING_ITERATIONS", 5)

# Expiry sweeper (see /expire)
EXPIRE_SWEEP_SECONDS = _int_env("EXPIRE_SWEEP_SECONDS", 60)

# Default guild templates. Tokens: {pickup} {players} {teams} {captains} {count}
DEFAULT_START_MESSAGE = os.getenv("DEFAULT_START_MESSAGE", "**{pickup}** is starting: {players}\n{teams}")
DEFAULT_NOTIFY_MESSAGE = os.getenv("DEFAULT_NOTIFY_MESSAGE", "Your pickup **{pickup}** has started")

# Status API (web/run_api.py)
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = _int_env("API_PORT", 8000)
