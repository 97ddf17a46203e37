"""Pytest configuration and fixtures."""
import os
import tempfile
from pathlib import Path

# Set test env BEFORE any imports that use config
_tmp = tempfile.mkdtemp(prefix="pickups-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_tmp) / 'api.db'}"
os.environ["DISCORD_TOKEN"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine

from bot.context import GuildContext
from bot.errors import StoreFailure
from bot.models.base import configure_engine, init_db, make_session_factory
from bot.services.stages import StageOutcome
from bot.services.state_store import StateStore
from web.api.main import app
from web.api.utils import get_store

GUILD = 1000


class RecordingAnnouncer:
    """Announcer that keeps every message instead of sending it."""

    def __init__(self):
        self.starts = []
        self.notices = []
        self.directs = []

    async def send_start(self, ctx, message):
        self.starts.append(message)

    async def send_notice(self, ctx, message):
        self.notices.append(message)

    async def send_direct(self, ctx, player_id, message):
        self.directs.append((player_id, message))


class FakeRecorder:
    def __init__(self, fail=False):
        self.fail = fail
        self.stored = []

    async def store(self, pickup, teams=None, captains=None):
        if self.fail:
            raise StoreFailure("disk full")
        self.stored.append({"name": pickup.name, "players": sorted(pickup.player_ids), "teams": teams, "captains": captains})
        return len(self.stored)


class ScriptedStage:
    """Stage handler returning a fixed outcome or raising, after an optional hook."""

    def __init__(self, outcome=StageOutcome.COMPLETED, error=None, before=None):
        self.outcome = outcome
        self.error = error
        self.before = before
        self.calls = []

    async def run(self, ctx, config_id, must_send_initial):
        self.calls.append((config_id, must_send_initial))
        if self.before is not None:
            await self.before(ctx, config_id)
        if self.error is not None:
            raise self.error
        return self.outcome


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    eng = configure_engine(create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"))
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return StateStore(session_factory)


@pytest.fixture
def ctx():
    return GuildContext(guild_id=GUILD)


@pytest.fixture
def announcer():
    return RecordingAnnouncer()


@pytest.fixture
def count_rows(session_factory):
    """Count rows of a model, optionally filtered by column values."""

    async def _count(model, **filters):
        async with session_factory() as session:
            stmt = select(func.count()).select_from(model)
            for column, value in filters.items():
                stmt = stmt.where(getattr(model, column) == value)
            return (await session.execute(stmt)).scalar_one()

    return _count


@pytest.fixture
async def client(store):
    """Async HTTP client for testing the API, backed by the per-test store."""
    app.dependency_overrides[get_store] = lambda: store
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest.fixture
def stage():
    """Factory for scripted stage handlers."""
    return ScriptedStage
