"""Tests for the expiry sweeper."""
from datetime import timedelta

import pytest

from bot.context import GuildContexts
from bot.models import Stage
from bot.models.state import utcnow
from bot.listeners.guild import sweep_expired

GUILD = 1000


@pytest.mark.asyncio
async def test_sweep_removes_expired_players(store, announcer):
    cfg = await store.create_pickup(GUILD, "2v2", 4)
    for pid in (1, 2, 3):
        await store.add_players(GUILD, pid, [cfg.id])
    await store.set_expire(GUILD, 1, 5)
    await store.set_expire(GUILD, 2, 60)

    removed = await sweep_expired(store, GuildContexts(), announcer, now=utcnow() + timedelta(minutes=10))

    assert removed == {GUILD: [1]}
    pickup = await store.read_active_pickup(GUILD, cfg.id)
    assert pickup.player_ids == [2, 3]
    assert await store.get_expire(GUILD, 1) is None
    assert announcer.notices == ["<@1> removed from all pickups (expired)"]


@pytest.mark.asyncio
async def test_sweep_aborts_running_stage(store, announcer):
    cfg = await store.create_pickup(GUILD, "2v2", 4, afk_check=True)
    await store.queue_players(GUILD, cfg.id, [1, 2, 3, 4])
    await store.set_stage(GUILD, cfg.id, Stage.AFK_CHECK)
    await store.set_expire(GUILD, 4, 1)
    contexts = GuildContexts()

    await sweep_expired(store, contexts, announcer, now=utcnow() + timedelta(minutes=5))

    pickup = await store.read_active_pickup(GUILD, cfg.id)
    assert pickup.stage == Stage.FILL
    assert await contexts.get(GUILD).wait(cfg.id, 0.1)


@pytest.mark.asyncio
async def test_sweep_without_expired_players(store, announcer):
    assert await sweep_expired(store, GuildContexts(), announcer) == {}
    assert announcer.notices == []
