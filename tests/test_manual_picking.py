"""Tests for the manual picking stage."""
import asyncio
import random

import pytest

from bot.errors import CollaboratorFailure, InvalidPick
from bot.models import Stage
from bot.services.manual_picking import ManualPickingStage, picking_finished
from bot.services.stages import StageOutcome

GUILD = 1000


async def picking_pickup(store, name="2v2", players=4, team_count=2):
    cfg = await store.create_pickup(GUILD, name, players, team_count=team_count, pick_mode="manual")
    await store.queue_players(GUILD, cfg.id, range(1, players + 1))
    await store.set_stage(GUILD, cfg.id, Stage.PICKING_MANUAL)
    return cfg


async def wait_for_turn(store, config_id):
    while True:
        pickup = await store.read_active_pickup(GUILD, config_id)
        turn = [t.player_id for t in pickup.teams if t.captain_turn]
        if turn:
            return pickup, turn[0]
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_captain_pick_completes_picking(store, ctx, announcer):
    cfg = await picking_pickup(store)
    picking = ManualPickingStage(store, announcer, interval=5, max_iterations=3)

    async def captain():
        pickup, captain_id = await wait_for_turn(store, cfg.id)
        return await picking.pick(ctx, cfg.id, captain_id, pickup.unassigned()[0])

    outcome, result = await asyncio.gather(picking.run(ctx, cfg.id, True), captain())

    assert outcome == StageOutcome.COMPLETED
    assert result.done
    assert len(result.auto_assigned) == 1
    pickup = await store.read_active_pickup(GUILD, cfg.id)
    assert picking_finished(pickup)
    assert sorted(pid for team in pickup.rosters() for pid in team) == [1, 2, 3, 4]
    assert "it's your turn, use /pick" in announcer.notices[0]


@pytest.mark.asyncio
async def test_pick_out_of_turn_is_rejected(store, ctx, announcer):
    cfg = await picking_pickup(store, "3v3", 6)
    picking = ManualPickingStage(store, announcer, rng=random.Random(3))
    queued = await store.read_active_pickup(GUILD, cfg.id)
    pickup = await store.begin_picking(GUILD, cfg.id, picking.choose_captains(ctx, queued))
    waiting = next(t.player_id for t in pickup.teams if t.is_captain and not t.captain_turn)

    with pytest.raises(InvalidPick):
        await picking.pick(ctx, cfg.id, waiting, pickup.unassigned()[0])


@pytest.mark.asyncio
async def test_picking_times_out(store, ctx, announcer):
    cfg = await picking_pickup(store)
    picking = ManualPickingStage(store, announcer, interval=0.01, max_iterations=2)

    with pytest.raises(CollaboratorFailure):
        await picking.run(ctx, cfg.id, True)
    # Initial status plus one reminder
    assert len(announcer.notices) == 2


@pytest.mark.asyncio
async def test_resume_keeps_existing_teams(store, ctx, announcer):
    cfg = await picking_pickup(store)
    await store.begin_picking(GUILD, cfg.id, [1, 2])
    picking = ManualPickingStage(store, announcer, interval=0.01, max_iterations=1)

    with pytest.raises(CollaboratorFailure):
        await picking.run(ctx, cfg.id, False)
    pickup = await store.read_active_pickup(GUILD, cfg.id)
    assert pickup.captains() == [1, 2]
    assert announcer.notices == []


@pytest.mark.asyncio
async def test_player_leaving_aborts_picking(store, ctx, announcer):
    cfg = await picking_pickup(store)
    picking = ManualPickingStage(store, announcer, interval=5, max_iterations=3)

    async def leave():
        await wait_for_turn(store, cfg.id)
        await store.remove_players(GUILD, [4])
        ctx.wake(cfg.id)

    outcome, _ = await asyncio.gather(picking.run(ctx, cfg.id, True), leave())
    assert outcome == StageOutcome.ABORTED


@pytest.mark.asyncio
async def test_one_player_teams_need_no_picks(store, ctx, announcer):
    cfg = await picking_pickup(store, "1v1", 2)
    picking = ManualPickingStage(store, announcer, interval=5)

    assert await picking.run(ctx, cfg.id, True) == StageOutcome.COMPLETED
    assert announcer.notices == []


@pytest.mark.asyncio
async def test_uneven_split_fails(store, ctx, announcer):
    cfg = await picking_pickup(store, "odd", 5)
    picking = ManualPickingStage(store, announcer, interval=0.01)
    with pytest.raises(CollaboratorFailure):
        await picking.run(ctx, cfg.id, True)


@pytest.mark.asyncio
async def test_single_team_cannot_be_picked(store, ctx, announcer):
    cfg = await picking_pickup(store, "ffa", 4, team_count=1)
    picking = ManualPickingStage(store, announcer, interval=0.01)
    with pytest.raises(CollaboratorFailure):
        await picking.run(ctx, cfg.id, True)


@pytest.mark.asyncio
async def test_not_picking_is_aborted(store, ctx, announcer):
    cfg = await store.create_pickup(GUILD, "2v2", 4, pick_mode="manual")
    await store.queue_players(GUILD, cfg.id, [1, 2, 3, 4])
    picking = ManualPickingStage(store, announcer)
    assert await picking.run(ctx, cfg.id, True) == StageOutcome.ABORTED


@pytest.mark.asyncio
async def test_captain_role_is_preferred(store, ctx, announcer):
    cfg = await picking_pickup(store, "3v3", 6)
    pickup = await store.read_active_pickup(GUILD, cfg.id)
    picking = ManualPickingStage(store, announcer, captain_candidates=lambda ctx, pickup: [5], rng=random.Random(1))

    captains = picking.choose_captains(ctx, pickup)
    assert captains[0] == 5
    assert len(set(captains)) == 2


@pytest.mark.asyncio
async def test_status_message(store, ctx, announcer):
    cfg = await picking_pickup(store)
    pickup = await store.begin_picking(GUILD, cfg.id, [1, 2])
    message = ManualPickingStage(store, announcer).status_message(pickup)
    assert message.splitlines() == [
        "**2v2** picking",
        "Team A: <@1>",
        "Team B: <@2>",
        "Available: <@3>, <@4>",
        "<@1> it's your turn, use /pick",
    ]
