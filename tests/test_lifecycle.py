"""Tests for the pickup lifecycle and its fallback cascade."""
import asyncio

import pytest

from bot.errors import CollaboratorFailure, StoreFailure
from bot.models import LiveState, MatchPlayer, MatchRecord, PlayerState, QueuedPlayer, Stage, TeamAssignment
from bot.services.afk_check import AfkCheckStage
from bot.services.lifecycle import PickupLifecycle
from bot.services.match_recorder import MatchRecorder
from bot.services.stages import StageOutcome
from bot.services.state_store import StateStore, TeamSlot

GUILD = 1000


class FailingStartStore(StateStore):
    """Store whose dequeue for start always fails."""

    async def take_players_for_start(self, guild_id, config_id):
        raise StoreFailure("database is locked")


class FixedTeams:
    def __init__(self, teams):
        self.teams = teams

    async def generate(self, pickup):
        return self.teams


def lifecycle_for(store, announcer, recorder, stage, afk=None, picking=None, generator=None):
    return PickupLifecycle(
        store,
        announcer,
        recorder,
        afk or stage(),
        picking or stage(),
        team_generator=generator,
    )


async def fill(store, cfg, players=(1, 2, 3, 4)):
    result = None
    for pid in players:
        result = await store.add_players(GUILD, pid, [cfg.id])
    return result


@pytest.mark.asyncio
async def test_no_teams_pickup_starts_and_is_recorded(store, session_factory, ctx, announcer, stage, count_rows):
    cfg = await store.create_pickup(GUILD, "2v2", 4)
    result = await fill(store, cfg)
    assert result.triggered == [cfg.id]

    lifecycle = lifecycle_for(store, announcer, MatchRecorder(session_factory), stage)
    await lifecycle.handle(ctx, cfg.id)

    assert len(announcer.starts) == 1
    assert announcer.starts[0].startswith("**2v2** is starting: <@1>, <@2>, <@3>, <@4>")
    assert announcer.notices == []
    assert await count_rows(MatchRecord, has_teams=False) == 1
    assert await count_rows(MatchPlayer, team=None) == 4
    assert await count_rows(QueuedPlayer) == 0
    assert await count_rows(LiveState) == 0


@pytest.mark.asyncio
async def test_start_uses_guild_templates_and_notifies(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4)
    await store.update_guild_settings(GUILD, start_message="go {pickup} ({count})")
    await store.set_notifications(GUILD, 2, True)
    await fill(store, cfg)

    await lifecycle_for(store, announcer, recorder, stage).handle(ctx, cfg.id)

    assert announcer.starts == ["go 2v2 (4)"]
    assert announcer.directs == [(2, "Your pickup **2v2** has started")]


@pytest.mark.asyncio
async def test_manual_failure_degrades_to_start_without_teams(store, ctx, announcer, recorder, stage, count_rows):
    cfg = await store.create_pickup(GUILD, "2v2", 4, pick_mode="manual")
    await fill(store, cfg)

    async def seat_captains(ctx, config_id):
        await store.begin_picking(GUILD, config_id, [1, 2])

    picking = stage(error=CollaboratorFailure("captains left"), before=seat_captains)
    await lifecycle_for(store, announcer, recorder, stage, picking=picking).handle(ctx, cfg.id)

    assert picking.calls == [(cfg.id, True)]
    assert announcer.notices == [
        "something went wrong with **pickup 2v2** in picking phase, attempting to start without teams"
    ]
    assert len(announcer.starts) == 1
    assert recorder.stored == [{"name": "2v2", "players": [1, 2, 3, 4], "teams": None, "captains": None}]
    assert await count_rows(TeamAssignment) == 0
    assert await count_rows(LiveState) == 0


@pytest.mark.asyncio
async def test_manual_failure_with_failing_retry_resets(session_factory, ctx, announcer, recorder, stage, count_rows):
    store = FailingStartStore(session_factory)
    cfg = await store.create_pickup(GUILD, "2v2", 4, pick_mode="manual")
    await fill(store, cfg)

    async def seat_captains(ctx, config_id):
        await store.begin_picking(GUILD, config_id, [1, 2])

    picking = stage(error=CollaboratorFailure("timed out"), before=seat_captains)
    await lifecycle_for(store, announcer, recorder, stage, picking=picking).handle(ctx, cfg.id)

    assert announcer.notices == [
        "something went wrong with **pickup 2v2** in picking phase, attempting to start without teams",
        "something went wrong starting **pickup 2v2** without teams, pickup cleared",
    ]
    assert announcer.starts == []
    assert recorder.stored == []
    assert picking.calls == [(cfg.id, True)]
    for model in (QueuedPlayer, TeamAssignment, LiveState):
        assert await count_rows(model) == 0


@pytest.mark.asyncio
async def test_no_teams_start_failure_resets(session_factory, ctx, announcer, recorder, stage, count_rows):
    store = FailingStartStore(session_factory)
    cfg = await store.create_pickup(GUILD, "2v2", 4)
    await fill(store, cfg)

    await lifecycle_for(store, announcer, recorder, stage).handle(ctx, cfg.id)

    assert announcer.notices == ["something went wrong starting the pickup, **pickup 2v2** cleared"]
    assert await count_rows(QueuedPlayer) == 0
    assert await count_rows(LiveState) == 0


@pytest.mark.asyncio
async def test_afk_check_failure_proceeds_without_checking(store, ctx, announcer, recorder, stage, count_rows):
    cfg = await store.create_pickup(GUILD, "2v2", 4, afk_check=True)
    await fill(store, cfg)
    seen = {}

    async def flag_away(ctx, config_id):
        await store.set_afk(GUILD, [3, 4])
        seen["stage"] = (await store.read_active_pickup(GUILD, config_id)).stage

    afk = stage(error=RuntimeError("boom"), before=flag_away)
    await lifecycle_for(store, announcer, recorder, stage, afk=afk).handle(ctx, cfg.id)

    assert seen["stage"] == Stage.AFK_CHECK
    assert afk.calls == [(cfg.id, True)]
    assert announcer.notices == [
        "afk check failed, attempting to progress to the next stage for **pickup 2v2** without checking"
    ]
    assert len(announcer.starts) == 1
    assert await count_rows(PlayerState, is_afk=True) == 0


@pytest.mark.asyncio
async def test_afk_check_aborted_stops_lifecycle(store, ctx, announcer, recorder, stage, count_rows):
    cfg = await store.create_pickup(GUILD, "2v2", 4, afk_check=True, pick_mode="manual")
    await fill(store, cfg)
    picking = stage()

    afk = stage(outcome=StageOutcome.ABORTED)
    await lifecycle_for(store, announcer, recorder, stage, afk=afk, picking=picking).handle(ctx, cfg.id)

    assert picking.calls == []
    assert announcer.starts == []
    assert await count_rows(QueuedPlayer) == 4


@pytest.mark.asyncio
async def test_aborted_picking_neither_starts_nor_resets(store, ctx, announcer, recorder, stage, count_rows):
    cfg = await store.create_pickup(GUILD, "2v2", 4, pick_mode="manual")
    await fill(store, cfg)

    picking = stage(outcome=StageOutcome.ABORTED)
    await lifecycle_for(store, announcer, recorder, stage, picking=picking).handle(ctx, cfg.id)

    assert announcer.starts == []
    assert announcer.notices == []
    assert recorder.stored == []
    assert await count_rows(QueuedPlayer) == 4
    assert await count_rows(LiveState) == 1


@pytest.mark.asyncio
async def test_manual_picking_result_is_started_with_teams(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4, pick_mode="manual")
    await fill(store, cfg)

    async def pick_everyone(ctx, config_id):
        await store.assign_teams(
            GUILD,
            config_id,
            [
                TeamSlot(player_id=1, team="A", is_captain=True),
                TeamSlot(player_id=2, team="B", is_captain=True),
                TeamSlot(player_id=3, team="A"),
                TeamSlot(player_id=4, team="B"),
            ],
        )

    picking = stage(before=pick_everyone)
    await lifecycle_for(store, announcer, recorder, stage, picking=picking).handle(ctx, cfg.id)

    assert recorder.stored[0]["teams"] == [[1, 3], [2, 4]]
    assert recorder.stored[0]["captains"] == [1, 2]
    assert "**Team A**: <@1> (c), <@3>" in announcer.starts[0]


@pytest.mark.asyncio
async def test_concurrent_triggers_start_once(store, ctx, announcer, recorder, stage, count_rows):
    cfg = await store.create_pickup(GUILD, "2v2", 4)
    await fill(store, cfg)

    lifecycle = lifecycle_for(store, announcer, recorder, stage)
    await asyncio.gather(lifecycle.handle(ctx, cfg.id), lifecycle.handle(ctx, cfg.id))

    assert len(announcer.starts) == 1
    assert len(recorder.stored) == 1
    assert announcer.notices == []


@pytest.mark.asyncio
async def test_concurrent_triggers_with_afk_check_run_one_check(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4, afk_check=True)
    await fill(store, cfg)

    afk = stage()
    lifecycle = lifecycle_for(store, announcer, recorder, stage, afk=afk)
    await asyncio.gather(lifecycle.handle(ctx, cfg.id), lifecycle.handle(ctx, cfg.id))

    assert len(afk.calls) == 1
    assert len(announcer.starts) == 1


@pytest.mark.asyncio
async def test_recorder_failure_only_posts_notice(store, ctx, announcer, stage, count_rows, recorder):
    cfg = await store.create_pickup(GUILD, "2v2", 4)
    await fill(store, cfg)
    recorder.fail = True

    await lifecycle_for(store, announcer, recorder, stage).handle(ctx, cfg.id)

    assert len(announcer.starts) == 1
    assert announcer.notices == ["something went wrong storing the **2v2** pickup, pickup not stored"]
    assert await count_rows(QueuedPlayer) == 0


@pytest.mark.asyncio
async def test_start_aborts_other_pickups_sharing_players(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4)
    other = await store.create_pickup(GUILD, "1v1", 2)
    await store.queue_players(GUILD, other.id, [1, 9])
    await store.set_stage(GUILD, other.id, Stage.AFK_CHECK)
    await fill(store, cfg)

    await lifecycle_for(store, announcer, recorder, stage).handle(ctx, cfg.id)

    pickup = await store.read_active_pickup(GUILD, other.id)
    assert pickup.stage == Stage.FILL
    assert pickup.player_ids == [9]
    # The away check of the other pickup is told to re-read its state
    assert await ctx.wait(other.id, 0.1)


@pytest.mark.asyncio
async def test_elo_uses_team_generator(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4, pick_mode="elo")
    await fill(store, cfg)

    lifecycle = lifecycle_for(store, announcer, recorder, stage, generator=FixedTeams([[1, 4], [2, 3]]))
    await lifecycle.handle(ctx, cfg.id)

    assert recorder.stored[0]["teams"] == [[1, 4], [2, 3]]
    assert announcer.notices == []


@pytest.mark.asyncio
async def test_elo_without_generator_starts_without_teams(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4, pick_mode="elo")
    await fill(store, cfg)

    await lifecycle_for(store, announcer, recorder, stage).handle(ctx, cfg.id)

    assert announcer.notices == ["could not generate teams for **pickup 2v2**, attempting to start without teams"]
    assert recorder.stored[0]["teams"] is None


@pytest.mark.asyncio
async def test_elo_rejects_teams_not_matching_players(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4, pick_mode="elo")
    await fill(store, cfg)

    lifecycle = lifecycle_for(store, announcer, recorder, stage, generator=FixedTeams([[1, 2], [3, 99]]))
    await lifecycle.handle(ctx, cfg.id)

    assert len(announcer.notices) == 1
    assert recorder.stored[0]["teams"] is None


@pytest.mark.asyncio
async def test_resume_reenters_picking_without_initial_message(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4, pick_mode="manual")
    await store.queue_players(GUILD, cfg.id, [1, 2, 3, 4])
    await store.set_stage(GUILD, cfg.id, Stage.PICKING_MANUAL)

    picking = stage()
    await lifecycle_for(store, announcer, recorder, stage, picking=picking).resume(ctx)

    assert picking.calls == [(cfg.id, False)]
    assert len(announcer.starts) == 1


@pytest.mark.asyncio
async def test_resume_reenters_afk_check(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4, afk_check=True)
    await store.queue_players(GUILD, cfg.id, [1, 2, 3, 4])
    await store.set_stage(GUILD, cfg.id, Stage.AFK_CHECK)

    afk = stage()
    await lifecycle_for(store, announcer, recorder, stage, afk=afk).resume(ctx)

    assert afk.calls == [(cfg.id, False)]
    assert len(announcer.starts) == 1


@pytest.mark.asyncio
async def test_resume_triggers_full_pickups_only(store, ctx, announcer, recorder, stage, count_rows):
    full = await store.create_pickup(GUILD, "2v2", 4)
    partial = await store.create_pickup(GUILD, "3v3", 6)
    await store.queue_players(GUILD, full.id, [1, 2, 3, 4])
    await store.queue_players(GUILD, partial.id, [5, 6])

    await lifecycle_for(store, announcer, recorder, stage).resume(ctx)

    assert [s["name"] for s in recorder.stored] == ["2v2"]
    assert await count_rows(QueuedPlayer, pickup_config_id=partial.id) == 2


@pytest.mark.asyncio
async def test_handle_for_deleted_pickup_is_noop(store, ctx, announcer, recorder, stage):
    await lifecycle_for(store, announcer, recorder, stage).handle(ctx, 12345)
    assert announcer.starts == []
    assert announcer.notices == []


@pytest.mark.asyncio
async def test_reset_pickup_wakes_stage_handler(store, ctx, announcer, recorder, stage, count_rows):
    cfg = await store.create_pickup(GUILD, "2v2", 4)
    await store.queue_players(GUILD, cfg.id, [1, 2])

    await lifecycle_for(store, announcer, recorder, stage).reset_pickup(ctx, cfg, notice="cleared")

    assert await count_rows(QueuedPlayer) == 0
    assert announcer.notices == ["cleared"]
    assert await ctx.wait(cfg.id, 0.1)


@pytest.mark.asyncio
async def test_trigger_after_player_left_keeps_pickup_in_fill(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4, afk_check=True)
    await fill(store, cfg)
    await store.remove_players(GUILD, [4])

    afk = stage()
    await lifecycle_for(store, announcer, recorder, stage, afk=afk).handle(ctx, cfg.id)

    assert afk.calls == []
    assert announcer.starts == []
    assert (await store.read_active_pickup(GUILD, cfg.id)).stage == Stage.FILL
    result = await store.add_players(GUILD, 5, [cfg.id])
    assert result.added == ["2v2"]
    assert result.triggered == [cfg.id]


@pytest.mark.asyncio
async def test_manual_trigger_after_player_left_does_not_pick(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4, pick_mode="manual")
    await fill(store, cfg)
    await store.remove_players(GUILD, [2])

    picking = stage()
    await lifecycle_for(store, announcer, recorder, stage, picking=picking).handle(ctx, cfg.id)

    assert picking.calls == []
    assert announcer.notices == []
    assert (await store.read_active_pickup(GUILD, cfg.id)).stage == Stage.FILL


@pytest.mark.asyncio
async def test_stage_left_without_full_queue_is_released(store, ctx, announcer, recorder, stage, count_rows):
    cfg = await store.create_pickup(GUILD, "2v2", 4, afk_check=True)
    await store.queue_players(GUILD, cfg.id, [1, 2, 3])
    await store.set_stage(GUILD, cfg.id, Stage.AFK_CHECK)

    await lifecycle_for(store, announcer, recorder, stage).resume(ctx)

    assert announcer.starts == []
    assert (await store.read_active_pickup(GUILD, cfg.id)).stage == Stage.FILL
    assert await ctx.wait(cfg.id, 0.1)
    assert (await store.add_players(GUILD, 4, [cfg.id])).triggered == [cfg.id]


@pytest.mark.asyncio
async def test_lowering_player_count_starts_the_pickup(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "3v3", 6)
    await store.queue_players(GUILD, cfg.id, [1, 2, 3, 4])

    cfg, triggered = await store.modify_pickup(GUILD, cfg.id, player_count=4)
    assert triggered
    await lifecycle_for(store, announcer, recorder, stage).handle(ctx, cfg.id)

    assert [s["name"] for s in recorder.stored] == ["3v3"]
    assert recorder.stored[0]["players"] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_start_posts_status_of_other_pickups(store, ctx, announcer, recorder, stage):
    cfg = await store.create_pickup(GUILD, "2v2", 4)
    other = await store.create_pickup(GUILD, "1v1", 2)
    await store.queue_players(GUILD, other.id, [7])
    await fill(store, cfg)

    await lifecycle_for(store, announcer, recorder, stage).handle(ctx, cfg.id)

    assert len(announcer.starts) == 1
    assert announcer.notices == ["**1v1** [1/2]: 7"]


@pytest.mark.asyncio
async def test_failing_start_message_still_notifies(store, ctx, announcer, recorder, stage, monkeypatch):
    cfg = await store.create_pickup(GUILD, "2v2", 4)
    await store.set_notifications(GUILD, 3, True)
    await fill(store, cfg)

    async def broken(ctx, message):
        raise RuntimeError("channel gone")

    monkeypatch.setattr(announcer, "send_start", broken)
    await lifecycle_for(store, announcer, recorder, stage).handle(ctx, cfg.id)

    assert announcer.directs == [(3, "Your pickup **2v2** has started")]
    assert len(recorder.stored) == 1


@pytest.mark.asyncio
async def test_deleting_pickup_stops_its_away_check(store, ctx, announcer, recorder, stage, count_rows):
    cfg = await store.create_pickup(GUILD, "2v2", 4, afk_check=True)
    await fill(store, cfg)
    await store.set_afk(GUILD, [3, 4])

    afk = AfkCheckStage(store, announcer, interval=30)
    lifecycle = lifecycle_for(store, announcer, recorder, stage, afk=afk)
    task = asyncio.create_task(lifecycle.handle(ctx, cfg.id))
    while not announcer.notices:
        await asyncio.sleep(0.01)

    assert await lifecycle.remove_pickups(ctx, ["2v2"]) == ["2v2"]
    await asyncio.wait_for(task, timeout=5)

    assert len(announcer.notices) == 1
    assert "use /ready" in announcer.notices[0]
    assert announcer.starts == []
    assert await count_rows(LiveState) == 0
