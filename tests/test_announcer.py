"""Tests for message rendering and Discord delivery."""
import discord
import pytest

from bot.models import PickupConfig, Stage
from bot.services.announcer import DiscordAnnouncer, build_start_context, render, status_line
from bot.services.state_store import ActivePickup, QueuedPlayerView

GUILD = 1000


def make_pickup(players=(1, 2, 3, 4)):
    cfg = PickupConfig(id=7, guild_id=GUILD, name="2v2", player_count=len(players), team_count=2)
    return ActivePickup(
        config=cfg,
        stage=None,
        in_stage_since=None,
        stage_iteration=0,
        players=[QueuedPlayerView(id=pid, nick=None) for pid in players],
    )


class FakeChannel:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send(self, message):
        if self.fail:
            raise discord.DiscordException("missing access")
        self.sent.append(message)


class FakeClient:
    def __init__(self, channel=None):
        self.channel = channel

    def get_channel(self, channel_id):
        return self.channel

    async def fetch_channel(self, channel_id):
        raise discord.DiscordException("unknown channel")

    def get_guild(self, guild_id):
        return None


def test_render_substitutes_known_tokens():
    assert render("**{pickup}** go {players}", {"pickup": "2v2", "players": "<@1>"}) == "**2v2** go <@1>"


def test_render_keeps_unknown_tokens():
    assert render("{pickup} on {map}", {"pickup": "2v2"}) == "2v2 on {map}"


def test_render_empty_template_means_no_message():
    assert render("", {"pickup": "2v2"}) == ""
    assert render(None, {"pickup": "2v2"}) == ""
    assert render("{teams}", {"teams": ""}) == ""


def test_start_context_without_teams():
    context = build_start_context(make_pickup())
    assert context["pickup"] == "2v2"
    assert context["players"] == "<@1>, <@2>, <@3>, <@4>"
    assert context["teams"] == ""
    assert context["count"] == 4


def test_start_context_with_teams():
    context = build_start_context(make_pickup(), [[1, 3], [2, 4]], [1, 2])
    assert context["teams"] == "**Team A**: <@1> (c), <@3>\n**Team B**: <@2> (c), <@4>"
    assert context["captains"] == "<@1>, <@2>"


@pytest.mark.asyncio
async def test_notice_goes_to_pickup_channel(store, ctx):
    await store.update_guild_settings(GUILD, pickup_channel_id=555)
    channel = FakeChannel()
    announcer = DiscordAnnouncer(FakeClient(channel), store)

    await announcer.send_notice(ctx, "hello")
    await announcer.send_start(ctx, "")

    assert channel.sent == ["hello"]


@pytest.mark.asyncio
async def test_delivery_failures_are_swallowed(store, ctx):
    announcer = DiscordAnnouncer(FakeClient(FakeChannel()), store)
    # No pickup channel configured
    await announcer.send_notice(ctx, "hello")

    await store.update_guild_settings(GUILD, pickup_channel_id=555)
    failing = DiscordAnnouncer(FakeClient(FakeChannel(fail=True)), store)
    await failing.send_start(ctx, "go")

    missing = DiscordAnnouncer(FakeClient(None), store)
    await missing.send_notice(ctx, "hello")
    await missing.send_direct(ctx, 1, "started")


def test_status_line():
    pickup = make_pickup((1, 2))
    pickup.players[0].nick = "one"
    pickup.config.player_count = 4
    assert status_line(pickup) == "**2v2** [2/4]: one, 2"
    pickup.stage = Stage.AFK_CHECK
    assert status_line(pickup) == "**2v2** [2/4] (afk_check): one, 2"
