"""Manual picking stage: captains take turns picking players onto teams."""
from __future__ import annotations

import logging
import random
from typing import Callable, Optional, Sequence

import config
from bot.context import GuildContext
from bot.errors import CollaboratorFailure
from bot.models import Stage
from bot.services import captain_turns
from bot.services.announcer import Announcer, mention
from bot.services.stages import StageOutcome
from bot.services.state_store import ActivePickup, PickResult, StateStore

logger = logging.getLogger("pickups.picking")

CaptainCandidates = Callable[[GuildContext, ActivePickup], Sequence[int]]


def picking_finished(pickup: ActivePickup) -> bool:
    """Every roster is full (no captain holds the turn)."""
    if not pickup.teams:
        return False
    slots = captain_turns.open_slots(pickup.teams, pickup.config.team_count, pickup.config.team_size)
    return not any(slots.values())


class ManualPickingStage:
    def __init__(
        self,
        store: StateStore,
        announcer: Announcer,
        interval: float = config.PICKING_INTERVAL,
        max_iterations: int = config.PICKING_ITERATIONS,
        captain_candidates: Optional[CaptainCandidates] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.announcer = announcer
        self.interval = interval
        self.max_iterations = max_iterations
        self.captain_candidates = captain_candidates
        self.rng = rng or random.Random()

    def choose_captains(self, ctx: GuildContext, pickup: ActivePickup) -> list[int]:
        """Players preferred as captain (captain role) first, then random queued players."""
        queued = pickup.player_ids
        preferred = []
        if self.captain_candidates is not None:
            wanted = set(self.captain_candidates(ctx, pickup))
            preferred = [pid for pid in queued if pid in wanted]
        self.rng.shuffle(preferred)
        rest = [pid for pid in queued if pid not in preferred]
        self.rng.shuffle(rest)
        return (preferred + rest)[: pickup.config.team_count]

    async def run(self, ctx: GuildContext, config_id: int, must_send_initial: bool) -> StageOutcome:
        pickup = await self.store.read_active_pickup(ctx.guild_id, config_id)
        if pickup.stage != Stage.PICKING_MANUAL:
            return StageOutcome.ABORTED
        cfg = pickup.config
        if cfg.team_count < 2 or cfg.player_count % cfg.team_count:
            raise CollaboratorFailure(f"{cfg.player_count} players cannot be split into {cfg.team_count} teams")

        remind = must_send_initial
        if must_send_initial or not pickup.teams:
            pickup = await self.store.begin_picking(ctx.guild_id, config_id, self.choose_captains(ctx, pickup))
            remind = True

        while True:
            if pickup.stage != Stage.PICKING_MANUAL:
                return StageOutcome.ABORTED
            if picking_finished(pickup):
                logger.info("Picking finished for %s in guild %s", cfg.name, ctx.guild_id)
                return StageOutcome.COMPLETED

            if remind:
                await self.announcer.send_notice(ctx, self.status_message(pickup))
            if await ctx.wait(config_id, self.interval):
                remind = False
            else:
                iteration = await self.store.increment_iteration(ctx.guild_id, config_id)
                if iteration >= self.max_iterations:
                    raise CollaboratorFailure(f"Picking for {cfg.name} timed out")
                remind = True
            pickup = await self.store.read_active_pickup(ctx.guild_id, config_id)

    def status_message(self, pickup: ActivePickup) -> str:
        turn = captain_turns.current_turn(pickup.teams)
        lines = [f"**{pickup.name}** picking"]
        for label, members in zip(captain_turns.team_labels(pickup.config.team_count), pickup.rosters()):
            lines.append(f"Team {label}: {', '.join(mention(p) for p in members) or '-'}")
        left = pickup.unassigned()
        if left:
            lines.append(f"Available: {', '.join(mention(p) for p in left)}")
        if turn is not None:
            captain = next(t.player_id for t in pickup.teams if t.team == turn and t.captain_turn)
            lines.append(f"{mention(captain)} it's your turn, use /pick")
        return "\n".join(lines)

    async def pick(self, ctx: GuildContext, config_id: int, captain_id: int, player_id: int) -> PickResult:
        result = await self.store.record_pick(ctx.guild_id, config_id, captain_id, player_id)
        ctx.wake(config_id)
        return result
