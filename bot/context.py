"""Per guild runtime context passed to the lifecycle and stage handlers."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field


@dataclass
class GuildContext:
    """Runtime handles for one guild. Holds no pickup state: that lives in the store."""

    guild_id: int
    _wakeups: dict[int, asyncio.Event] = field(default_factory=dict, repr=False)

    def _event(self, config_id: int) -> asyncio.Event:
        if config_id not in self._wakeups:
            self._wakeups[config_id] = asyncio.Event()
        return self._wakeups[config_id]

    def wake(self, config_id: int) -> None:
        """Tell a waiting stage handler to re-read the pickup now."""
        self._event(config_id).set()

    async def wait(self, config_id: int, timeout: float) -> bool:
        """Wait for a wake-up. False when the timeout ran out first."""
        event = self._event(config_id)
        try:
            await asyncio.wait_for(event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            event.clear()

    def forget(self, config_id: int) -> None:
        self._wakeups.pop(config_id, None)


class GuildContexts:
    """Contexts of the guilds one bot instance serves."""

    def __init__(self) -> None:
        self._contexts: dict[int, GuildContext] = {}

    def get(self, guild_id: int) -> GuildContext:
        if guild_id not in self._contexts:
            self._contexts[guild_id] = GuildContext(guild_id=guild_id)
        return self._contexts[guild_id]

    def drop(self, guild_id: int) -> None:
        self._contexts.pop(guild_id, None)

    def __iter__(self):
        return iter(list(self._contexts.values()))
