"""Per-game actors: every mutation of a game runs through its mailbox.

A ``GameActor`` runs submitted coroutine functions one at a time, in arrival
order, each to completion before the next starts. Jobs for different games
run concurrently. The drain task only exists while the mailbox is non-empty.

A job must never submit to its own game's actor: it would wait on itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)

Job = Callable[..., Awaitable[Any]]


class GameActor:
    """Serialized mailbox for one game."""

    def __init__(self, game_id: int) -> None:
        self.game_id = game_id
        self._mailbox: deque[tuple[Job, tuple[Any, ...], asyncio.Future]] = deque()
        self._task: asyncio.Task | None = None

    @property
    def idle(self) -> bool:
        return not self._mailbox and (self._task is None or self._task.done())

    async def submit(self, fn: Job, *args: Any) -> Any:
        """Queue ``fn(*args)`` and wait for its result (or exception)."""
        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        self._mailbox.append((fn, args, fut))
        if self._task is None or self._task.done():
            self._task = loop.create_task(self._drain())
        return await fut

    async def _drain(self) -> None:
        while self._mailbox:
            fn, args, fut = self._mailbox.popleft()
            if fut.cancelled():
                continue
            try:
                result = await fn(*args)
            except Exception as exc:
                if not fut.cancelled():
                    fut.set_exception(exc)
            else:
                if not fut.cancelled():
                    fut.set_result(result)


class ActorRegistry:
    """game_id -> GameActor, created on first use."""

    def __init__(self) -> None:
        self._actors: dict[int, GameActor] = {}

    def get(self, game_id: int) -> GameActor:
        actor = self._actors.get(game_id)
        if actor is None:
            actor = GameActor(game_id)
            self._actors[game_id] = actor
        return actor

    async def submit(self, game_id: int, fn: Job, *args: Any) -> Any:
        return await self.get(game_id).submit(fn, *args)

    def prune(self, keep: Iterable[int]) -> int:
        """Forget idle actors for games not in ``keep``. Returns how many."""
        keep_ids = set(keep)
        stale = [
            gid
            for gid, actor in self._actors.items()
            if gid not in keep_ids and actor.idle
        ]
        for gid in stale:
            del self._actors[gid]
        if stale:
            logger.debug("Pruned %d idle actor(s)", len(stale))
        return len(stale)

    def clear(self) -> None:
        self._actors.clear()

    def __len__(self) -> int:
        return len(self._actors)


actors = ActorRegistry()
