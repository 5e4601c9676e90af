"""Scheduled events: per-game transitions that fire at a deadline unless cancelled.

One asyncio background loop polls the pending events; due handlers are
submitted to the owning game's actor, so they serialize with client
messages. Handlers re-check game state on entry: an event popped just before
a cancel may still run.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from auction.actors import actors

logger = logging.getLogger(__name__)

# How often the loop checks for due events (seconds)
TICK_INTERVAL = float(os.getenv("SCHEDULER_TICK", "0.25"))

# Event kinds
COUNTDOWN = "countdown"
ROUND_START = "round_start"
ROUND_TIMEOUT = "round_timeout"

Handler = Callable[..., Awaitable[Any]]


@dataclass
class ScheduledEvent:
    game_id: int
    kind: str
    deadline: float
    handler: Handler
    args: tuple[Any, ...] = field(default_factory=tuple)


class EventScheduler:
    """At most one pending event per (game, kind); scheduling again replaces it."""

    def __init__(self) -> None:
        self._task: asyncio.Task | None = None
        self._events: dict[tuple[int, str], ScheduledEvent] = {}

    def start(self) -> None:
        """Start the background loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Event scheduler started (tick=%.2fs)", TICK_INTERVAL)

    def stop(self) -> None:
        """Stop the background loop."""
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Event scheduler stopped")

    def schedule(
        self, game_id: int, kind: str, delay: float, handler: Handler, *args: Any
    ) -> ScheduledEvent:
        event = ScheduledEvent(game_id, kind, time.time() + delay, handler, args)
        self._events[(game_id, kind)] = event
        return event

    def cancel(self, game_id: int, kind: str) -> bool:
        return self._events.pop((game_id, kind), None) is not None

    def cancel_game(self, game_id: int) -> int:
        keys = [key for key in self._events if key[0] == game_id]
        for key in keys:
            del self._events[key]
        return len(keys)

    def pending(self, game_id: int) -> dict[str, float]:
        """kind -> deadline for every pending event of a game."""
        return {
            kind: ev.deadline for (gid, kind), ev in self._events.items() if gid == game_id
        }

    def clear(self) -> None:
        self._events.clear()

    async def run_due(self, now: float | None = None) -> int:
        """Fire every event whose deadline has passed. Returns how many fired."""
        if now is None:
            now = time.time()
        due = sorted(
            (ev for ev in self._events.values() if now >= ev.deadline),
            key=lambda ev: ev.deadline,
        )
        for ev in due:
            # Pop before firing so a handler can schedule the next event of its kind.
            if self._events.get((ev.game_id, ev.kind)) is ev:
                del self._events[(ev.game_id, ev.kind)]
        if due:
            await asyncio.gather(*(self._fire(ev) for ev in due))
        return len(due)

    async def _fire(self, ev: ScheduledEvent) -> None:
        try:
            await actors.submit(ev.game_id, ev.handler, *ev.args)
        except Exception:
            logger.exception("Scheduled %s failed for game %s", ev.kind, ev.game_id)

    async def _loop(self) -> None:
        """Main loop, checks all pending events each tick."""
        try:
            while True:
                await asyncio.sleep(TICK_INTERVAL)
                try:
                    await self.run_due()
                except Exception:
                    logger.exception("Scheduler tick failed")
        except asyncio.CancelledError:
            pass


# Singleton
scheduler = EventScheduler()
