"""Lifecycle sweeper — background task that reclaims abandoned games.

An open game is completed when:
  1. it has fewer than MIN_PLAYERS participants, or
  2. it is still in the lobby and nobody is connected to its room.

Games with activity (joins, ready toggles, bids) inside SWEEP_GRACE_SECONDS
are left alone so a freshly created lobby is not reclaimed before its
creator connects. Each decision runs on the game's actor and re-checks the
game there.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time

from auction import game_manager, metrics, redis_client
from auction.actors import actors

logger = logging.getLogger(__name__)

# How often the sweeper runs (seconds).  Default: every 5 minutes.
SWEEP_INTERVAL: float = float(os.getenv("SWEEP_INTERVAL", "300"))

# Recently active games are skipped (seconds).
SWEEP_GRACE_SECONDS: float = float(os.getenv("SWEEP_GRACE_SECONDS", "120"))


async def sweep_games(now: float | None = None) -> dict[str, list[int]]:
    """Check every open game and complete the abandoned ones.

    Returns a dict with 'completed' (ids force-completed) and 'kept' (ids
    checked but left open).
    """
    if now is None:
        now = time.time()
    completed: list[int] = []
    kept: list[int] = []

    for game_id in await redis_client.list_open_game_ids():
        try:
            if await redis_client.load_game(game_id) is None:
                await redis_client.mark_game_closed(game_id)
                continue

            last_activity = await redis_client.get_last_activity(game_id)
            if last_activity is not None and now - last_activity < SWEEP_GRACE_SECONDS:
                kept.append(game_id)
                continue

            if await actors.submit(game_id, game_manager.check_abandoned, game_id):
                completed.append(game_id)
            else:
                kept.append(game_id)
        except Exception:
            logger.exception("Error checking game %s for sweep", game_id)
            kept.append(game_id)

    actors.prune(kept)
    return {"completed": completed, "kept": kept}


async def _prune_metrics() -> None:
    """Prune old metrics entries (called after each sweep pass)."""
    try:
        await metrics.prune_old_metrics()
    except Exception:
        logger.exception("Failed to prune old metrics")


class LifecycleSweeper:
    """Background asyncio task that periodically sweeps open games."""

    def __init__(self) -> None:
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Lifecycle sweeper started (interval=%ds)", int(SWEEP_INTERVAL))

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Lifecycle sweeper stopped")

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(SWEEP_INTERVAL)
                try:
                    result = await sweep_games()
                    await _prune_metrics()
                    if result["completed"]:
                        logger.info(
                            "Sweep pass: completed %d game(s): %s",
                            len(result["completed"]),
                            ", ".join(str(g) for g in result["completed"]),
                        )
                    else:
                        logger.debug("Sweep pass: nothing to reclaim")
                except Exception:
                    logger.exception("Sweep pass failed")
        except asyncio.CancelledError:
            pass


# Singleton
sweeper = LifecycleSweeper()
