"""Bot action driver — background task that places bids for bot participants.

Each tick it looks for open rounds with bots that have not bid yet, asks the
decision function for a hold (outside the game's actor, since it may be
slow) and feeds the result through the normal hold/release path with the
round number it was decided for.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Optional

from auction import bots, game_manager, redis_client
from auction.actors import actors
from auction.errors import DuplicateBid
from auction.models import GameStatus

logger = logging.getLogger(__name__)

# How often the driver looks for bots that still owe a bid (seconds)
BOT_ACTION_INTERVAL = float(os.getenv("BOT_ACTION_INTERVAL", "2"))

DecideFn = Callable[[dict[str, Any], int, int, Optional[float]], Awaitable[float]]


class BotDriver:
    """Drives bot bids for every in-progress game with bots."""

    def __init__(self, decide: DecideFn = bots.decide_hold_time) -> None:
        self._task: asyncio.Task | None = None
        self._decide = decide
        # (game_id, user_id, round_number) currently being decided
        self._in_flight: set[tuple[int, int, int]] = set()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Bot driver started (interval=%.1fs)", BOT_ACTION_INTERVAL)

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Bot driver stopped")

    async def run_once(self) -> int:
        """One pass over open games. Returns how many bot bids were placed.

        Games are driven concurrently so a slow decision in one game never
        holds back bids in another.
        """
        game_ids = await redis_client.list_open_game_ids()
        results = await asyncio.gather(
            *(self._drive_game(game_id) for game_id in game_ids), return_exceptions=True
        )
        placed = 0
        for game_id, result in zip(game_ids, results):
            if isinstance(result, BaseException):
                logger.error("Bot driver error for game %s", game_id, exc_info=result)
            else:
                placed += result
        return placed

    async def _drive_game(self, game_id: int) -> int:
        game_data = await redis_client.load_game(game_id)
        if (
            game_data is None
            or not game_data.get("has_bots")
            or game_data["status"] != GameStatus.IN_PROGRESS.value
            or not game_data.get("round_active")
        ):
            return 0

        round_number = game_data["current_round"]
        previous_hold = game_data.get("max_hold_time_last_round") or None
        participants = await redis_client.load_participants(game_id)
        pending = [
            p
            for p in participants
            if p.get("is_bot")
            and not p["is_eliminated"]
            and not p["has_bid_this_round"]
            and (game_id, p["user_id"], round_number) not in self._in_flight
        ]
        for p in pending:
            self._in_flight.add((game_id, p["user_id"], round_number))

        results = await asyncio.gather(
            *(self._drive_bot(game_id, p, round_number, previous_hold) for p in pending),
            return_exceptions=True,
        )
        placed = 0
        for p, result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Bot %s failed to bid in game %s", p["user_id"], game_id, exc_info=result
                )
            elif result:
                placed += 1
        return placed

    async def _drive_bot(
        self,
        game_id: int,
        participant: dict[str, Any],
        round_number: int,
        previous_hold: Optional[float],
    ) -> bool:
        key = (game_id, participant["user_id"], round_number)
        try:
            hold = await self._decide(participant, game_id, round_number, previous_hold)
            return await actors.submit(
                game_id, _bot_bid, game_id, participant["user_id"], hold, round_number
            )
        finally:
            self._in_flight.discard(key)

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(BOT_ACTION_INTERVAL)
                try:
                    await self.run_once()
                except Exception:
                    logger.exception("Bot driver pass failed")
        except asyncio.CancelledError:
            pass


async def _bot_bid(game_id: int, user_id: int, hold: float, round_number: int) -> bool:
    """Runs on the game's actor: hold then release, both re-validated."""
    game_data = await redis_client.load_game(game_id)
    if game_data is None or game_data["current_round"] != round_number:
        return False
    await game_manager.buzzer_hold(game_id, user_id)
    try:
        return await game_manager.buzzer_release(game_id, user_id, hold, round_number)
    except DuplicateBid:
        return False


# Singleton
bot_driver = BotDriver()
