"""Tests for the lifecycle sweeper."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, patch

from auction import game_manager
from auction.actors import actors
from auction.cleanup import SWEEP_GRACE_SECONDS, LifecycleSweeper, sweep_games
from auction.models import CreateGameRequest
from auction.timer import COUNTDOWN, scheduler


def _later() -> float:
    return time.time() + SWEEP_GRACE_SECONDS + 60


async def _lobby(with_guest: bool = True) -> tuple[int, int]:
    host, _ = await game_manager.register_user("alice")
    state = await game_manager.create_game(CreateGameRequest(created_by_id=host["id"]))
    if with_guest:
        guest, _ = await game_manager.register_user("bob")
        await game_manager.join_game(state.game_id, guest["id"])
    return state.game_id, host["id"]


class TestSweepGames:
    async def test_recent_games_are_kept(self, store):
        game_id, _ = await _lobby()
        result = await sweep_games()
        assert result == {"completed": [], "kept": [game_id]}
        assert store.game(game_id)["status"] == "waiting"

    async def test_unattended_lobby_is_completed(self, store):
        game_id, _ = await _lobby()
        result = await sweep_games(now=_later())
        assert result["completed"] == [game_id]
        assert store.game(game_id)["status"] == "completed"
        assert game_id not in store.open

    async def test_attended_lobby_is_kept(self, store, connect):
        game_id, host = await _lobby()
        await connect(host, game_id)
        result = await sweep_games(now=_later())
        assert result["kept"] == [game_id]

    async def test_solo_game_is_completed(self, store, connect):
        game_id, host = await _lobby(with_guest=False)
        conn = await connect(host, game_id)

        await sweep_games(now=_later())

        assert store.game(game_id)["status"] == "completed"
        assert conn.ws.frames("GAME_CANCELLED")[0]["reason"] == "Not enough players"

    async def test_running_game_is_kept_without_connections(self, store):
        game_id, _ = await _lobby()
        guest, _ = await game_manager.register_user("bob")
        await game_manager.set_ready(game_id, guest["id"], True)
        scheduler.cancel(game_id, COUNTDOWN)
        await game_manager.start_game(game_id)

        result = await sweep_games(now=_later())
        assert result["kept"] == [game_id]

    async def test_missing_game_row_is_closed(self, store):
        store.open.add(77)
        result = await sweep_games(now=_later())
        assert 77 not in store.open
        assert result == {"completed": [], "kept": []}

    async def test_failure_on_one_game_keeps_it(self, store):
        game_id, _ = await _lobby()
        with patch(
            "auction.cleanup.game_manager.check_abandoned",
            new_callable=AsyncMock,
            side_effect=RuntimeError("redis down"),
        ):
            result = await sweep_games(now=_later())
        assert result["kept"] == [game_id]

    async def test_completed_game_actors_are_pruned(self, store):
        game_id, _ = await _lobby()
        actors.get(game_id)
        await sweep_games(now=_later())
        assert len(actors) == 0


class TestLifecycleSweeper:
    async def test_start_stop(self):
        s = LifecycleSweeper()
        s.start()
        assert s._task is not None and not s._task.done()
        s.stop()
        await asyncio.sleep(0)
        assert s._task.done()
