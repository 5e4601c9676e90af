"""Redis client wrapper for users, games, participants and round history.

Every row is a JSON blob under its own key (or hash field), so each write is
atomic per row. Participant rows live in one hash per game keyed by user id,
which makes "one participant per (game, user)" structural: creation goes
through HSETNX.
"""

from __future__ import annotations

import json
import os
import random
import string
import time
from typing import Any, Optional

import redis.asyncio as redis

from auction.errors import InvalidAction

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

_pool: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    global _pool
    if _pool is None:
        _pool = redis.from_url(REDIS_URL, decode_responses=True)
    return _pool


USERS_SEQ_KEY = "users:next_id"
USERS_BY_HANDLE_KEY = "users:by_handle"
GAMES_SEQ_KEY = "games:next_id"
GAMES_BY_CODE_KEY = "games:by_code"
OPEN_GAMES_KEY = "games:open"


def _user_key(user_id: int) -> str:
    return f"user:{user_id}"


def _user_games_key(user_id: int) -> str:
    return f"user:{user_id}:games"


def _game_key(game_id: int) -> str:
    return f"game:{game_id}"


def _participants_key(game_id: int) -> str:
    return f"game:{game_id}:participants"


def _rounds_key(game_id: int) -> str:
    return f"game:{game_id}:rounds"


def _activity_key(game_id: int) -> str:
    return f"game:{game_id}:last_activity"


def _generate_code(length: int = 6) -> str:
    """Generate a short uppercase join code."""
    return "".join(random.choices(string.ascii_uppercase + string.digits, k=length))


# ------------------------------------------------------------------
# Users
# ------------------------------------------------------------------


async def load_user(user_id: int) -> Optional[dict[str, Any]]:
    r = await get_redis()
    raw = await r.get(_user_key(user_id))
    if raw is None:
        return None
    return json.loads(raw)


async def load_user_by_handle(username: str) -> Optional[dict[str, Any]]:
    r = await get_redis()
    user_id = await r.hget(USERS_BY_HANDLE_KEY, username.lower())
    if user_id is None:
        return None
    return await load_user(int(user_id))


async def create_user(
    username: str, display_name: str, is_bot: bool = False
) -> dict[str, Any]:
    """Create a user, or return the existing one holding that handle.

    Raises InvalidAction when the handle was claimed by a registration whose
    row is not written yet.
    """
    r = await get_redis()
    user_id = await r.incr(USERS_SEQ_KEY)
    claimed = await r.hsetnx(USERS_BY_HANDLE_KEY, username.lower(), user_id)
    if not claimed:
        existing = await load_user_by_handle(username)
        if existing is None:
            raise InvalidAction("Username is being registered, try again")
        return existing
    data = {
        "id": user_id,
        "username": username,
        "display_name": display_name,
        "is_bot": is_bot,
        "created_at": time.time(),
    }
    await r.set(_user_key(user_id), json.dumps(data))
    return data


# ------------------------------------------------------------------
# Games
# ------------------------------------------------------------------


async def create_game(data: dict[str, Any]) -> dict[str, Any]:
    """Assign an id and a unique join code, then store the game."""
    r = await get_redis()
    game_id = await r.incr(GAMES_SEQ_KEY)
    code = _generate_code()
    while not await r.hsetnx(GAMES_BY_CODE_KEY, code, game_id):
        code = _generate_code()
    data = {**data, "id": game_id, "code": code}
    await store_game(game_id, data)
    await r.sadd(OPEN_GAMES_KEY, game_id)
    return data


async def store_game(game_id: int, data: dict[str, Any]) -> None:
    r = await get_redis()
    await r.set(_game_key(game_id), json.dumps(data))


async def load_game(game_id: int) -> Optional[dict[str, Any]]:
    r = await get_redis()
    raw = await r.get(_game_key(game_id))
    if raw is None:
        return None
    return json.loads(raw)


async def load_game_by_code(code: str) -> Optional[dict[str, Any]]:
    r = await get_redis()
    game_id = await r.hget(GAMES_BY_CODE_KEY, code.upper())
    if game_id is None:
        return None
    return await load_game(int(game_id))


async def list_open_game_ids() -> list[int]:
    """Ids of every game that is not completed."""
    r = await get_redis()
    return sorted(int(g) for g in await r.smembers(OPEN_GAMES_KEY))


async def mark_game_closed(game_id: int) -> None:
    r = await get_redis()
    await r.srem(OPEN_GAMES_KEY, game_id)


async def list_user_game_ids(user_id: int) -> list[int]:
    r = await get_redis()
    return sorted(int(g) for g in await r.smembers(_user_games_key(user_id)))


# ------------------------------------------------------------------
# Participants
# ------------------------------------------------------------------


async def add_participant(game_id: int, data: dict[str, Any]) -> dict[str, Any]:
    """Insert a participant row unless one exists; returns the stored row."""
    r = await get_redis()
    user_id = data["user_id"]
    created = await r.hsetnx(_participants_key(game_id), user_id, json.dumps(data))
    if not created:
        existing = await load_participant(game_id, user_id)
        if existing is not None:
            return existing
    await r.sadd(_user_games_key(user_id), game_id)
    return data


async def store_participant(game_id: int, data: dict[str, Any]) -> None:
    r = await get_redis()
    await r.hset(_participants_key(game_id), data["user_id"], json.dumps(data))


async def load_participant(game_id: int, user_id: int) -> Optional[dict[str, Any]]:
    r = await get_redis()
    raw = await r.hget(_participants_key(game_id), user_id)
    if raw is None:
        return None
    return json.loads(raw)


async def load_participants(game_id: int) -> list[dict[str, Any]]:
    """All participant rows for a game, in join order."""
    r = await get_redis()
    rows = await r.hgetall(_participants_key(game_id))
    participants = [json.loads(raw) for raw in rows.values()]
    participants.sort(key=lambda p: (p.get("joined_at", 0), p["user_id"]))
    return participants


# ------------------------------------------------------------------
# Round audit trail
# ------------------------------------------------------------------


async def store_round(game_id: int, round_number: int, data: dict[str, Any]) -> None:
    r = await get_redis()
    await r.hset(_rounds_key(game_id), round_number, json.dumps(data))


# ------------------------------------------------------------------
# Activity
# ------------------------------------------------------------------


async def touch_activity(game_id: int) -> None:
    """Update the last-activity timestamp for a game (Unix epoch seconds)."""
    r = await get_redis()
    await r.set(_activity_key(game_id), str(time.time()))


async def get_last_activity(game_id: int) -> float | None:
    """Return the last-activity timestamp for a game, or None."""
    r = await get_redis()
    raw = await r.get(_activity_key(game_id))
    if raw is None:
        return None
    return float(raw)


async def close() -> None:
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
