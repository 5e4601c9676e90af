"""Shared fixtures: an in-memory persistence double, fake sockets, clean singletons."""

from __future__ import annotations

import copy
import json
import time
from collections import defaultdict
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest

from auction import metrics, redis_client
from auction.actors import actors
from auction.timer import scheduler
from auction.ws_manager import ClientConnection, manager


class InMemoryStore:
    """Same coroutine surface as ``auction.redis_client``, backed by dicts."""

    FUNCTIONS = (
        "load_user",
        "load_user_by_handle",
        "create_user",
        "create_game",
        "store_game",
        "load_game",
        "load_game_by_code",
        "list_open_game_ids",
        "mark_game_closed",
        "list_user_game_ids",
        "add_participant",
        "store_participant",
        "load_participant",
        "load_participants",
        "store_round",
        "touch_activity",
        "get_last_activity",
    )

    def __init__(self) -> None:
        self.users: dict[int, dict] = {}
        self.handles: dict[str, int] = {}
        self.games: dict[int, dict] = {}
        self.codes: dict[str, int] = {}
        self.open: set[int] = set()
        self.user_games: dict[int, set[int]] = defaultdict(set)
        self.participants: dict[int, dict[int, dict]] = defaultdict(dict)
        self.rounds: dict[int, dict[int, dict]] = defaultdict(dict)
        self.activity: dict[int, float] = {}
        self._user_seq = 0
        self._game_seq = 0

    async def load_user(self, user_id: int) -> Optional[dict[str, Any]]:
        return copy.deepcopy(self.users.get(user_id))

    async def load_user_by_handle(self, username: str) -> Optional[dict[str, Any]]:
        user_id = self.handles.get(username.lower())
        return None if user_id is None else await self.load_user(user_id)

    async def create_user(self, username: str, display_name: str, is_bot: bool = False):
        if username.lower() in self.handles:
            return await self.load_user_by_handle(username)
        self._user_seq += 1
        data = {
            "id": self._user_seq,
            "username": username,
            "display_name": display_name,
            "is_bot": is_bot,
            "created_at": time.time(),
        }
        self.handles[username.lower()] = self._user_seq
        self.users[self._user_seq] = data
        return copy.deepcopy(data)

    async def create_game(self, data: dict[str, Any]) -> dict[str, Any]:
        self._game_seq += 1
        code = f"G{self._game_seq:05d}"
        data = {**data, "id": self._game_seq, "code": code}
        self.codes[code] = self._game_seq
        self.games[self._game_seq] = json.loads(json.dumps(data))
        self.open.add(self._game_seq)
        return copy.deepcopy(data)

    async def store_game(self, game_id: int, data: dict[str, Any]) -> None:
        self.games[game_id] = json.loads(json.dumps(data))

    async def load_game(self, game_id: int) -> Optional[dict[str, Any]]:
        return copy.deepcopy(self.games.get(game_id))

    async def load_game_by_code(self, code: str) -> Optional[dict[str, Any]]:
        game_id = self.codes.get(code.upper())
        return None if game_id is None else await self.load_game(game_id)

    async def list_open_game_ids(self) -> list[int]:
        return sorted(self.open)

    async def mark_game_closed(self, game_id: int) -> None:
        self.open.discard(game_id)

    async def list_user_game_ids(self, user_id: int) -> list[int]:
        return sorted(self.user_games.get(user_id, set()))

    async def add_participant(self, game_id: int, data: dict[str, Any]) -> dict[str, Any]:
        existing = self.participants[game_id].get(data["user_id"])
        if existing is not None:
            return copy.deepcopy(existing)
        self.participants[game_id][data["user_id"]] = json.loads(json.dumps(data))
        self.user_games[data["user_id"]].add(game_id)
        return copy.deepcopy(data)

    async def store_participant(self, game_id: int, data: dict[str, Any]) -> None:
        self.participants[game_id][data["user_id"]] = json.loads(json.dumps(data))

    async def load_participant(self, game_id: int, user_id: int) -> Optional[dict[str, Any]]:
        return copy.deepcopy(self.participants.get(game_id, {}).get(user_id))

    async def load_participants(self, game_id: int) -> list[dict[str, Any]]:
        rows = copy.deepcopy(list(self.participants.get(game_id, {}).values()))
        rows.sort(key=lambda p: (p.get("joined_at", 0), p["user_id"]))
        return rows

    async def store_round(self, game_id: int, round_number: int, data: dict[str, Any]) -> None:
        self.rounds[game_id][round_number] = json.loads(json.dumps(data))

    async def touch_activity(self, game_id: int) -> None:
        self.activity[game_id] = time.time()

    async def get_last_activity(self, game_id: int) -> Optional[float]:
        return self.activity.get(game_id)

    # --- test conveniences ---

    def participant(self, game_id: int, user_id: int) -> dict[str, Any]:
        return self.participants[game_id][user_id]

    def game(self, game_id: int) -> dict[str, Any]:
        return self.games[game_id]


class FakeWebSocket:
    """Records every frame sent through it."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[str] = []
        self.accepted = False
        self.closed: Optional[tuple[int, str]] = None
        self.fail = fail

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def types(self) -> list[str]:
        return [json.loads(text)["type"] for text in self.sent]

    def frames(self, type_: str) -> list[dict[str, Any]]:
        return [f for f in map(json.loads, self.sent) if f["type"] == type_]


@pytest.fixture(autouse=True)
def _reset_singletons(monkeypatch):
    actors.clear()
    scheduler.clear()
    manager._by_user.clear()
    manager._rooms.clear()
    monkeypatch.setattr(metrics, "record_game_created", AsyncMock())
    monkeypatch.setattr(metrics, "record_game_completed", AsyncMock())
    yield
    actors.clear()
    scheduler.clear()
    manager._by_user.clear()
    manager._rooms.clear()


@pytest.fixture
def store(monkeypatch) -> InMemoryStore:
    s = InMemoryStore()
    for name in InMemoryStore.FUNCTIONS:
        monkeypatch.setattr(redis_client, name, getattr(s, name))
    return s


@pytest.fixture
def connect(store):
    """Open an identified connection, optionally subscribed to a game room."""

    async def _connect(user_id: int, game_id: Optional[int] = None) -> ClientConnection:
        conn = await manager.accept(FakeWebSocket())
        await manager.identify(conn, user_id)
        if game_id is not None:
            manager.join(conn, game_id)
        return conn

    return _connect


async def drain_scheduler(limit: int = 50) -> int:
    """Fire scheduled events as if their deadlines passed, until none remain."""
    fired = 0
    for _ in range(limit):
        n = await scheduler.run_due(now=time.time() + 3600)
        if n == 0:
            break
        fired += n
    return fired


@pytest.fixture
def advance():
    return drain_scheduler
