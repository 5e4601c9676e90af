"""Tests for FastAPI REST and WebSocket endpoints."""

from __future__ import annotations

import os
from unittest.mock import AsyncMock, patch

# Disable rate limiting before importing the app module
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from auction.errors import GameAlreadyStarted, UnknownGame, UnknownUser
from auction.models import GameState, GameStatus, PlayerInfo

# We need to patch the lifespan so it doesn't start background tasks or Redis
import contextlib


@contextlib.asynccontextmanager
async def _noop_lifespan(app):
    yield


# Patch lifespan BEFORE importing app
with patch("auction.main.lifespan", _noop_lifespan):
    from auction.main import app as fastapi_app


PATCH_GM = "auction.main.game_manager"


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://test")


def _sample_game_state(game_id: int = 1, code: str = "ABC123") -> GameState:
    return GameState(
        game_id=game_id,
        code=code,
        status=GameStatus.WAITING,
        current_round=0,
        total_rounds=18,
        starting_time_bank=600,
        is_public=True,
        players=[
            PlayerInfo(
                id=1,
                username="alice",
                display_name="Alice",
                initials="A",
                is_host=True,
                is_ready=True,
                time_bank=600,
            )
        ],
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class TestRegisterEndpoint:
    @pytest.fixture(autouse=True)
    def _mock(self):
        with patch(f"{PATCH_GM}.register_user", new_callable=AsyncMock) as m:
            self.register_user = m
            yield

    async def test_register_new_user(self):
        self.register_user.return_value = (
            {"id": 1, "username": "alice", "display_name": "Alice", "is_bot": False},
            True,
        )
        async with _client() as client:
            resp = await client.post(
                "/api/register", json={"username": "alice", "displayName": "Alice"}
            )

        assert resp.status_code == 201
        assert resp.json() == {"id": 1, "username": "alice", "displayName": "Alice", "isBot": False}
        self.register_user.assert_awaited_once_with("alice", "Alice")

    async def test_register_existing_user(self):
        self.register_user.return_value = (
            {"id": 1, "username": "alice", "display_name": "alice", "is_bot": False},
            False,
        )
        async with _client() as client:
            resp = await client.post("/api/register", json={"username": "alice"})
        assert resp.status_code == 200

    async def test_register_validation_error(self):
        async with _client() as client:
            resp = await client.post("/api/register", json={"username": ""})
        assert resp.status_code == 422


class TestUserEndpoints:
    async def test_get_user_not_found(self):
        with patch(f"{PATCH_GM}.get_user", new_callable=AsyncMock, side_effect=UnknownUser()):
            async with _client() as client:
                resp = await client.get("/api/users/9")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "User not found"

    async def test_user_games(self):
        with patch(
            f"{PATCH_GM}.list_user_games",
            new_callable=AsyncMock,
            return_value=[_sample_game_state()],
        ):
            async with _client() as client:
                resp = await client.get("/api/users/1/games")
        assert resp.status_code == 200
        assert resp.json()[0]["gameId"] == 1


# ---------------------------------------------------------------------------
# Games
# ---------------------------------------------------------------------------


class TestCreateGameEndpoint:
    @pytest.fixture(autouse=True)
    def _mock(self):
        with patch(f"{PATCH_GM}.create_game", new_callable=AsyncMock) as m:
            self.create_game = m
            yield

    async def test_create_game_success(self):
        self.create_game.return_value = _sample_game_state()

        async with _client() as client:
            resp = await client.post(
                "/api/games",
                json={"createdById": 1, "totalRounds": 5, "startingTimeBank": 120},
            )

        assert resp.status_code == 201
        body = resp.json()
        assert body["code"] == "ABC123"
        assert body["status"] == "waiting"
        assert body["players"][0]["isHost"] is True
        req = self.create_game.await_args.args[0]
        assert req.total_rounds == 5
        assert req.starting_time_bank == 120

    async def test_create_game_validation_error(self):
        """Out-of-range settings should return 422."""
        async with _client() as client:
            resp = await client.post("/api/games", json={"createdById": 1, "totalRounds": 0})
        assert resp.status_code == 422

    async def test_create_game_unknown_creator(self):
        self.create_game.side_effect = UnknownUser()
        async with _client() as client:
            resp = await client.post("/api/games", json={"createdById": 99})
        assert resp.status_code == 404


class TestJoinByCodeEndpoint:
    @pytest.fixture(autouse=True)
    def _mock(self):
        with patch(f"{PATCH_GM}.find_game_by_code", new_callable=AsyncMock) as m1, \
             patch("auction.main._join_and_resync", new_callable=AsyncMock) as m2:
            self.find_game_by_code = m1
            self.join = m2
            yield

    async def test_join_success(self):
        self.find_game_by_code.return_value = {"id": 4}
        self.join.return_value = _sample_game_state(game_id=4)

        async with _client() as client:
            resp = await client.post("/api/games/join", json={"userId": 2, "code": "abc123"})

        assert resp.status_code == 200
        assert resp.json()["gameId"] == 4
        self.find_game_by_code.assert_awaited_once_with("ABC123")
        self.join.assert_awaited_once_with(4, 2)

    async def test_join_unknown_code(self):
        self.find_game_by_code.side_effect = UnknownGame()
        async with _client() as client:
            resp = await client.post("/api/games/join", json={"userId": 2, "code": "NOPE00"})
        assert resp.status_code == 404

    async def test_join_started_game(self):
        self.find_game_by_code.return_value = {"id": 4}
        self.join.side_effect = GameAlreadyStarted()
        async with _client() as client:
            resp = await client.post("/api/games/join", json={"userId": 2, "code": "ABC123"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Game already started"


class TestGetGameEndpoint:
    @pytest.fixture(autouse=True)
    def _mock(self):
        with patch(f"{PATCH_GM}.get_game_state", new_callable=AsyncMock) as m:
            self.get_game_state = m
            yield

    async def test_get_game_success(self):
        self.get_game_state.return_value = _sample_game_state()
        async with _client() as client:
            resp = await client.get("/api/games/1")
        assert resp.status_code == 200
        assert resp.json()["code"] == "ABC123"

    async def test_get_game_not_found(self):
        self.get_game_state.return_value = None
        async with _client() as client:
            resp = await client.get("/api/games/404")
        assert resp.status_code == 404

    async def test_public_route_is_not_a_game_id(self):
        with patch(
            f"{PATCH_GM}.list_public_games",
            new_callable=AsyncMock,
            return_value=[_sample_game_state()],
        ):
            async with _client() as client:
                resp = await client.get("/api/games/public")
        assert resp.status_code == 200
        assert len(resp.json()) == 1
        self.get_game_state.assert_not_awaited()


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class TestAdminEndpoints:
    @pytest.fixture(autouse=True)
    def _password(self):
        with patch("auction.main.ADMIN_PASSWORD", "secret"):
            yield

    async def test_requires_password(self):
        async with _client() as client:
            resp = await client.get("/api/admin/summary")
        assert resp.status_code == 401

    async def test_wrong_password(self):
        async with _client() as client:
            resp = await client.get(
                "/api/admin/summary", headers={"Authorization": "Bearer nope"}
            )
        assert resp.status_code == 401

    async def test_not_configured(self):
        with patch("auction.main.ADMIN_PASSWORD", ""):
            async with _client() as client:
                resp = await client.get(
                    "/api/admin/summary", headers={"Authorization": "Bearer secret"}
                )
        assert resp.status_code == 503

    async def test_summary(self):
        summary = {
            "games_created_24h": 1,
            "games_finished_24h": 0,
            "games_abandoned_24h": 1,
            "open_games_count": 0,
        }
        with patch("auction.main.metrics.get_summary", new_callable=AsyncMock, return_value=summary):
            async with _client() as client:
                resp = await client.get(
                    "/api/admin/summary", headers={"Authorization": "Bearer secret"}
                )
        assert resp.status_code == 200
        assert resp.json() == summary

    async def test_sweep(self):
        with patch(
            "auction.main.sweep_games",
            new_callable=AsyncMock,
            return_value={"completed": [3], "kept": [4]},
        ):
            async with _client() as client:
                resp = await client.post(
                    "/api/admin/sweep", headers={"Authorization": "Bearer secret"}
                )
        assert resp.json() == {"completed": [3], "kept": [4]}

    async def test_eliminate(self):
        with patch(
            f"{PATCH_GM}.eliminate_participants", new_callable=AsyncMock, return_value=[2]
        ) as m:
            async with _client() as client:
                resp = await client.post(
                    "/api/admin/games/7/eliminate",
                    json={"userIds": [2]},
                    headers={"Authorization": "Bearer secret"},
                )
        assert resp.status_code == 200
        assert resp.json() == {"eliminated": [2]}
        m.assert_awaited_once_with(7, [2])


# ---------------------------------------------------------------------------
# End to end over the in-memory store
# ---------------------------------------------------------------------------


class TestLobbyFlow:
    async def test_register_create_join_by_code(self, store):
        async with _client() as client:
            alice = (await client.post("/api/register", json={"username": "alice"})).json()
            bob = (await client.post("/api/login", json={"username": "bob"})).json()

            created = await client.post(
                "/api/games", json={"createdById": alice["id"], "totalRounds": 3}
            )
            assert created.status_code == 201
            game = created.json()

            public = (await client.get("/api/games/public")).json()
            assert [g["gameId"] for g in public] == [game["gameId"]]

            joined = await client.post(
                "/api/games/join", json={"userId": bob["id"], "code": game["code"]}
            )
            assert joined.status_code == 200
            assert {p["id"] for p in joined.json()["players"]} == {alice["id"], bob["id"]}

            again = await client.post(
                "/api/games/join", json={"userId": bob["id"], "code": game["code"]}
            )
            assert len(again.json()["players"]) == 2

            mine = (await client.get(f"/api/users/{bob['id']}/games")).json()
            assert [g["gameId"] for g in mine] == [game["gameId"]]


class TestWebSocketEndpoint:
    def test_identify_and_join(self, store):
        client = TestClient(fastapi_app)
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "IDENTIFY", "userId": 1})
            assert ws.receive_json() == {"type": "ERROR", "message": "User not found"}

            store.users[1] = {"id": 1, "username": "alice", "display_name": "Alice", "is_bot": False}
            store.handles["alice"] = 1
            ws.send_json({"type": "IDENTIFY", "userId": 1})
            assert ws.receive_json() == {"type": "IDENTIFIED", "userId": 1}

            ws.send_json({"type": "BUZZER_RELEASE", "gameId": 1})
            assert ws.receive_json() == {"type": "ERROR", "message": "Invalid message format"}
