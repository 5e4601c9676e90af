"""Broadcast fan-out: game snapshots and room-wide event delivery.

After a structurally significant event (game start, round end, a player
leaving) every connection in the room also gets a fresh GAME_STATE, so
clients never have to derive state incrementally.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from auction import redis_client
from auction.models import BotProfile, GameState, GameStatus, PlayerInfo
from auction.protocol import (
    GameStartMessage,
    GameStateMessage,
    PlayerLeftMessage,
    RoundEndMessage,
    ServerMessage,
)
from auction.resolver import initials
from auction.ws_manager import manager

logger = logging.getLogger(__name__)

RESYNC_AFTER = (GameStartMessage, RoundEndMessage, PlayerLeftMessage)


async def build_game_state(
    game_id: int, game_data: Optional[dict[str, Any]] = None
) -> Optional[GameState]:
    """Construct a GameState from stored rows plus live room membership."""
    if game_data is None:
        game_data = await redis_client.load_game(game_id)
        if game_data is None:
            return None

    participants = await redis_client.load_participants(game_id)
    connected = manager.connected_user_ids(game_id)

    players = []
    for p in participants:
        user = await redis_client.load_user(p["user_id"]) or {}
        display_name = user.get("display_name") or user.get("username") or ""
        players.append(
            PlayerInfo(
                id=p["user_id"],
                username=user.get("username", ""),
                display_name=display_name,
                initials=initials(display_name),
                is_host=p["is_host"],
                is_ready=p["is_ready"],
                time_bank=p["time_bank"],
                tokens_won=p["tokens_won"],
                is_eliminated=p["is_eliminated"],
                is_bot=p.get("is_bot", False),
                bot_profile=p.get("bot_profile"),
                has_bid_this_round=p["has_bid_this_round"],
                last_hold_time=p["last_hold_time"],
                connected=p["user_id"] in connected,
            )
        )

    return GameState(
        game_id=game_id,
        code=game_data["code"],
        status=GameStatus(game_data["status"]),
        current_round=game_data["current_round"],
        total_rounds=game_data["total_rounds"],
        starting_time_bank=game_data["starting_time_bank"],
        is_public=game_data["is_public"],
        round_active=game_data.get("round_active", False),
        round_winner_id=game_data.get("round_winner_id"),
        max_hold_time_last_round=game_data.get("max_hold_time_last_round", 0),
        has_bots=game_data.get("has_bots", False),
        bot_count=game_data.get("bot_count", 0),
        bot_profiles=[BotProfile(b) for b in game_data.get("bot_profiles", [])],
        players=players,
    )


async def resync(game_id: int) -> None:
    """Re-send the full snapshot to every connection in the room."""
    if manager.connection_count(game_id) == 0:
        return
    state = await build_game_state(game_id)
    if state is None:
        return
    await manager.broadcast(game_id, GameStateMessage.from_state(state))


async def broadcast(game_id: int, message: ServerMessage) -> int:
    """Deliver an event to the room; resync after structural events."""
    delivered = await manager.broadcast(game_id, message)
    if isinstance(message, RESYNC_AFTER):
        await resync(game_id)
    return delivered
