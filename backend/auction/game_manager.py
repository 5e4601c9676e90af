"""Game manager: the game session state machine and round resolver.

Lifecycle: waiting -> starting (countdown) -> in_progress (round loop) ->
completed. Every coroutine that mutates a game must run on that game's actor
(``auction.actors``); user and game creation are the only exceptions since
nothing else can reference the new rows yet.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Iterable, Optional

from auction import bots, metrics, redis_client, resolver
from auction.broadcast import broadcast, build_game_state, resync
from auction.errors import (
    DuplicateBid,
    GameAlreadyStarted,
    InvalidAction,
    UnknownGame,
    UnknownUser,
)
from auction.models import CreateGameRequest, GameState, GameStatus, Ranking
from auction.protocol import (
    BuzzerHoldEvent,
    BuzzerReleaseEvent,
    GameCancelledMessage,
    GameEndMessage,
    GameStartingMessage,
    GameStartMessage,
    PlayerLeftMessage,
    PlayerReadyChanged,
    RoundEndMessage,
    RoundStartMessage,
)
from auction.timer import COUNTDOWN, ROUND_START, ROUND_TIMEOUT, scheduler
from auction.ws_manager import manager

logger = logging.getLogger(__name__)

COUNTDOWN_SECONDS = int(os.getenv("COUNTDOWN_SECONDS", "3"))
ROUND_DELAY_SECONDS = float(os.getenv("ROUND_DELAY_SECONDS", "3"))

# Humans needed to start, and participants needed to keep a game alive
MIN_PLAYERS = 2


def _now_ms() -> int:
    return int(time.time() * 1000)


# ------------------------------------------------------------------
# Users
# ------------------------------------------------------------------


async def register_user(
    username: str, display_name: Optional[str] = None
) -> tuple[dict[str, Any], bool]:
    """Return (user, created). An existing handle just returns its user."""
    existing = await redis_client.load_user_by_handle(username)
    if existing is not None:
        return existing, False
    user = await redis_client.create_user(username, display_name or username)
    return user, True


async def login_user(username: str) -> dict[str, Any]:
    """Username-only login; unknown handles are registered on the spot."""
    user, _ = await register_user(username)
    return user


async def get_user(user_id: int) -> dict[str, Any]:
    user = await redis_client.load_user(user_id)
    if user is None:
        raise UnknownUser()
    return user


# ------------------------------------------------------------------
# Game creation and lobby
# ------------------------------------------------------------------


def _new_participant(
    game_data: dict[str, Any],
    user_id: int,
    *,
    is_host: bool = False,
    is_ready: bool = False,
    is_bot: bool = False,
    bot_profile: Optional[str] = None,
) -> dict[str, Any]:
    return {
        "game_id": game_data["id"],
        "user_id": user_id,
        "is_host": is_host,
        "is_ready": is_ready,
        "time_bank": float(game_data["starting_time_bank"]),
        "tokens_won": 0,
        "is_eliminated": False,
        "is_bot": is_bot,
        "bot_profile": bot_profile,
        "has_bid_this_round": False,
        "last_hold_time": 0,
        "bid_order": None,
        "joined_at": time.time(),
    }


async def create_game(req: CreateGameRequest) -> GameState:
    """Create a game, seat the creator as host and add any bots."""
    creator = await get_user(req.created_by_id)

    with_bots = req.has_bots and req.bot_count > 0
    game_data = await redis_client.create_game(
        {
            "created_by_id": creator["id"],
            "status": GameStatus.WAITING.value,
            "current_round": 0,
            "total_rounds": req.total_rounds,
            "starting_time_bank": req.starting_time_bank,
            "is_public": req.is_public,
            "has_bots": with_bots,
            "bot_count": req.bot_count if with_bots else 0,
            "bot_profiles": [p.value for p in req.bot_profiles] if with_bots else [],
            "round_timeout": req.round_timeout,
            "round_active": False,
            "round_winner_id": None,
            "max_hold_time_last_round": 0,
            "bid_counter": 0,
            "created_at": time.time(),
            "started_at": None,
            "ended_at": None,
        }
    )
    game_id = game_data["id"]

    # The host is auto-ready
    await redis_client.add_participant(
        game_id, _new_participant(game_data, creator["id"], is_host=True, is_ready=True)
    )

    if with_bots:
        await _add_bots(game_data, req.bot_count, req.bot_profiles)

    await redis_client.touch_activity(game_id)
    await metrics.record_game_created(game_id, with_bots)
    logger.info("Game %s created by user %s (code=%s)", game_id, creator["id"], game_data["code"])
    return await build_game_state(game_id, game_data)


async def _add_bots(game_data: dict[str, Any], count: int, profiles: Iterable[Any]) -> None:
    for bot in bots.pick_bots(count, list(profiles)):
        user = await redis_client.load_user_by_handle(bot.username)
        if user is None:
            user = await redis_client.create_user(bot.username, bot.display_name, is_bot=True)
        await redis_client.add_participant(
            game_data["id"],
            _new_participant(
                game_data,
                user["id"],
                is_ready=True,
                is_bot=True,
                bot_profile=bot.profile.value,
            ),
        )
        logger.info("Added bot %s to game %s", bot.display_name, game_data["id"])


async def load_game_or_raise(game_id: int) -> dict[str, Any]:
    game_data = await redis_client.load_game(game_id)
    if game_data is None:
        raise UnknownGame()
    return game_data


async def find_game_by_code(code: str) -> dict[str, Any]:
    game_data = await redis_client.load_game_by_code(code)
    if game_data is None:
        raise UnknownGame()
    return game_data


async def join_game(game_id: int, user_id: int) -> tuple[dict[str, Any], dict[str, Any]]:
    """Create or resume a user's participation. Returns (participant, user).

    A lobby join creates the participant once; any later join (including
    after the game started) resumes the existing row untouched. Non-members
    cannot join once the lobby has closed.
    """
    game_data = await load_game_or_raise(game_id)
    user = await get_user(user_id)

    participant = await redis_client.load_participant(game_id, user_id)
    if participant is None and game_data["status"] != GameStatus.WAITING.value:
        raise GameAlreadyStarted()

    is_creator = game_data["created_by_id"] == user_id

    if participant is None:
        participants = await redis_client.load_participants(game_id)
        has_host = any(p["is_host"] for p in participants)
        should_be_host = is_creator and not has_host
        participant = await redis_client.add_participant(
            game_id,
            _new_participant(
                game_data, user_id, is_host=should_be_host, is_ready=should_be_host
            ),
        )
        logger.info("User %s joined game %s (host=%s)", user_id, game_id, should_be_host)
    elif is_creator and not participant["is_host"]:
        participants = await redis_client.load_participants(game_id)
        if not any(p["is_host"] for p in participants):
            participant["is_host"] = True
            participant["is_ready"] = True
            await redis_client.store_participant(game_id, participant)
            logger.info("User %s reclaimed host of game %s", user_id, game_id)

    await redis_client.touch_activity(game_id)
    return participant, user


async def set_ready(game_id: int, user_id: int, is_ready: bool) -> None:
    """Toggle a lobby participant's ready flag; may start the countdown."""
    game_data = await load_game_or_raise(game_id)
    if game_data["status"] != GameStatus.WAITING.value:
        raise InvalidAction("Game is not in the lobby")

    participant = await redis_client.load_participant(game_id, user_id)
    if participant is None:
        raise InvalidAction("Not a participant in this game")

    participant["is_ready"] = is_ready
    await redis_client.store_participant(game_id, participant)
    await redis_client.touch_activity(game_id)

    await broadcast(
        game_id, PlayerReadyChanged(game_id=game_id, user_id=user_id, is_ready=is_ready)
    )

    participants = await redis_client.load_participants(game_id)
    if can_start(participants):
        await start_countdown(game_id, game_data)


def can_start(participants: list[dict[str, Any]]) -> bool:
    humans = [p for p in participants if not p.get("is_bot") and not p["is_eliminated"]]
    return len(humans) >= MIN_PLAYERS and all(p["is_ready"] for p in participants)


# ------------------------------------------------------------------
# Countdown and start
# ------------------------------------------------------------------


async def start_countdown(game_id: int, game_data: dict[str, Any]) -> None:
    """waiting -> starting. No structural changes until the game starts."""
    game_data["status"] = GameStatus.STARTING.value
    await redis_client.store_game(game_id, game_data)
    logger.info("Game %s starting in %ds", game_id, COUNTDOWN_SECONDS)

    await broadcast(game_id, GameStartingMessage(game_id=game_id, countdown=COUNTDOWN_SECONDS))
    scheduler.schedule(game_id, COUNTDOWN, 1, countdown_tick, game_id, COUNTDOWN_SECONDS - 1)


async def countdown_tick(game_id: int, remaining: int) -> None:
    game_data = await redis_client.load_game(game_id)
    if game_data is None or game_data["status"] != GameStatus.STARTING.value:
        return
    if remaining <= 0:
        await start_game(game_id)
        return
    await broadcast(game_id, GameStartingMessage(game_id=game_id, countdown=remaining))
    scheduler.schedule(game_id, COUNTDOWN, 1, countdown_tick, game_id, remaining - 1)


async def start_game(game_id: int) -> bool:
    """starting -> in_progress, then open round 1."""
    game_data = await redis_client.load_game(game_id)
    if game_data is None or game_data["status"] != GameStatus.STARTING.value:
        return False

    participants = await redis_client.load_participants(game_id)
    for p in participants:
        resolver.reset_round(p)
        await redis_client.store_participant(game_id, p)

    game_data["status"] = GameStatus.IN_PROGRESS.value
    game_data["current_round"] = 1
    game_data["started_at"] = time.time()
    await redis_client.store_game(game_id, game_data)
    logger.info("Game %s started with %d participant(s)", game_id, len(participants))

    await broadcast(game_id, GameStartMessage(game_id=game_id))
    await begin_round(game_id, 1)
    return True


# ------------------------------------------------------------------
# Round loop
# ------------------------------------------------------------------


async def begin_round(game_id: int, round_number: int) -> bool:
    """Open ``round_number`` for bids and announce it."""
    game_data = await redis_client.load_game(game_id)
    if (
        game_data is None
        or game_data["status"] != GameStatus.IN_PROGRESS.value
        or game_data["current_round"] != round_number
        or game_data.get("round_active")
    ):
        return False

    game_data["round_active"] = True
    game_data["round_started_at"] = time.time()
    game_data["bid_counter"] = 0
    await redis_client.store_game(game_id, game_data)
    await redis_client.store_round(
        game_id,
        round_number,
        {
            "round_number": round_number,
            "winner_id": None,
            "started_at": game_data["round_started_at"],
            "ended_at": None,
            "bids": [],
        },
    )

    await broadcast(game_id, RoundStartMessage(game_id=game_id, round_number=round_number))

    if game_data.get("round_timeout"):
        scheduler.schedule(
            game_id, ROUND_TIMEOUT, game_data["round_timeout"], round_timeout, game_id, round_number
        )

    # Nobody left to bid: resolve straight away
    participants = await redis_client.load_participants(game_id)
    if resolver.round_complete(participants):
        await _resolve_round(game_id, game_data, participants)
    return True


async def buzzer_hold(game_id: int, user_id: int) -> bool:
    """Advisory hold start, broadcast for live timers. Returns False if ignored."""
    game_data = await load_game_or_raise(game_id)
    if not _round_open(game_data):
        logger.debug("Hold ignored: game %s has no open round", game_id)
        return False

    participant = await redis_client.load_participant(game_id, user_id)
    if participant is None or not resolver.can_bid(participant):
        return False

    await broadcast(
        game_id, BuzzerHoldEvent(game_id=game_id, user_id=user_id, timestamp=_now_ms())
    )
    return True


async def buzzer_release(
    game_id: int, user_id: int, hold_time: float, round_number: Optional[int] = None
) -> bool:
    """Submit a participant's bid for the open round.

    ``round_number`` pins the bid to the round it was decided for (bots and
    timeouts); a mismatch means the round moved on and the bid is dropped.
    Returns False when the bid is ignored; raises DuplicateBid on a second
    bid in the same round.
    """
    game_data = await load_game_or_raise(game_id)
    if not _round_open(game_data):
        logger.info("Release ignored: game %s has no open round", game_id)
        return False
    if round_number is not None and round_number != game_data["current_round"]:
        logger.debug(
            "Stale release for game %s round %s (now %s)",
            game_id,
            round_number,
            game_data["current_round"],
        )
        return False

    participant = await redis_client.load_participant(game_id, user_id)
    if participant is None or participant["is_eliminated"]:
        logger.info("Release ignored: user %s cannot bid in game %s", user_id, game_id)
        return False
    if participant["has_bid_this_round"]:
        raise DuplicateBid()

    game_data["bid_counter"] = game_data.get("bid_counter", 0) + 1
    recorded = resolver.apply_bid(participant, hold_time, game_data["bid_counter"])
    await redis_client.store_participant(game_id, participant)
    await redis_client.store_game(game_id, game_data)
    await redis_client.touch_activity(game_id)

    await broadcast(
        game_id,
        BuzzerReleaseEvent(
            game_id=game_id, user_id=user_id, timestamp=_now_ms(), hold_time=recorded
        ),
    )

    participants = await redis_client.load_participants(game_id)
    if resolver.round_complete(participants):
        await _resolve_round(game_id, game_data, participants)
    else:
        waiting = sum(
            1 for p in resolver.active_participants(participants) if not p["has_bid_this_round"]
        )
        logger.debug("Game %s: waiting for %d more bid(s)", game_id, waiting)
    return True


async def round_timeout(game_id: int, round_number: int) -> None:
    """Treat silence as a zero-length bid once the round timeout expires."""
    game_data = await redis_client.load_game(game_id)
    if game_data is None or not _round_open(game_data):
        return
    if game_data["current_round"] != round_number:
        return

    participants = await redis_client.load_participants(game_id)
    silent = [p["user_id"] for p in participants if resolver.can_bid(p)]
    logger.info("Round %s of game %s timed out; forcing %d bid(s)", round_number, game_id, len(silent))
    for user_id in silent:
        await buzzer_release(game_id, user_id, 0, round_number)


async def _resolve_round(
    game_id: int, game_data: dict[str, Any], participants: list[dict[str, Any]]
) -> None:
    round_number = game_data["current_round"]
    outcome = resolver.resolve_round(participants)
    scheduler.cancel(game_id, ROUND_TIMEOUT)

    for p in participants:
        resolver.reset_round(p)
        await redis_client.store_participant(game_id, p)

    next_round = round_number + 1
    finished = next_round > game_data["total_rounds"]

    game_data["round_winner_id"] = outcome.winner_id
    game_data["max_hold_time_last_round"] = outcome.winner_hold_time
    game_data["current_round"] = next_round
    game_data["round_active"] = False
    await redis_client.store_game(game_id, game_data)
    await redis_client.store_round(
        game_id,
        round_number,
        {
            "round_number": round_number,
            "winner_id": outcome.winner_id,
            "started_at": game_data.get("round_started_at"),
            "ended_at": time.time(),
            "bids": outcome.bids,
        },
    )

    if outcome.winner_id is None:
        logger.info("Game %s round %s: no bids, no winner", game_id, round_number)
    else:
        logger.info(
            "Game %s round %s won by user %s (%.0fms)",
            game_id,
            round_number,
            outcome.winner_id,
            outcome.winner_hold_time,
        )

    await broadcast(
        game_id,
        RoundEndMessage(
            game_id=game_id,
            round_number=round_number,
            winner_id=outcome.winner_id,
            winner_hold_time=outcome.winner_hold_time,
            next_round=-1 if finished else next_round,
        ),
    )

    if finished:
        await end_game(game_id)
    else:
        scheduler.schedule(game_id, ROUND_START, ROUND_DELAY_SECONDS, begin_round, game_id, next_round)


def _round_open(game_data: dict[str, Any]) -> bool:
    return game_data["status"] == GameStatus.IN_PROGRESS.value and bool(
        game_data.get("round_active")
    )


# ------------------------------------------------------------------
# Completion
# ------------------------------------------------------------------


async def end_game(game_id: int) -> list[Ranking]:
    """in_progress -> completed: eliminate the fewest-token holders and rank."""
    game_data = await redis_client.load_game(game_id)
    if game_data is None or game_data["status"] == GameStatus.COMPLETED.value:
        return []

    game_data["status"] = GameStatus.COMPLETED.value
    game_data["round_active"] = False
    game_data["ended_at"] = time.time()
    await redis_client.store_game(game_id, game_data)
    await redis_client.mark_game_closed(game_id)
    scheduler.cancel_game(game_id)

    participants = await redis_client.load_participants(game_id)
    eliminated = resolver.eliminate_lowest(participants)
    for p in participants:
        await redis_client.store_participant(game_id, p)

    rankings = await _rankings(participants)
    logger.info("Game %s completed; eliminated %s", game_id, eliminated)

    await broadcast(game_id, GameEndMessage(game_id=game_id, rankings=rankings))
    await resync(game_id)
    await metrics.record_game_completed(game_id, metrics.FINISHED, len(participants))
    return rankings


async def _rankings(participants: list[dict[str, Any]]) -> list[Ranking]:
    rankings = []
    for p in resolver.rank(participants):
        user = await redis_client.load_user(p["user_id"]) or {}
        rankings.append(
            Ranking(
                user_id=p["user_id"],
                username=user.get("username", ""),
                display_name=user.get("display_name", ""),
                tokens=p["tokens_won"],
                time_remaining=p["time_bank"] or 0,
                is_eliminated=p["is_eliminated"],
            )
        )
    return rankings


async def force_complete(game_id: int, reason: str) -> bool:
    """Any state -> completed for an abandoned game; releases its room."""
    game_data = await redis_client.load_game(game_id)
    if game_data is None or game_data["status"] == GameStatus.COMPLETED.value:
        return False

    previous = game_data["status"]
    game_data["status"] = GameStatus.COMPLETED.value
    game_data["round_active"] = False
    game_data["ended_at"] = time.time()
    await redis_client.store_game(game_id, game_data)
    await redis_client.mark_game_closed(game_id)
    scheduler.cancel_game(game_id)

    participants = await redis_client.load_participants(game_id)
    logger.info("Game %s force-completed from %s: %s", game_id, previous, reason)

    await broadcast(game_id, GameCancelledMessage(game_id=game_id, reason=reason))
    manager.release_room(game_id)
    await metrics.record_game_completed(game_id, metrics.ABANDONED, len(participants))
    return True


def abandonment_reason(
    game_data: dict[str, Any], participant_count: int, live_connections: int
) -> Optional[str]:
    """Why a game should be reclaimed, or None if it is still viable."""
    if game_data["status"] == GameStatus.COMPLETED.value:
        return None
    if participant_count < MIN_PLAYERS:
        return "Not enough players"
    if game_data["status"] == GameStatus.WAITING.value and live_connections == 0:
        return "Lobby abandoned"
    return None


async def check_abandoned(game_id: int) -> bool:
    """Complete the game if it can no longer be played. Returns True if it was."""
    game_data = await redis_client.load_game(game_id)
    if game_data is None:
        return False
    participants = await redis_client.load_participants(game_id)
    reason = abandonment_reason(game_data, len(participants), manager.connection_count(game_id))
    if reason is None:
        return False
    return await force_complete(game_id, reason)


async def handle_player_left(game_id: int, user_id: int) -> None:
    """A user's last connection left the room."""
    await broadcast(game_id, PlayerLeftMessage(game_id=game_id, user_id=user_id))
    if manager.connection_count(game_id) == 0:
        await check_abandoned(game_id)


async def eliminate_participants(game_id: int, user_ids: Iterable[int]) -> list[int]:
    """Eliminate participants mid-game; the open round may now be complete."""
    game_data = await load_game_or_raise(game_id)
    wanted = set(user_ids)

    participants = await redis_client.load_participants(game_id)
    eliminated = []
    for p in participants:
        if p["user_id"] in wanted and not p["is_eliminated"]:
            p["is_eliminated"] = True
            await redis_client.store_participant(game_id, p)
            eliminated.append(p["user_id"])

    if eliminated:
        logger.info("Game %s: eliminated %s", game_id, eliminated)
        await resync(game_id)
        if _round_open(game_data) and resolver.round_complete(participants):
            await _resolve_round(game_id, game_data, participants)
    return eliminated


# ------------------------------------------------------------------
# Queries
# ------------------------------------------------------------------


async def get_game_state(game_id: int) -> Optional[GameState]:
    return await build_game_state(game_id)


async def list_public_games() -> list[GameState]:
    """Public games still in the lobby."""
    games = []
    for game_id in await redis_client.list_open_game_ids():
        game_data = await redis_client.load_game(game_id)
        if (
            game_data
            and game_data["is_public"]
            and game_data["status"] == GameStatus.WAITING.value
        ):
            games.append(await build_game_state(game_id, game_data))
    return games


async def list_user_games(user_id: int) -> list[GameState]:
    """Games the user takes part in that are not completed."""
    await get_user(user_id)
    games = []
    for game_id in await redis_client.list_user_game_ids(user_id):
        game_data = await redis_client.load_game(game_id)
        if game_data and game_data["status"] != GameStatus.COMPLETED.value:
            games.append(await build_game_state(game_id, game_data))
    return games
