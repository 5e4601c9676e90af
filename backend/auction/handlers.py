"""WebSocket message dispatch.

``dispatch`` is the error boundary for client frames: whatever a handler
raises is turned into an ERROR frame (or dropped, for duplicate bids) and
never escapes to the receive loop. Game mutations are submitted to the
game's actor so they serialize with scheduled events and other clients.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from auction import game_manager
from auction.actors import actors
from auction.broadcast import broadcast, resync
from auction.errors import DuplicateBid, InternalFailure, NotIdentified, SessionError
from auction.protocol import (
    BuzzerHoldMessage,
    BuzzerReleaseMessage,
    ErrorMessage,
    IdentifiedMessage,
    IdentifyMessage,
    JoinAnnouncement,
    JoinGameMessage,
    PlayerLeftMessage,
    PlayerReadyMessage,
    parse_client_message,
)
from auction.ws_manager import ClientConnection, manager

logger = logging.getLogger(__name__)


async def dispatch(conn: ClientConnection, raw: str) -> None:
    """Parse and handle one client frame."""
    try:
        msg = parse_client_message(raw)
    except ValidationError:
        logger.debug("Invalid frame from user %s: %.200s", conn.user_id, raw)
        await manager.send(conn, ErrorMessage(message="Invalid message format"))
        return

    try:
        if not isinstance(msg, IdentifyMessage) and not conn.identified:
            raise NotIdentified()
        await _HANDLERS[type(msg)](conn, msg)
    except DuplicateBid:
        logger.debug("Duplicate bid from user %s dropped", conn.user_id)
    except SessionError as exc:
        await manager.send(conn, ErrorMessage(message=str(exc)))
    except Exception:
        logger.exception("Handler failed for %s from user %s", type(msg).__name__, conn.user_id)
        await manager.send(conn, ErrorMessage(message=str(InternalFailure())))


async def on_disconnect(conn: ClientConnection) -> None:
    """Release a closed connection and notify its room."""
    released = manager.drop(conn)
    if released is None:
        return
    user_id, game_id = released
    if game_id is None:
        return
    try:
        await actors.submit(game_id, game_manager.handle_player_left, game_id, user_id)
    except Exception:
        logger.exception("Disconnect handling failed for user %s in game %s", user_id, game_id)


# ------------------------------------------------------------------
# Handlers
# ------------------------------------------------------------------


async def _identify(conn: ClientConnection, msg: IdentifyMessage) -> None:
    old = manager.get_connection(msg.user_id)
    stale_room = old.game_id if old is not None and old is not conn else None
    await manager.identify(conn, msg.user_id)
    await manager.send(conn, IdentifiedMessage(user_id=msg.user_id))
    if stale_room is not None:
        # Replaced tab: announce the departure, the user is still online.
        left = PlayerLeftMessage(game_id=stale_room, user_id=msg.user_id)
        await actors.submit(stale_room, broadcast, stale_room, left)


async def _join(conn: ClientConnection, msg: JoinGameMessage) -> None:
    user_id = conn.user_id
    previous = conn.game_id
    await actors.submit(msg.game_id, _join_room, conn, msg.game_id, user_id)
    if previous is not None and previous != msg.game_id:
        await actors.submit(previous, game_manager.handle_player_left, previous, user_id)


async def _join_room(conn: ClientConnection, game_id: int, user_id: int) -> None:
    _, user = await game_manager.join_game(game_id, user_id)
    manager.join(conn, game_id)
    await broadcast(
        game_id,
        JoinAnnouncement(
            game_id=game_id,
            user_id=user_id,
            username=user["username"],
            display_name=user["display_name"],
        ),
    )
    await resync(game_id)


async def _ready(conn: ClientConnection, msg: PlayerReadyMessage) -> None:
    await actors.submit(
        msg.game_id, game_manager.set_ready, msg.game_id, conn.user_id, msg.is_ready
    )


async def _hold(conn: ClientConnection, msg: BuzzerHoldMessage) -> None:
    await actors.submit(msg.game_id, game_manager.buzzer_hold, msg.game_id, conn.user_id)


async def _release(conn: ClientConnection, msg: BuzzerReleaseMessage) -> None:
    await actors.submit(
        msg.game_id, game_manager.buzzer_release, msg.game_id, conn.user_id, msg.hold_time
    )


_HANDLERS: dict[type, Callable[[ClientConnection, Any], Awaitable[None]]] = {
    IdentifyMessage: _identify,
    JoinGameMessage: _join,
    PlayerReadyMessage: _ready,
    BuzzerHoldMessage: _hold,
    BuzzerReleaseMessage: _release,
}
