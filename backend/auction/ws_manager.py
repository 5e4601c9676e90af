"""WebSocket connection registry: user identity and game-room membership.

Bindings are only mutated by synchronous methods (no await between the read
and the write), so close callbacks from many connections can call ``drop``
concurrently on the event loop without interleaving.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from fastapi import WebSocket

from auction import redis_client
from auction.errors import InvalidAction, NotIdentified, UnknownUser
from auction.protocol import ServerMessage

logger = logging.getLogger(__name__)


class ClientConnection:
    """Wraps a single WebSocket connection with its bindings."""

    __slots__ = ("ws", "user_id", "game_id", "connected_at")

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws
        self.user_id: Optional[int] = None
        self.game_id: Optional[int] = None
        self.connected_at = time.time()

    @property
    def identified(self) -> bool:
        return self.user_id is not None

    async def send(self, text: str) -> bool:
        """Send text, returning False on failure."""
        try:
            await self.ws.send_text(text)
            return True
        except Exception:
            return False


class ConnectionManager:
    """Tracks one live connection per user and the connections of each room."""

    def __init__(self) -> None:
        # user_id -> ClientConnection
        self._by_user: dict[int, ClientConnection] = {}
        # game_id -> {user_id -> ClientConnection}
        self._rooms: dict[int, dict[int, ClientConnection]] = {}

    async def accept(self, ws: WebSocket) -> ClientConnection:
        await ws.accept()
        return ClientConnection(ws)

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    async def identify(self, conn: ClientConnection, user_id: int) -> dict[str, Any]:
        """Bind ``conn`` to a known user. Returns the user row."""
        user = await redis_client.load_user(user_id)
        if user is None:
            raise UnknownUser()
        if conn.user_id is not None and conn.user_id != user_id:
            raise InvalidAction("Connection already identified as another user")

        old = self._by_user.get(user_id)
        if old is not None and old is not conn:
            # Stale tab: the old connection loses its bindings, the new one rejoins.
            self._unbind_room(old)
            old.user_id = None
            try:
                await old.ws.close(code=4001, reason="Replaced by new connection")
            except Exception:
                pass

        conn.user_id = user_id
        self._by_user[user_id] = conn
        logger.info("WS identify: user=%s", user_id)
        return user

    def join(self, conn: ClientConnection, game_id: int) -> None:
        """Subscribe ``conn`` to a game room, leaving any previous room."""
        if conn.user_id is None:
            raise NotIdentified()
        if conn.game_id is not None and conn.game_id != game_id:
            self._unbind_room(conn)
        self._rooms.setdefault(game_id, {})[conn.user_id] = conn
        conn.game_id = game_id

    def drop(self, conn: ClientConnection) -> Optional[tuple[int, Optional[int]]]:
        """Remove every binding held by ``conn``.

        Returns ``(user_id, game_id)`` for what was released, with ``game_id``
        None when the connection was not in a room. Returns None if the
        connection was never identified or had already been replaced.
        """
        user_id = conn.user_id
        if user_id is None:
            return None
        if self._by_user.get(user_id) is conn:
            del self._by_user[user_id]
        game_id = self._unbind_room(conn)
        conn.user_id = None
        logger.info("WS drop: user=%s game=%s", user_id, game_id)
        return user_id, game_id

    def release_room(self, game_id: int) -> list[ClientConnection]:
        """Unsubscribe every connection from a room; they stay identified."""
        room = self._rooms.pop(game_id, {})
        for conn in room.values():
            conn.game_id = None
        return list(room.values())

    def _unbind_room(self, conn: ClientConnection) -> Optional[int]:
        game_id = conn.game_id
        conn.game_id = None
        if game_id is None:
            return None
        room = self._rooms.get(game_id)
        if room is None or room.get(conn.user_id) is not conn:
            return None
        del room[conn.user_id]
        if not room:
            del self._rooms[game_id]
        return game_id

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send(self, conn: ClientConnection, message: ServerMessage) -> bool:
        return await conn.send(message.to_json())

    async def broadcast(self, game_id: int, message: ServerMessage) -> int:
        """Send to every connection in a room. Returns how many were reached.

        Failed sends are not unbound here; the transport close path owns that.
        """
        text = message.to_json()
        delivered = 0
        for user_id, conn in list(self._rooms.get(game_id, {}).items()):
            if await conn.send(text):
                delivered += 1
            else:
                logger.debug("Send failed: game=%s user=%s", game_id, user_id)
        return delivered

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def room_connections(self, game_id: int) -> list[ClientConnection]:
        return list(self._rooms.get(game_id, {}).values())

    def connected_user_ids(self, game_id: int) -> set[int]:
        return set(self._rooms.get(game_id, {}).keys())

    def connection_count(self, game_id: int) -> int:
        return len(self._rooms.get(game_id, {}))

    def get_connection(self, user_id: int) -> Optional[ClientConnection]:
        return self._by_user.get(user_id)


manager = ConnectionManager()
