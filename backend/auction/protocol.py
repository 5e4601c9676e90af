"""WebSocket wire protocol.

Both directions are closed tagged unions discriminated on ``type``. Client
frames are parsed with ``parse_client_message``; every server frame is a
``ServerMessage`` subclass serialized with camelCase keys.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from auction.models import CamelModel, GameState, Ranking


class ClientMessageType(str, Enum):
    IDENTIFY = "IDENTIFY"
    JOIN_GAME = "JOIN_GAME"
    PLAYER_READY = "PLAYER_READY"
    BUZZER_HOLD = "BUZZER_HOLD"
    BUZZER_RELEASE = "BUZZER_RELEASE"


class ServerMessageType(str, Enum):
    IDENTIFIED = "IDENTIFIED"
    JOIN_GAME = "JOIN_GAME"
    GAME_STATE = "GAME_STATE"
    PLAYER_READY = "PLAYER_READY"
    GAME_STARTING = "GAME_STARTING"
    GAME_START = "GAME_START"
    ROUND_START = "ROUND_START"
    BUZZER_HOLD = "BUZZER_HOLD"
    BUZZER_RELEASE = "BUZZER_RELEASE"
    ROUND_END = "ROUND_END"
    GAME_END = "GAME_END"
    PLAYER_LEFT = "PLAYER_LEFT"
    GAME_CANCELLED = "GAME_CANCELLED"
    ERROR = "ERROR"


# --- Client -> server ---


class IdentifyMessage(CamelModel):
    type: Literal[ClientMessageType.IDENTIFY] = ClientMessageType.IDENTIFY
    user_id: int


class JoinGameMessage(CamelModel):
    type: Literal[ClientMessageType.JOIN_GAME] = ClientMessageType.JOIN_GAME
    game_id: int


class PlayerReadyMessage(CamelModel):
    type: Literal[ClientMessageType.PLAYER_READY] = ClientMessageType.PLAYER_READY
    game_id: int
    is_ready: bool


class BuzzerHoldMessage(CamelModel):
    type: Literal[ClientMessageType.BUZZER_HOLD] = ClientMessageType.BUZZER_HOLD
    game_id: int


class BuzzerReleaseMessage(CamelModel):
    type: Literal[ClientMessageType.BUZZER_RELEASE] = ClientMessageType.BUZZER_RELEASE
    game_id: int
    hold_time: float = Field(..., ge=0)  # milliseconds


ClientMessage = Annotated[
    Union[
        IdentifyMessage,
        JoinGameMessage,
        PlayerReadyMessage,
        BuzzerHoldMessage,
        BuzzerReleaseMessage,
    ],
    Field(discriminator="type"),
]

_client_adapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> Any:
    """Validate a raw JSON frame into one of the client message models.

    Raises ``pydantic.ValidationError`` for malformed JSON, an unknown
    ``type`` or missing/invalid fields.
    """
    return _client_adapter.validate_json(raw)


# --- Server -> client ---


class ServerMessage(CamelModel):
    """Base for every frame the server sends."""

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class IdentifiedMessage(ServerMessage):
    type: Literal[ServerMessageType.IDENTIFIED] = ServerMessageType.IDENTIFIED
    user_id: int


class JoinAnnouncement(ServerMessage):
    type: Literal[ServerMessageType.JOIN_GAME] = ServerMessageType.JOIN_GAME
    game_id: int
    user_id: int
    username: str
    display_name: str


class GameStateMessage(GameState, ServerMessage):
    type: Literal[ServerMessageType.GAME_STATE] = ServerMessageType.GAME_STATE

    @classmethod
    def from_state(cls, state: GameState) -> "GameStateMessage":
        return cls(**state.model_dump())


class PlayerReadyChanged(ServerMessage):
    type: Literal[ServerMessageType.PLAYER_READY] = ServerMessageType.PLAYER_READY
    game_id: int
    user_id: int
    is_ready: bool


class GameStartingMessage(ServerMessage):
    type: Literal[ServerMessageType.GAME_STARTING] = ServerMessageType.GAME_STARTING
    game_id: int
    countdown: int


class GameStartMessage(ServerMessage):
    type: Literal[ServerMessageType.GAME_START] = ServerMessageType.GAME_START
    game_id: int


class RoundStartMessage(ServerMessage):
    type: Literal[ServerMessageType.ROUND_START] = ServerMessageType.ROUND_START
    game_id: int
    round_number: int


class BuzzerHoldEvent(ServerMessage):
    type: Literal[ServerMessageType.BUZZER_HOLD] = ServerMessageType.BUZZER_HOLD
    game_id: int
    user_id: int
    timestamp: int  # epoch ms


class BuzzerReleaseEvent(ServerMessage):
    type: Literal[ServerMessageType.BUZZER_RELEASE] = ServerMessageType.BUZZER_RELEASE
    game_id: int
    user_id: int
    timestamp: int  # epoch ms
    hold_time: float


class RoundEndMessage(ServerMessage):
    type: Literal[ServerMessageType.ROUND_END] = ServerMessageType.ROUND_END
    game_id: int
    round_number: int
    winner_id: Optional[int] = None
    winner_hold_time: float = 0
    next_round: int  # -1 when the game is over


class GameEndMessage(ServerMessage):
    type: Literal[ServerMessageType.GAME_END] = ServerMessageType.GAME_END
    game_id: int
    rankings: list[Ranking]


class PlayerLeftMessage(ServerMessage):
    type: Literal[ServerMessageType.PLAYER_LEFT] = ServerMessageType.PLAYER_LEFT
    game_id: int
    user_id: int


class GameCancelledMessage(ServerMessage):
    type: Literal[ServerMessageType.GAME_CANCELLED] = ServerMessageType.GAME_CANCELLED
    game_id: int
    reason: str


class ErrorMessage(ServerMessage):
    type: Literal[ServerMessageType.ERROR] = ServerMessageType.ERROR
    message: str


ServerEvent = Annotated[
    Union[
        IdentifiedMessage,
        JoinAnnouncement,
        GameStateMessage,
        PlayerReadyChanged,
        GameStartingMessage,
        GameStartMessage,
        RoundStartMessage,
        BuzzerHoldEvent,
        BuzzerReleaseEvent,
        RoundEndMessage,
        GameEndMessage,
        PlayerLeftMessage,
        GameCancelledMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_server_adapter = TypeAdapter(ServerEvent)


def parse_server_message(raw: str | bytes) -> Any:
    """Decode a server frame (used by clients and tests)."""
    return _server_adapter.validate_json(raw)
