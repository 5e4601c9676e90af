"""Pydantic models for the REST surface and the game snapshot."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class GameStatus(str, Enum):
    WAITING = "waiting"
    STARTING = "starting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class BotProfile(str, Enum):
    AGGRESSIVE = "aggressive"
    CONSERVATIVE = "conservative"
    ERRATIC = "erratic"


class CamelModel(BaseModel):
    """Serialized with camelCase keys, accepts either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Request models ---


class RegisterRequest(CamelModel):
    username: str = Field(..., min_length=1, max_length=30)
    display_name: Optional[str] = Field(default=None, max_length=40)


class LoginRequest(CamelModel):
    username: str = Field(..., min_length=1, max_length=30)


class CreateGameRequest(CamelModel):
    created_by_id: int
    total_rounds: int = Field(default=18, ge=1, le=50)
    starting_time_bank: int = Field(default=600, ge=10, le=3600)  # seconds
    is_public: bool = True
    has_bots: bool = False
    bot_count: int = Field(default=0, ge=0, le=6)
    bot_profiles: list[BotProfile] = Field(default_factory=list)
    round_timeout: int = Field(default=0, ge=0, le=300)  # seconds, 0 = no timeout


class JoinByCodeRequest(CamelModel):
    user_id: int
    code: str = Field(..., min_length=6, max_length=6)


class EliminateRequest(CamelModel):
    user_ids: list[int] = Field(..., min_length=1)


# --- Response / state models ---


class UserInfo(CamelModel):
    id: int
    username: str
    display_name: str
    is_bot: bool = False


class PlayerInfo(CamelModel):
    """One participant as shown to clients."""

    id: int
    username: str
    display_name: str
    initials: str
    is_host: bool = False
    is_ready: bool = False
    time_bank: float
    tokens_won: int = 0
    is_eliminated: bool = False
    is_bot: bool = False
    bot_profile: Optional[BotProfile] = None
    has_bid_this_round: bool = False
    last_hold_time: float = 0
    connected: bool = False


class GameState(CamelModel):
    """Full game snapshot, sent over REST and as the body of GAME_STATE."""

    game_id: int
    code: str
    status: GameStatus
    current_round: int
    total_rounds: int
    starting_time_bank: int
    is_public: bool
    round_active: bool = False
    round_winner_id: Optional[int] = None
    max_hold_time_last_round: float = 0
    has_bots: bool = False
    bot_count: int = 0
    bot_profiles: list[BotProfile] = Field(default_factory=list)
    players: list[PlayerInfo]


class Ranking(CamelModel):
    user_id: int
    username: str
    display_name: str
    tokens: int
    time_remaining: float
    is_eliminated: bool = False

