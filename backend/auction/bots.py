"""Bot roster and the default bot decision function.

Each profile bounds how long a bot holds the buzzer and how it reacts to the
previous round's winning hold. The orchestrator treats ``decide_hold_time``
as a black box that may be slow.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from auction.models import BotProfile


@dataclass(frozen=True)
class BotBehavior:
    min_hold_time: int  # ms
    max_hold_time: int  # ms
    # Probability of reacting to the previous winning hold (0-1)
    adaptability: float


BEHAVIORS: dict[BotProfile, BotBehavior] = {
    BotProfile.AGGRESSIVE: BotBehavior(min_hold_time=3000, max_hold_time=10000, adaptability=0.3),
    BotProfile.CONSERVATIVE: BotBehavior(min_hold_time=1000, max_hold_time=5000, adaptability=0.7),
    BotProfile.ERRATIC: BotBehavior(min_hold_time=500, max_hold_time=15000, adaptability=0.1),
}


@dataclass(frozen=True)
class Bot:
    username: str
    display_name: str
    profile: BotProfile


ROSTER: tuple[Bot, ...] = (
    Bot("bot_aggressor", "Aggressor Bot", BotProfile.AGGRESSIVE),
    Bot("bot_cautious", "Cautious Bot", BotProfile.CONSERVATIVE),
    Bot("bot_wildcard", "Wildcard Bot", BotProfile.ERRATIC),
    Bot("bot_terminator", "Terminator Bot", BotProfile.AGGRESSIVE),
    Bot("bot_tactician", "Tactician Bot", BotProfile.CONSERVATIVE),
    Bot("bot_chaotic", "Chaotic Bot", BotProfile.ERRATIC),
)


def pick_bots(
    count: int,
    profiles: Optional[Sequence[BotProfile]] = None,
    rng: Optional[random.Random] = None,
) -> list[Bot]:
    """Pick up to ``count`` distinct bots, restricted to ``profiles`` if given."""
    rng = rng or random.Random()
    pool = list(ROSTER)
    rng.shuffle(pool)
    if profiles:
        wanted = {BotProfile(p) for p in profiles}
        pool = [b for b in pool if b.profile in wanted]
    return pool[:count]


async def decide_hold_time(
    participant: dict[str, Any],
    game_id: int,
    round_number: int,
    previous_winning_hold: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """Decide how long (ms) a bot participant holds this round."""
    rng = rng or random.Random()
    profile = BotProfile(participant.get("bot_profile") or BotProfile.CONSERVATIVE)
    behavior = BEHAVIORS[profile]

    hold = rng.uniform(behavior.min_hold_time, behavior.max_hold_time)

    if profile is BotProfile.ERRATIC:
        # Sometimes go extreme, sometimes very cautious
        if rng.random() < 0.3:
            hold = rng.uniform(behavior.min_hold_time * 2, behavior.max_hold_time * 2)
        else:
            hold = rng.uniform(behavior.min_hold_time / 2, behavior.max_hold_time / 2)
    elif profile is BotProfile.AGGRESSIVE:
        if round_number > 10 and rng.random() < 0.4:
            hold *= 1.5
    elif profile is BotProfile.CONSERVATIVE:
        if previous_winning_hold and rng.random() < behavior.adaptability:
            # Try to slightly beat the last winning hold
            hold = previous_winning_hold * (1 + rng.random() * 0.2)

    hold = max(behavior.min_hold_time, min(behavior.max_hold_time, hold))
    # Never plan to spend more than the bank holds
    return float(min(hold, participant["time_bank"] * 1000))
