"""Round and game resolution rules over participant rows.

Pure functions: no I/O, no clocks. Participant rows are the dicts stored by
``redis_client`` and are updated in place.
"""

from __future__ import annotations

from typing import Any, NamedTuple, Optional, Sequence

Participant = dict[str, Any]


class RoundOutcome(NamedTuple):
    winner_id: Optional[int]
    winner_hold_time: float
    bids: list[dict[str, Any]]


def active_participants(participants: Sequence[Participant]) -> list[Participant]:
    return [p for p in participants if not p["is_eliminated"]]


def round_complete(participants: Sequence[Participant]) -> bool:
    """True when every non-eliminated participant has bid.

    Vacuously true when nobody is left in the round.
    """
    return all(p["has_bid_this_round"] for p in active_participants(participants))


def can_bid(participant: Participant) -> bool:
    return not participant["is_eliminated"] and not participant["has_bid_this_round"]


def apply_bid(participant: Participant, hold_time_ms: float, bid_order: int) -> float:
    """Record a release and spend the time bank. Returns the recorded duration.

    The bank is floored at zero; the duration is recorded as sent.
    """
    recorded = max(0.0, hold_time_ms)
    participant["time_bank"] = max(0.0, participant["time_bank"] - recorded / 1000)
    participant["has_bid_this_round"] = True
    participant["last_hold_time"] = recorded
    participant["bid_order"] = bid_order
    return recorded


def resolve_round(participants: Sequence[Participant]) -> RoundOutcome:
    """Pick the winner: strictly longest hold, earliest release on ties.

    Awards the winner's token in place. No bidders, no winner.
    """
    bidders = [
        p for p in participants if not p["is_eliminated"] and p["has_bid_this_round"]
    ]
    bids = [
        {
            "user_id": p["user_id"],
            "hold_time": p["last_hold_time"],
            "bid_order": p.get("bid_order"),
        }
        for p in sorted(bidders, key=_bid_order)
    ]
    if not bidders:
        return RoundOutcome(None, 0, bids)

    winner = min(bidders, key=lambda p: (-p["last_hold_time"], _bid_order(p)))
    winner["tokens_won"] += 1
    return RoundOutcome(winner["user_id"], winner["last_hold_time"], bids)


def reset_round(participant: Participant) -> None:
    participant["has_bid_this_round"] = False
    participant["last_hold_time"] = 0
    participant["bid_order"] = None


def eliminate_lowest(participants: Sequence[Participant]) -> list[int]:
    """Eliminate everyone tied on the fewest tokens. Returns their user ids."""
    if not participants:
        return []
    lowest = min(p["tokens_won"] for p in participants)
    eliminated = []
    for p in participants:
        if p["tokens_won"] == lowest:
            p["is_eliminated"] = True
            eliminated.append(p["user_id"])
    return eliminated


def rank(participants: Sequence[Participant]) -> list[Participant]:
    """Order by tokens won, then remaining time bank, both descending."""
    return sorted(participants, key=lambda p: (-p["tokens_won"], -(p["time_bank"] or 0)))


def initials(display_name: str) -> str:
    parts = [part for part in display_name.split() if part]
    if not parts:
        return "??"
    return "".join(part[0] for part in parts).upper()


def _bid_order(p: Participant) -> float:
    order = p.get("bid_order")
    return float("inf") if order is None else order
