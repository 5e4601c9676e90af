"""Admin metrics — Redis-backed tracking of game lifecycle events.

Game creation and completion events go into Redis sorted sets scored by
timestamp. Entries older than METRICS_RETENTION_DAYS are pruned after each
sweeper pass.
"""

from __future__ import annotations

import json
import time
from typing import Any

from auction import redis_client

METRICS_CREATED_KEY = "metrics:game_created"
METRICS_COMPLETED_KEY = "metrics:game_completed"
METRICS_RETENTION_DAYS = 90

FINISHED = "finished"
ABANDONED = "abandoned"


# ------------------------------------------------------------------
# Recording
# ------------------------------------------------------------------


async def record_game_created(game_id: int, has_bots: bool) -> None:
    r = await redis_client.get_redis()
    now = time.time()
    entry = json.dumps({"game_id": game_id, "has_bots": has_bots, "created_at": now})
    await r.zadd(METRICS_CREATED_KEY, {entry: now})


async def record_game_completed(game_id: int, reason: str, player_count: int) -> None:
    """Record that a game reached ``completed``, either finished or abandoned."""
    r = await redis_client.get_redis()
    now = time.time()
    entry = json.dumps(
        {
            "game_id": game_id,
            "completed_at": now,
            "reason": reason,
            "player_count": player_count,
        }
    )
    await r.zadd(METRICS_COMPLETED_KEY, {entry: now})


async def prune_old_metrics() -> None:
    """Remove metric entries older than METRICS_RETENTION_DAYS."""
    r = await redis_client.get_redis()
    cutoff = time.time() - (METRICS_RETENTION_DAYS * 86400)
    await r.zremrangebyscore(METRICS_CREATED_KEY, "-inf", cutoff)
    await r.zremrangebyscore(METRICS_COMPLETED_KEY, "-inf", cutoff)


# ------------------------------------------------------------------
# Queries
# ------------------------------------------------------------------


async def get_summary() -> dict[str, Any]:
    """Created/finished/abandoned in the last 24 h, plus open game count."""
    r = await redis_client.get_redis()
    since_24h = time.time() - 86400

    created_24h = await r.zcount(METRICS_CREATED_KEY, since_24h, "+inf")
    completed_raw = await r.zrangebyscore(METRICS_COMPLETED_KEY, since_24h, "+inf")
    reasons = [json.loads(e).get("reason") for e in completed_raw]

    open_ids = await redis_client.list_open_game_ids()

    return {
        "games_created_24h": created_24h,
        "games_finished_24h": reasons.count(FINISHED),
        "games_abandoned_24h": reasons.count(ABANDONED),
        "open_games_count": len(open_ids),
    }
