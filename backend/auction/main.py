"""FastAPI application — REST + WebSocket endpoints for the time auction."""

import hmac
import logging
import os
from contextlib import asynccontextmanager

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from auction import game_manager, handlers, metrics, redis_client
from auction.actors import actors
from auction.bot_driver import bot_driver
from auction.broadcast import resync
from auction.cleanup import sweep_games, sweeper
from auction.errors import UnknownGame, UnknownUser
from auction.models import (
    CreateGameRequest,
    EliminateRequest,
    GameState,
    JoinByCodeRequest,
    LoginRequest,
    RegisterRequest,
    UserInfo,
)
from auction.timer import scheduler
from auction.ws_manager import manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Background loops: scheduled events, bot bids, abandoned-game sweeps
    scheduler.start()
    bot_driver.start()
    sweeper.start()
    yield
    sweeper.stop()
    bot_driver.stop()
    scheduler.stop()
    await redis_client.close()


app = FastAPI(title="Time Auction API", lifespan=lifespan)

# ---------- Rate Limiting ----------

_rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "1") != "0"

limiter = Limiter(
    key_func=get_remote_address,
    enabled=_rate_limit_enabled,
)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please slow down."},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------- Admin Auth ----------

ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")


async def verify_admin(authorization: str | None = Header(None)):
    """Validate the admin password from the Authorization header."""
    if not ADMIN_PASSWORD:
        raise HTTPException(
            status_code=503,
            detail="Admin not configured. Set ADMIN_PASSWORD env var.",
        )
    expected = f"Bearer {ADMIN_PASSWORD}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Invalid admin password")


def _http_error(exc: ValueError) -> HTTPException:
    status = 404 if isinstance(exc, (UnknownGame, UnknownUser)) else 400
    return HTTPException(status_code=status, detail=str(exc))


# ---------- Users ----------


@app.post("/api/register", response_model=UserInfo)
@limiter.limit("10/minute")
async def register(request: Request, response: Response, req: RegisterRequest):
    user, created = await game_manager.register_user(req.username, req.display_name)
    response.status_code = 201 if created else 200
    return UserInfo(**user)


@app.post("/api/login", response_model=UserInfo)
@limiter.limit("10/minute")
async def login(request: Request, req: LoginRequest):
    user = await game_manager.login_user(req.username)
    return UserInfo(**user)


@app.get("/api/users/{user_id}", response_model=UserInfo)
@limiter.limit("30/minute")
async def get_user(request: Request, user_id: int):
    try:
        user = await game_manager.get_user(user_id)
    except ValueError as e:
        raise _http_error(e)
    return UserInfo(**user)


@app.get("/api/users/{user_id}/games", response_model=list[GameState])
@limiter.limit("30/minute")
async def get_user_games(request: Request, user_id: int):
    """The user's games that are not completed yet."""
    try:
        return await game_manager.list_user_games(user_id)
    except ValueError as e:
        raise _http_error(e)


# ---------- Games ----------


@app.post("/api/games", response_model=GameState, status_code=201)
@limiter.limit("5/minute")
async def create_game(request: Request, req: CreateGameRequest):
    try:
        return await game_manager.create_game(req)
    except ValueError as e:
        raise _http_error(e)


@app.get("/api/games/public", response_model=list[GameState])
@limiter.limit("30/minute")
async def list_public_games(request: Request):
    return await game_manager.list_public_games()


@app.post("/api/games/join", response_model=GameState)
@limiter.limit("10/minute")
async def join_by_code(request: Request, req: JoinByCodeRequest):
    try:
        game_data = await game_manager.find_game_by_code(req.code.upper())
        state = await actors.submit(game_data["id"], _join_and_resync, game_data["id"], req.user_id)
    except ValueError as e:
        raise _http_error(e)
    return state


async def _join_and_resync(game_id: int, user_id: int) -> GameState:
    await game_manager.join_game(game_id, user_id)
    # Existing players see the new joiner
    await resync(game_id)
    return await game_manager.get_game_state(game_id)


@app.get("/api/games/{game_id}", response_model=GameState)
@limiter.limit("30/minute")
async def get_game(request: Request, game_id: int):
    state = await game_manager.get_game_state(game_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Game not found")
    return state


# ---------- Admin ----------


@app.post("/api/admin/sweep")
@limiter.limit("10/minute")
async def admin_sweep(request: Request, _=Depends(verify_admin)):
    """Run a sweeper pass now. Returns completed and kept game ids."""
    return await sweep_games()


@app.get("/api/admin/summary")
@limiter.limit("10/minute")
async def admin_summary(request: Request, _=Depends(verify_admin)):
    """Summary stats: games created/finished/abandoned in the last 24 h."""
    return await metrics.get_summary()


@app.post("/api/admin/games/{game_id}/eliminate")
@limiter.limit("10/minute")
async def admin_eliminate(
    request: Request, game_id: int, req: EliminateRequest, _=Depends(verify_admin)
):
    """Eliminate participants mid-game."""
    try:
        eliminated = await actors.submit(
            game_id, game_manager.eliminate_participants, game_id, req.user_ids
        )
    except ValueError as e:
        raise _http_error(e)
    return {"eliminated": eliminated}


# ---------- WebSocket ----------


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    conn = await manager.accept(ws)
    logger.info("WS open")
    try:
        while True:
            raw = await ws.receive_text()
            await handlers.dispatch(conn, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await handlers.on_disconnect(conn)
