from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from starlette.middleware.cors import CORSMiddleware

from .config import settings
from .db import check_db_connection, get_db, init_db, seed_sample_locations_if_empty
from .leaderboard import OVERALL, Leaderboard
from .logging_utils import configure_logging
from .metrics import CONTENT_TYPE_LATEST, REQUESTS_TOTAL, generate_latest
from .rate_limit import SlidingWindowLimiter
from .round_service import GuessPoint, RoundService
from .schemas import (
    ActiveLocationResponse,
    CompleteGameResponse,
    CreateGameRequest,
    CreatePlayerRequest,
    GameStateResponse,
    GuessRequest,
    GuessResponse,
    LocationRequest,
    PlayerAuthResponse,
    PlayerStatsResponse,
    RankingItem,
    ReadyResponse,
    RoundStartResponse,
    TopGameItem,
    UserRankResponse,
)
from .security import AuthContext, auth_context_from_header, optional_auth_context

configure_logging()
logger = logging.getLogger("geoquiz.app")

app = FastAPI(title="GeoQuiz Round Engine", version="1.0.0")
api_router = APIRouter(prefix="/api")

leaderboard = Leaderboard()
service = RoundService(leaderboard=leaderboard)
http_rate_limiter = SlidingWindowLimiter()


@app.on_event("startup")
async def startup_event() -> None:
    check_db_connection()
    init_db()
    seeded = seed_sample_locations_if_empty()
    logger.info(
        "Backend startup complete",
        extra={
            "event": "startup",
            "reason": f"seeded_locations={seeded}",
            "db_backend": "sqlite" if settings.is_sqlite else "postgres",
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _client_ip_from_request(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@app.middleware("http")
async def request_guard_middleware(request: Request, call_next):
    path = request.url.path
    method = request.method
    key = f"http:{_client_ip_from_request(request)}"

    if not http_rate_limiter.allow(key, settings.rate_limit_requests_per_min, 60):
        REQUESTS_TOTAL.labels(method=method, path=path, status="429").inc()
        logger.warning(
            "HTTP rate limit exceeded",
            extra={"event": "rate_limited", "ip": _client_ip_from_request(request), "path": path},
        )
        return JSONResponse(
            status_code=429,
            content={"detail": "Rate limit exceeded"},
            headers={"Retry-After": str(http_rate_limiter.retry_after(key, 60))},
        )

    response = await call_next(request)
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(response.status_code)).inc()
    return response


def _auth_user_from_header(authorization: Optional[str] = Header(default=None)) -> AuthContext:
    auth = auth_context_from_header(authorization)
    service.ensure_player_exists(auth.player_id)
    return auth


def _optional_user_from_header(authorization: Optional[str] = Header(default=None)) -> Optional[AuthContext]:
    auth = optional_auth_context(authorization)
    if auth is not None:
        service.ensure_player_exists(auth.player_id)
    return auth


@api_router.get("/")
async def root() -> dict[str, str]:
    return {"message": "GeoQuiz API"}


# ---------- Players ----------
@api_router.post("/auth/players", response_model=PlayerAuthResponse)
async def create_player(payload: CreatePlayerRequest) -> PlayerAuthResponse:
    return PlayerAuthResponse(**service.create_player(payload.nickname, payload.image))


# ---------- Games ----------
@api_router.post("/games", response_model=GameStateResponse)
async def create_game(
    payload: CreateGameRequest,
    auth: Optional[AuthContext] = Depends(_optional_user_from_header),
) -> GameStateResponse:
    state = service.create_game(
        auth,
        game_type=payload.game_type,
        mode=payload.mode,
        total_rounds=payload.total_rounds,
        locations_per_round=payload.locations_per_round,
        time_limit_seconds=payload.time_limit_seconds,
        scoring_version=payload.scoring_version,
    )
    return GameStateResponse(**state)


@api_router.get("/games/{game_id}", response_model=GameStateResponse)
async def game_state(
    game_id: str,
    auth: Optional[AuthContext] = Depends(_optional_user_from_header),
) -> GameStateResponse:
    return GameStateResponse(**service.game_state(auth, game_id))


@api_router.post("/games/{game_id}/join", response_model=GameStateResponse)
async def join_game(game_id: str, auth: AuthContext = Depends(_auth_user_from_header)) -> GameStateResponse:
    return GameStateResponse(**service.join_game(auth, game_id))


@api_router.post("/games/{game_id}/release-round", response_model=GameStateResponse)
async def release_round(game_id: str, auth: AuthContext = Depends(_auth_user_from_header)) -> GameStateResponse:
    return GameStateResponse(**service.release_round(auth, game_id))


@api_router.post("/games/{game_id}/complete", response_model=CompleteGameResponse)
async def complete_game(
    game_id: str,
    auth: Optional[AuthContext] = Depends(_optional_user_from_header),
) -> CompleteGameResponse:
    return CompleteGameResponse(**service.complete_game(auth, game_id))


# ---------- Rounds ----------
@api_router.post("/rounds/{game_id}/start", response_model=RoundStartResponse)
async def start_location(
    game_id: str,
    payload: LocationRequest,
    auth: Optional[AuthContext] = Depends(_optional_user_from_header),
) -> RoundStartResponse:
    result = service.start_location(auth, game_id, payload.location_index, payload.round_number)
    return RoundStartResponse(**result)


@api_router.post("/rounds/{game_id}/ready", response_model=ReadyResponse)
async def notify_ready(
    game_id: str,
    payload: LocationRequest,
    auth: AuthContext = Depends(_auth_user_from_header),
) -> ReadyResponse:
    result = service.notify_ready(auth, game_id, payload.location_index, payload.round_number)
    return ReadyResponse(**result)


@api_router.get("/rounds/{game_id}/active", response_model=ActiveLocationResponse)
async def active_location(game_id: str, auth: AuthContext = Depends(_auth_user_from_header)) -> ActiveLocationResponse:
    return ActiveLocationResponse(**service.active_location(auth, game_id))


@api_router.post("/guesses", response_model=GuessResponse)
async def submit_guess(payload: GuessRequest, auth: AuthContext = Depends(_auth_user_from_header)) -> GuessResponse:
    if payload.timeout:
        result = service.handle_timeout(auth, payload.round_id)
    else:
        point = GuessPoint(lat=payload.point.lat, lng=payload.point.lng, x=payload.point.x, y=payload.point.y)
        result = service.submit_guess(
            auth,
            payload.round_id,
            point=point,
            client_elapsed_seconds=payload.client_elapsed_seconds,
        )
    return GuessResponse(**result)


# ---------- Rankings ----------
@api_router.get("/rankings", response_model=list[RankingItem])
async def rankings(
    game_type: str = Query(default=OVERALL, alias="gameType", max_length=96),
    period: str = Query(default="alltime", pattern="^(daily|weekly|monthly|alltime)$"),
    period_key: Optional[str] = Query(default=None, alias="periodKey", max_length=16),
    sort_by: str = Query(default="best", alias="sortBy", pattern="^(best|total)$"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[RankingItem]:
    rows = leaderboard.get_rankings(game_type, period, period_key, limit=limit, offset=offset, sort_by=sort_by)
    return [RankingItem(**row) for row in rows]


@api_router.get("/rankings/me", response_model=Optional[UserRankResponse])
async def my_rank(
    game_type: str = Query(default=OVERALL, alias="gameType", max_length=96),
    period: str = Query(default="alltime", pattern="^(daily|weekly|monthly|alltime)$"),
    period_key: Optional[str] = Query(default=None, alias="periodKey", max_length=16),
    auth: AuthContext = Depends(_auth_user_from_header),
) -> Optional[UserRankResponse]:
    row = leaderboard.get_user_rank(auth.player_id, game_type, period, period_key)
    return UserRankResponse(**row) if row else None


@api_router.get("/rankings/top-games", response_model=list[TopGameItem])
async def top_games(
    game_type: str = Query(default=OVERALL, alias="gameType", max_length=96),
    period: str = Query(default="alltime", pattern="^(daily|weekly|monthly|alltime)$"),
    limit: int = Query(default=10, ge=1, le=50),
) -> list[TopGameItem]:
    return [TopGameItem(**row) for row in leaderboard.get_top_games(game_type, period, limit)]


@api_router.get("/players/{player_id}/stats", response_model=PlayerStatsResponse)
async def player_stats(player_id: str) -> PlayerStatsResponse:
    return PlayerStatsResponse(**leaderboard.get_user_stats(player_id))


# ---------- Ops ----------
@api_router.get("/health")
async def api_healthcheck() -> dict[str, str]:
    with get_db() as session:
        session.execute(text("SELECT 1"))
    return {"status": "ok", "ts": datetime.now(timezone.utc).isoformat()}


@api_router.get("/metrics")
async def metrics() -> Response:
    if not settings.enable_prometheus_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(api_router)
