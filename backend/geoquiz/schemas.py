from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

GameMode = Literal["group", "solo", "ranked", "duel"]
Period = Literal["daily", "weekly", "monthly", "alltime"]
SortBy = Literal["best", "total"]


class _Request(BaseModel):
    # Clients send camelCase; snake_case is accepted too.
    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)


class CreatePlayerRequest(_Request):
    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
        str_strip_whitespace=True,
    )

    nickname: str = Field(min_length=2, max_length=32)
    image: Optional[str] = Field(default=None, max_length=512)


class PlayerAuthResponse(BaseModel):
    player_id: str
    nickname: str
    access_token: str
    token_type: str = "bearer"


class CreateGameRequest(_Request):
    game_type: str = Field(min_length=3, max_length=96, pattern=r"^[a-z]+:[a-z0-9_-]+$")
    mode: GameMode = "ranked"
    total_rounds: int = Field(default=1, ge=1, le=10)
    locations_per_round: Optional[int] = Field(default=None, ge=1, le=20)
    time_limit_seconds: Optional[int] = Field(default=None, ge=5, le=600)
    scoring_version: Optional[int] = Field(default=None, ge=1)


class LocationRequest(_Request):
    location_index: int = Field(ge=1)
    round_number: Optional[int] = Field(default=None, ge=1)


class PointIn(_Request):
    lat: Optional[float] = None
    lng: Optional[float] = None
    x: Optional[float] = None
    y: Optional[float] = None

    @model_validator(mode="after")
    def _one_coordinate_pair(self) -> "PointIn":
        geographic = self.lat is not None and self.lng is not None
        pixel = self.x is not None and self.y is not None
        if geographic == pixel:
            raise ValueError("Provide either lat/lng or x/y")
        return self


class GuessRequest(_Request):
    round_id: str = Field(min_length=1, max_length=36)
    point: Optional[PointIn] = None
    timeout: bool = False
    client_elapsed_seconds: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _point_or_timeout(self) -> "GuessRequest":
        if self.timeout == (self.point is not None):
            raise ValueError("Send a point or timeout=true, not both")
        return self


class RoundStartResponse(BaseModel):
    round_id: str
    round_number: int
    location_index: int
    game_type: str
    time_limit_seconds: int
    location: dict[str, Any]
    location_started_at: Optional[int] = None
    deadline: Optional[int] = None


class ReadyResponse(BaseModel):
    round_id: str
    round_number: int
    location_index: int
    location_started_at: int
    deadline: int
    time_limit_seconds: int
    remaining_seconds: float


class GuessResponse(BaseModel):
    round_id: str
    distance_km: float
    score: int
    is_correct: Optional[bool] = None
    is_timeout: bool
    time_seconds: Optional[float] = None
    target: dict[str, Any]
    game_complete: bool
    leaderboard_recorded: bool


class ActiveLocationResponse(BaseModel):
    active: bool
    status: str
    expired_closed: bool
    round_id: Optional[str] = None
    round_number: Optional[int] = None
    location_index: Optional[int] = None
    guessed: Optional[bool] = None
    location_started_at: Optional[int] = None
    deadline: Optional[int] = None
    time_limit_seconds: Optional[int] = None
    remaining_seconds: Optional[float] = None


class LocationProgress(BaseModel):
    round_id: str
    round_number: int
    location_index: int
    guessed: bool
    location: Optional[dict[str, Any]] = None
    guess: Optional[dict[str, Any]] = None


class Participant(BaseModel):
    player_id: str
    nickname: str


class GameStateResponse(BaseModel):
    game_id: str
    mode: str
    game_type: str
    status: str
    owner_id: Optional[str] = None
    total_rounds: int
    locations_per_round: int
    current_round: int
    active_round_number: Optional[int] = None
    active_location_index: Optional[int] = None
    location_started_at: Optional[int] = None
    time_limit_seconds: Optional[int] = None
    scoring_version: int
    total_score: int
    participants: list[Participant]
    locations: list[LocationProgress]


class CompleteGameResponse(BaseModel):
    game_id: str
    status: str
    recorded: bool
    total_score: Optional[int] = None


class RankingItem(BaseModel):
    rank: Optional[int] = None
    player_id: str
    display_name: Optional[str] = None
    display_image: Optional[str] = None
    total_score: int
    total_games: int
    average_score: float
    best_score: int


class UserRankResponse(RankingItem):
    period_key: str
    total_players: int


class GameTypeStats(BaseModel):
    game_type: str
    total_score: int
    total_games: int
    average_score: float
    best_score: int
    rank: Optional[int] = None


class PlayerStatsResponse(BaseModel):
    player_id: str
    nickname: str
    total_games: int
    total_score: int
    average_score: float
    best_score: int
    overall_rank: Optional[int] = None
    best_rank: Optional[int] = None
    game_types: list[GameTypeStats]


class TopGameItem(BaseModel):
    game_id: str
    player_id: str
    nickname: str
    game_type: str
    total_score: int
    average_score: float
    total_distance: float
    completed_at: str
