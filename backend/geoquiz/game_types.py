from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import settings
from .errors import Invalid

logger = logging.getLogger("geoquiz.game_types")


class Metric(str, Enum):
    GEODESIC = "geodesic"
    PIXEL = "pixel"
    POLYGON = "polygon"


class AnswerSource(str, Enum):
    POINTS_OF_INTEREST = "points-of-interest"
    REGION_POLYGONS = "region-polygons"
    IMAGE_PIXELS = "image-pixels"
    PANORAMA_POINTS = "panorama-points"
    CUSTOM_CATEGORIES = "custom-categories"


# "Pick the country" quizzes: the player sees a flag or a name and clicks the country.
REGION_QUIZ_TYPES = frozenset({"world:country-flags", "world:place-names"})

WORLD_SCALE_FACTOR = 3000.0
WORLD_TIMEOUT_PENALTY_KM = 5000.0
COUNTRY_SCALE_FACTOR = 80.0
COUNTRY_TIMEOUT_PENALTY_KM = 300.0
IMAGE_SCALE_FACTOR = 0.05
IMAGE_TIMEOUT_PENALTY_KM = 0.2


@dataclass(frozen=True)
class GameTypeConfig:
    game_type: str
    kind: str
    key: str
    scale_factor: float
    timeout_penalty_km: float
    default_time_limit_seconds: int
    metric: Metric
    answer_source: AnswerSource
    # Version forced by the quiz kind; None means the game's own version applies.
    scoring_version: Optional[int] = None


def _static(game_type: str, scale_factor: float, timeout_penalty_km: float) -> GameTypeConfig:
    kind, key = split_game_type(game_type)
    return GameTypeConfig(
        game_type=game_type,
        kind=kind,
        key=key,
        scale_factor=scale_factor,
        timeout_penalty_km=timeout_penalty_km,
        default_time_limit_seconds=settings.default_time_limit_seconds,
        metric=Metric.GEODESIC,
        answer_source=AnswerSource.POINTS_OF_INTEREST if kind == "country" else AnswerSource.CUSTOM_CATEGORIES,
    )


def split_game_type(game_type: str) -> tuple[str, str]:
    kind, sep, key = game_type.partition(":")
    if not sep or not kind or not key:
        raise Invalid(f"Malformed game type: {game_type!r}")
    return kind, key


STATIC_GAME_TYPES: dict[str, GameTypeConfig] = {
    config.game_type: config
    for config in (
        _static("country:switzerland", 100.0, 400.0),
        _static("country:slovenia", 60.0, 250.0),
        _static("world:highest-mountains", WORLD_SCALE_FACTOR, WORLD_TIMEOUT_PENALTY_KM),
        _static("world:capitals", WORLD_SCALE_FACTOR, WORLD_TIMEOUT_PENALTY_KM),
        _static("world:famous-places", WORLD_SCALE_FACTOR, WORLD_TIMEOUT_PENALTY_KM),
        _static("world:unesco", WORLD_SCALE_FACTOR, WORLD_TIMEOUT_PENALTY_KM),
        _static("world:airports", WORLD_SCALE_FACTOR, WORLD_TIMEOUT_PENALTY_KM),
    )
}


def _defaults_for(game_type: str) -> GameTypeConfig:
    kind, key = split_game_type(game_type)
    if kind == "country":
        return GameTypeConfig(
            game_type=game_type,
            kind=kind,
            key=key,
            scale_factor=COUNTRY_SCALE_FACTOR,
            timeout_penalty_km=COUNTRY_TIMEOUT_PENALTY_KM,
            default_time_limit_seconds=settings.default_time_limit_seconds,
            metric=Metric.GEODESIC,
            answer_source=AnswerSource.POINTS_OF_INTEREST,
        )
    if kind == "world":
        region_quiz = game_type in REGION_QUIZ_TYPES
        return GameTypeConfig(
            game_type=game_type,
            kind=kind,
            key=key,
            scale_factor=WORLD_SCALE_FACTOR,
            timeout_penalty_km=WORLD_TIMEOUT_PENALTY_KM,
            default_time_limit_seconds=settings.default_time_limit_seconds,
            metric=Metric.POLYGON if region_quiz else Metric.GEODESIC,
            answer_source=AnswerSource.REGION_POLYGONS if region_quiz else AnswerSource.CUSTOM_CATEGORIES,
            scoring_version=3 if region_quiz else None,
        )
    if kind == "image":
        return GameTypeConfig(
            game_type=game_type,
            kind=kind,
            key=key,
            scale_factor=IMAGE_SCALE_FACTOR,
            timeout_penalty_km=IMAGE_TIMEOUT_PENALTY_KM,
            default_time_limit_seconds=settings.default_time_limit_seconds,
            metric=Metric.PIXEL,
            answer_source=AnswerSource.IMAGE_PIXELS,
        )
    if kind == "panorama":
        return GameTypeConfig(
            game_type=game_type,
            kind=kind,
            key=key,
            scale_factor=WORLD_SCALE_FACTOR,
            timeout_penalty_km=WORLD_TIMEOUT_PENALTY_KM,
            default_time_limit_seconds=settings.panorama_time_limit_seconds,
            metric=Metric.GEODESIC,
            answer_source=AnswerSource.PANORAMA_POINTS,
        )
    raise Invalid(f"Unknown game type kind: {kind!r}")


def resolve_game_type(session: Session, game_type: str) -> GameTypeConfig:
    """Resolve scoring constants for a game type.

    The built-in table wins. Anything else is a dynamically administered category:
    its ``game_type_overrides`` record, when active, replaces the per-kind defaults
    field by field.
    """
    static = STATIC_GAME_TYPES.get(game_type)
    if static is not None:
        return static

    config = _defaults_for(game_type)
    row = (
        session.execute(
            text(
                """
                SELECT scale_factor, timeout_penalty_km, default_time_limit_seconds
                FROM game_type_overrides
                WHERE game_type = :game_type AND is_active = :active
                """
            ),
            {"game_type": game_type, "active": True},
        )
        .mappings()
        .first()
    )
    if not row:
        return config

    logger.debug(
        "Applying game type override",
        extra={"event": "game_type_override", "game_type": game_type},
    )
    return replace(
        config,
        scale_factor=float(row["scale_factor"]) if row["scale_factor"] else config.scale_factor,
        timeout_penalty_km=(
            float(row["timeout_penalty_km"]) if row["timeout_penalty_km"] is not None else config.timeout_penalty_km
        ),
        default_time_limit_seconds=(
            int(row["default_time_limit_seconds"])
            if row["default_time_limit_seconds"]
            else config.default_time_limit_seconds
        ),
    )
