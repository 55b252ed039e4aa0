from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
import logging
import math
from typing import Callable, Optional

logger = logging.getLogger("geoquiz.scoring")

MAX_POINTS = 100
FAIR_TIME_MAX_POINTS = 333
CORRECT_REGION_BASE_POINTS = 100

TIME_BONUS_CAP = 2.0
TIME_BONUS_NUMERATOR = 3.0
TIME_BONUS_OFFSET = 0.1


class ScoringVersion(IntEnum):
    DISTANCE_ONLY = 1
    TIME_WEIGHTED = 2
    REGION_BONUS = 3
    FAIR_TIME = 4


@dataclass(frozen=True)
class ScoringParams:
    distance_km: float
    time_seconds: Optional[float]
    scale_factor: float
    is_correct: Optional[bool] = None
    time_limit_seconds: Optional[float] = None
    is_timeout: bool = False


def time_multiplier(time_seconds: Optional[float]) -> float:
    """1.0 (slow) to 3.0 (instant); no time data means no bonus."""
    if time_seconds is None or time_seconds < 0:
        return 1.0
    return 1.0 + min(TIME_BONUS_CAP, TIME_BONUS_NUMERATOR / (time_seconds + TIME_BONUS_OFFSET))


def distance_score(distance_km: float, scale_factor: float, max_points: float = MAX_POINTS) -> float:
    if scale_factor <= 0:
        raise ValueError("scale_factor must be positive")
    return max_points * math.exp(-max(0.0, distance_km) / scale_factor)


def _round_points(value: float) -> int:
    # Half-up, so x.5 never rounds towards the even neighbour.
    return int(math.floor(value + 0.5))


def _distance_only(params: ScoringParams) -> int:
    return _round_points(distance_score(params.distance_km, params.scale_factor))


def _time_weighted(params: ScoringParams) -> int:
    base = distance_score(params.distance_km, params.scale_factor)
    return _round_points(base * time_multiplier(params.time_seconds))


def _region_bonus(params: ScoringParams) -> int:
    if params.is_correct is True:
        base = float(CORRECT_REGION_BASE_POINTS)
    else:
        base = distance_score(params.distance_km, params.scale_factor)
    return _round_points(base * time_multiplier(params.time_seconds))


def _fair_time(params: ScoringParams) -> int:
    base = distance_score(params.distance_km, params.scale_factor, FAIR_TIME_MAX_POINTS)
    limit = params.time_limit_seconds or 30.0
    elapsed = params.time_seconds if params.time_seconds is not None else limit
    clamped = max(0.0, min(elapsed, limit))
    return _round_points(base * (1 + 0.5 * (1 - clamped / limit)))


_STRATEGIES: dict[ScoringVersion, Callable[[ScoringParams], int]] = {
    ScoringVersion.DISTANCE_ONLY: _distance_only,
    ScoringVersion.TIME_WEIGHTED: _time_weighted,
    ScoringVersion.REGION_BONUS: _region_bonus,
    ScoringVersion.FAIR_TIME: _fair_time,
}


def resolve_version(version: int | None) -> ScoringVersion:
    if version is None:
        return ScoringVersion.DISTANCE_ONLY
    try:
        return ScoringVersion(int(version))
    except ValueError:
        logger.warning(
            "Unknown scoring version, falling back to v1",
            extra={"event": "scoring_version_unknown", "reason": str(version)},
        )
        return ScoringVersion.DISTANCE_ONLY


def calculate_score(params: ScoringParams, version: int | None = None) -> int:
    """Score one guess. A timeout is worth nothing under every version."""
    if params.is_timeout:
        return 0
    strategy = _STRATEGIES[resolve_version(version)]
    return max(0, strategy(params))


def all_versions() -> list[int]:
    return sorted(int(version) for version in _STRATEGIES)
