from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from .errors import NotFound
from .game_types import AnswerSource, GameTypeConfig


@dataclass(frozen=True)
class AnswerLocation:
    id: str
    source: AnswerSource
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    x: Optional[float] = None
    y: Optional[float] = None
    country_code: Optional[str] = None
    geojson: Optional[str] = None
    image_key: Optional[str] = None
    heading: Optional[float] = None
    pitch: Optional[float] = None

    @property
    def is_pixel(self) -> bool:
        return self.source is AnswerSource.IMAGE_PIXELS

    def target_point(self) -> dict[str, float]:
        if self.is_pixel:
            return {"x": float(self.x), "y": float(self.y)}
        return {"lat": float(self.latitude), "lng": float(self.longitude)}

    def prompt(self) -> dict[str, Any]:
        """What the player may see before guessing: never the answer position."""
        data: dict[str, Any] = {"id": self.id, "name": self.name}
        if self.country_code:
            data["country_code"] = self.country_code
        if self.image_key:
            data["image_key"] = self.image_key
            data["heading"] = self.heading
            data["pitch"] = self.pitch
        return data

    def disclosed(self) -> dict[str, Any]:
        return {**self.prompt(), **self.target_point()}


_LOOKUPS: dict[AnswerSource, str] = {
    AnswerSource.POINTS_OF_INTEREST: """
        SELECT id, name, latitude, longitude
        FROM poi_locations WHERE id = :id
    """,
    AnswerSource.REGION_POLYGONS: """
        SELECT id, name, country_code, geojson, center_lat AS latitude, center_lng AS longitude
        FROM region_polygons WHERE id = :id
    """,
    AnswerSource.IMAGE_PIXELS: """
        SELECT id, name, x, y
        FROM image_locations WHERE id = :id
    """,
    AnswerSource.PANORAMA_POINTS: """
        SELECT id, name, latitude, longitude, image_key, heading, pitch
        FROM panorama_locations WHERE id = :id
    """,
    AnswerSource.CUSTOM_CATEGORIES: """
        SELECT id, name, latitude, longitude, country_code
        FROM category_locations WHERE id = :id
    """,
}

_CANDIDATES: dict[AnswerSource, str] = {
    AnswerSource.POINTS_OF_INTEREST: "SELECT id FROM poi_locations WHERE country = :key",
    AnswerSource.REGION_POLYGONS: "SELECT id FROM region_polygons",
    AnswerSource.IMAGE_PIXELS: "SELECT id FROM image_locations WHERE image_map_id = :key",
    AnswerSource.PANORAMA_POINTS: "SELECT id FROM panorama_locations WHERE panorama_type = :key",
    AnswerSource.CUSTOM_CATEGORIES: "SELECT id FROM category_locations WHERE category = :key",
}


def resolve_answer(session: Session, source: AnswerSource | str, location_id: str) -> AnswerLocation:
    tag = AnswerSource(source)
    row = session.execute(text(_LOOKUPS[tag]), {"id": location_id}).mappings().first()
    if not row:
        raise NotFound(f"Answer location {location_id!r} not found in {tag.value}")
    return AnswerLocation(source=tag, **dict(row))


def pick_locations(session: Session, config: GameTypeConfig, count: int) -> list[str]:
    """Random distinct answer ids for a new round of ``config``'s game type."""
    query = f"{_CANDIDATES[config.answer_source]} ORDER BY RANDOM() LIMIT :count"
    rows = session.execute(text(query), {"key": config.key, "count": count}).scalars().all()
    if len(rows) < count:
        raise NotFound(f"Not enough locations for {config.game_type} (need {count}, have {len(rows)})")
    return [str(row) for row in rows]
