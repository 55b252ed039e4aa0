from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Player(Base):
    __tablename__ = "players"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    nickname: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    image: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Game(Base):
    __tablename__ = "games"
    __table_args__ = (
        CheckConstraint("mode IN ('group', 'solo', 'ranked', 'duel')", name="ck_games_mode"),
        CheckConstraint("status IN ('active', 'completed')", name="ck_games_status"),
        Index("ix_games_owner_id", "owner_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="ranked")
    game_type: Mapped[str] = mapped_column(String(96), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    # NULL owner marks a guest game (no persisted identity, no server clock).
    owner_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("players.id", ondelete="CASCADE"),
        nullable=True,
    )
    total_rounds: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    locations_per_round: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    current_round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    active_round_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    active_location_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    location_started_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    # Player whose ready call stamped the clock; an expired slot is charged to them.
    clocked_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    time_limit_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    scoring_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class GameParticipant(Base):
    __tablename__ = "game_participants"
    __table_args__ = (Index("ix_game_participants_player_id", "player_id"),)

    game_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("games.id", ondelete="CASCADE"),
        primary_key=True,
    )
    player_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("players.id", ondelete="CASCADE"),
        primary_key=True,
    )
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class GameRound(Base):
    __tablename__ = "game_rounds"
    __table_args__ = (
        UniqueConstraint("game_id", "round_number", "location_index", name="uq_game_rounds_slot"),
        CheckConstraint(
            "location_source IN ('points-of-interest', 'region-polygons', 'image-pixels', "
            "'panorama-points', 'custom-categories')",
            name="ck_game_rounds_location_source",
        ),
        Index("ix_game_rounds_game_id", "game_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(36), ForeignKey("games.id", ondelete="CASCADE"), nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    location_index: Mapped[int] = mapped_column(Integer, nullable=False)
    # No FK: the id points into the table named by location_source.
    location_id: Mapped[str] = mapped_column(String(64), nullable=False)
    location_source: Mapped[str] = mapped_column(String(32), nullable=False)
    game_type: Mapped[str] = mapped_column(String(96), nullable=False)
    time_limit_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Guess(Base):
    __tablename__ = "guesses"
    __table_args__ = (
        UniqueConstraint("round_id", "player_id", name="uq_guesses_round_player"),
        Index("ix_guesses_player_id", "player_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    round_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("game_rounds.id", ondelete="CASCADE"),
        nullable=False,
    )
    player_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("players.id", ondelete="CASCADE"),
        nullable=False,
    )
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    pixel_x: Mapped[float | None] = mapped_column(Float, nullable=True)
    pixel_y: Mapped[float | None] = mapped_column(Float, nullable=True)
    distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    is_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_timeout: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    time_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    client_time_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    scoring_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class GameResult(Base):
    __tablename__ = "game_results"
    __table_args__ = (
        UniqueConstraint("game_id", "player_id", name="uq_game_results_game_player"),
        Index("ix_game_results_type_score", "game_type", "total_score"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(36), ForeignKey("games.id", ondelete="CASCADE"), nullable=False)
    player_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("players.id", ondelete="CASCADE"),
        nullable=False,
    )
    game_type: Mapped[str] = mapped_column(String(96), nullable=False)
    total_score: Mapped[int] = mapped_column(Integer, nullable=False)
    average_score: Mapped[float] = mapped_column(Float, nullable=False)
    total_distance: Mapped[float] = mapped_column(Float, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Ranking(Base):
    __tablename__ = "rankings"
    __table_args__ = (
        UniqueConstraint("player_id", "game_type", "period", "period_key", name="uq_rankings_entry"),
        CheckConstraint("period IN ('daily', 'weekly', 'monthly', 'alltime')", name="ck_rankings_period"),
        Index("ix_rankings_bucket", "game_type", "period", "period_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    player_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("players.id", ondelete="CASCADE"),
        nullable=False,
    )
    game_type: Mapped[str] = mapped_column(String(96), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    total_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_games: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    best_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    display_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PoiLocation(Base):
    __tablename__ = "poi_locations"
    __table_args__ = (Index("ix_poi_locations_country", "country"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    country: Mapped[str] = mapped_column(String(64), nullable=False)


class RegionPolygon(Base):
    __tablename__ = "region_polygons"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    country_code: Mapped[str] = mapped_column(String(8), unique=True, nullable=False)
    geojson: Mapped[str] = mapped_column(Text, nullable=False)
    center_lat: Mapped[float] = mapped_column(Float, nullable=False)
    center_lng: Mapped[float] = mapped_column(Float, nullable=False)


class ImageLocation(Base):
    __tablename__ = "image_locations"
    __table_args__ = (Index("ix_image_locations_map", "image_map_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    image_map_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    x: Mapped[float] = mapped_column(Float, nullable=False)
    y: Mapped[float] = mapped_column(Float, nullable=False)


class PanoramaLocation(Base):
    __tablename__ = "panorama_locations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    panorama_type: Mapped[str] = mapped_column(String(64), nullable=False, default="world")
    image_key: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    heading: Mapped[float | None] = mapped_column(Float, nullable=True)
    pitch: Mapped[float | None] = mapped_column(Float, nullable=True)


class CategoryLocation(Base):
    __tablename__ = "category_locations"
    __table_args__ = (Index("ix_category_locations_category", "category"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    country_code: Mapped[str | None] = mapped_column(String(8), nullable=True)


class GameTypeOverride(Base):
    """Dynamically administered scoring constants for one game type."""

    __tablename__ = "game_type_overrides"

    game_type: Mapped[str] = mapped_column(String(96), primary_key=True)
    scale_factor: Mapped[float | None] = mapped_column(Float, nullable=True)
    timeout_penalty_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    default_time_limit_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
