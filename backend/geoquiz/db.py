from __future__ import annotations

from contextlib import contextmanager
import json
import logging
import random
import sqlite3
import time
from typing import Any, Callable, Iterator, Mapping, Optional, TypeVar

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .config import settings
from .models import Base

logger = logging.getLogger("geoquiz.db")

T = TypeVar("T")


def _build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 30},
            future=True,
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        future=True,
    )


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


_ENGINE = _build_engine(settings.database_url)
SessionLocal = sessionmaker(
    bind=_ENGINE,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    class_=Session,
    future=True,
)


def get_engine() -> Engine:
    return _ENGINE


def reset_database_engine(database_url: str | None = None) -> None:
    global _ENGINE
    if database_url:
        object.__setattr__(settings, "database_url", database_url)

    _ENGINE.dispose()
    _ENGINE = _build_engine(settings.database_url)
    SessionLocal.configure(bind=_ENGINE)


@contextmanager
def get_db() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class SqlHelpers:
    """Thin wrappers over raw ``text()`` queries returning row mappings."""

    def _one(
        self,
        session: Session,
        query: str,
        params: Optional[dict[str, Any]] = None,
    ) -> Optional[Mapping[str, Any]]:
        return session.execute(text(query), params or {}).mappings().first()

    def _all(
        self,
        session: Session,
        query: str,
        params: Optional[dict[str, Any]] = None,
    ) -> list[Mapping[str, Any]]:
        return list(session.execute(text(query), params or {}).mappings().all())

    def _scalar(
        self,
        session: Session,
        query: str,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        return session.execute(text(query), params or {}).scalar_one()


def is_transient_error(error: BaseException) -> bool:
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    if isinstance(error, OperationalError):
        message = str(error).lower()
        return any(marker in message for marker in ("locked", "timeout", "connection", "deadlock", "busy"))
    return False


def with_retry(
    operation: Callable[[], T],
    operation_name: str,
    attempts: int | None = None,
    initial_delay_ms: int | None = None,
    max_delay_ms: int = 10_000,
) -> T:
    """Run ``operation`` again on transient storage failures, with jittered backoff."""
    max_attempts = attempts or settings.leaderboard_retry_attempts
    delay_ms = float(initial_delay_ms if initial_delay_ms is not None else settings.leaderboard_retry_delay_ms)

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except (OperationalError, DBAPIError) as exc:
            if not is_transient_error(exc) or attempt == max_attempts:
                raise
            logger.warning(
                "DB operation failed, retrying",
                extra={"event": "db_retry", "reason": operation_name, "attempt": attempt},
            )
            time.sleep(delay_ms / 1000)
            jitter = random.random() * 0.1 * delay_ms
            delay_ms = min(max_delay_ms, delay_ms * 2 + jitter)

    raise RuntimeError("unreachable")


def check_db_connection() -> None:
    with _ENGINE.connect() as connection:
        connection.execute(text("SELECT 1"))


def init_db() -> None:
    Base.metadata.create_all(bind=_ENGINE)


_SWISS_POIS = [
    ("poi-zurich", "Zürich", 47.3769, 8.5417),
    ("poi-bern", "Bern", 46.9480, 7.4474),
    ("poi-geneva", "Genève", 46.2044, 6.1432),
    ("poi-basel", "Basel", 47.5596, 7.5886),
    ("poi-lausanne", "Lausanne", 46.5197, 6.6323),
    ("poi-lucerne", "Luzern", 47.0502, 8.3093),
    ("poi-lugano", "Lugano", 46.0037, 8.9511),
    ("poi-st-gallen", "St. Gallen", 47.4245, 9.3767),
]

_WORLD_CAPITALS = [
    ("cap-paris", "Paris", 48.8566, 2.3522, "FR"),
    ("cap-tokyo", "Tokyo", 35.6762, 139.6503, "JP"),
    ("cap-canberra", "Canberra", -35.2809, 149.1300, "AU"),
    ("cap-brasilia", "Brasília", -15.7939, -47.8828, "BR"),
    ("cap-nairobi", "Nairobi", -1.2921, 36.8219, "KE"),
    ("cap-ottawa", "Ottawa", 45.4215, -75.6972, "CA"),
    ("cap-lima", "Lima", -12.0464, -77.0428, "PE"),
]

# Coarse outlines; enough for containment checks on seeded data.
_REGIONS = [
    (
        "region-ch",
        "Switzerland",
        "CH",
        [[5.96, 46.13], [6.79, 45.83], [7.86, 45.92], [9.04, 45.82], [10.49, 46.55],
         [9.53, 47.53], [8.56, 47.80], [7.59, 47.58], [6.85, 47.05], [5.96, 46.13]],
        46.8182,
        8.2275,
    ),
    (
        "region-fr",
        "France",
        "FR",
        [[-4.79, 48.41], [-1.19, 46.02], [-1.78, 43.36], [3.17, 42.43], [7.53, 43.78],
         [6.63, 45.11], [8.23, 48.96], [2.54, 51.09], [-4.79, 48.41]],
        46.2276,
        2.2137,
    ),
    (
        "region-jp",
        "Japan",
        "JP",
        [[129.41, 33.30], [131.00, 31.00], [135.79, 33.46], [140.97, 35.90],
         [141.89, 39.18], [141.37, 41.38], [145.54, 43.26], [141.38, 45.55],
         [139.81, 42.56], [139.86, 38.17], [136.69, 37.30], [132.62, 35.43], [129.41, 33.30]],
        36.2048,
        138.2529,
    ),
]

_GARDEN_POINTS = [
    ("img-garden-bench", "garden", "Bench", 120.0, 340.0),
    ("img-garden-pond", "garden", "Pond", 610.0, 210.0),
    ("img-garden-oak", "garden", "Old oak", 880.0, 520.0),
    ("img-garden-shed", "garden", "Shed", 300.0, 75.0),
    ("img-garden-gate", "garden", "Gate", 20.0, 600.0),
]

_PANORAMAS = [
    ("pano-reykjavik", "world", "mly-reykjavik-0001", "Reykjavík street", 64.1466, -21.9426, 90.0, 0.0),
    ("pano-cape-town", "world", "mly-capetown-0001", "Cape Town", -33.9249, 18.4241, 180.0, 2.0),
    ("pano-montreal", "world", "mly-montreal-0001", "Montréal", 45.5019, -73.5674, 270.0, -1.0),
    ("pano-hanoi", "world", "mly-hanoi-0001", "Hà Nội", 21.0278, 105.8342, 45.0, 0.0),
    ("pano-santiago", "world", "mly-santiago-0001", "Santiago", -33.4489, -70.6693, 10.0, 5.0),
]


def seed_sample_locations_if_empty() -> int:
    """Seed a small answer-source catalogue for development and tests."""
    with get_db() as session:
        count = session.execute(text("SELECT COUNT(*) FROM poi_locations")).scalar_one()
        if count > 0:
            return 0

        session.execute(
            text(
                """
                INSERT INTO poi_locations (id, name, latitude, longitude, country)
                VALUES (:id, :name, :latitude, :longitude, 'switzerland')
                """
            ),
            [
                {"id": poi_id, "name": name, "latitude": lat, "longitude": lng}
                for poi_id, name, lat, lng in _SWISS_POIS
            ],
        )
        session.execute(
            text(
                """
                INSERT INTO category_locations (id, category, name, latitude, longitude, country_code)
                VALUES (:id, 'capitals', :name, :latitude, :longitude, :country_code)
                """
            ),
            [
                {"id": loc_id, "name": name, "latitude": lat, "longitude": lng, "country_code": code}
                for loc_id, name, lat, lng, code in _WORLD_CAPITALS
            ],
        )
        session.execute(
            text(
                """
                INSERT INTO region_polygons (id, name, country_code, geojson, center_lat, center_lng)
                VALUES (:id, :name, :country_code, :geojson, :center_lat, :center_lng)
                """
            ),
            [
                {
                    "id": region_id,
                    "name": name,
                    "country_code": code,
                    "geojson": json.dumps({"type": "Polygon", "coordinates": [ring]}),
                    "center_lat": center_lat,
                    "center_lng": center_lng,
                }
                for region_id, name, code, ring, center_lat, center_lng in _REGIONS
            ],
        )
        session.execute(
            text(
                """
                INSERT INTO image_locations (id, image_map_id, name, x, y)
                VALUES (:id, :image_map_id, :name, :x, :y)
                """
            ),
            [
                {"id": img_id, "image_map_id": map_id, "name": name, "x": x, "y": y}
                for img_id, map_id, name, x, y in _GARDEN_POINTS
            ],
        )
        session.execute(
            text(
                """
                INSERT INTO panorama_locations (
                    id, panorama_type, image_key, name, latitude, longitude, heading, pitch
                )
                VALUES (:id, :panorama_type, :image_key, :name, :latitude, :longitude, :heading, :pitch)
                """
            ),
            [
                {
                    "id": pano_id,
                    "panorama_type": pano_type,
                    "image_key": key,
                    "name": name,
                    "latitude": lat,
                    "longitude": lng,
                    "heading": heading,
                    "pitch": pitch,
                }
                for pano_id, pano_type, key, name, lat, lng, heading, pitch in _PANORAMAS
            ],
        )

    return len(_SWISS_POIS) + len(_WORLD_CAPITALS) + len(_REGIONS) + len(_GARDEN_POINTS) + len(_PANORAMAS)
