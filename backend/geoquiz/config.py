from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

_DEFAULT_SECRET_KEY = "change-me-in-production-min-32-bytes-key"
_DEFAULT_DATABASE_URL = "sqlite:///./geoquiz.db"
_DEV_ENVS = frozenset({"development", "dev", "test", "testing"})
_POSTGRES_SCHEMES = frozenset(
    {
        "postgres",
        "postgresql",
        "postgresql+psycopg",
        "postgresql+psycopg2",
        "postgresql+asyncpg",
        "postgresql+pg8000",
    }
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int | None = None) -> int:
    try:
        value = int(os.getenv(name, default))
    except ValueError:
        value = default
    return value if minimum is None else max(minimum, value)


def _env_float(name: str, default: float, minimum: float | None = None) -> float:
    try:
        value = float(os.getenv(name, default))
    except ValueError:
        value = default
    return value if minimum is None else max(minimum, value)


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _normalize_database_url(value: str | None) -> str:
    raw = (value or "").strip().strip("'\"").strip() or _DEFAULT_DATABASE_URL
    if "://" not in raw:
        return raw

    scheme, rest = raw.split("://", 1)
    if scheme.lower() not in _POSTGRES_SCHEMES:
        return raw

    # psycopg2 is the only Postgres driver installed; hosted databases require TLS.
    url = f"postgresql+psycopg2://{rest}"
    if "sslmode=" not in url:
        url += ("&" if "?" in url else "?") + "sslmode=require"
    return url


@dataclass(frozen=True)
class Settings:
    env: str
    secret_key: str
    jwt_algorithm: str
    jwt_exp_minutes: int
    port: int
    database_url: str
    db_pool_size: int
    db_max_overflow: int
    db_pool_timeout: int
    db_pool_recycle: int
    cors_origins: list[str]
    debug: bool
    log_level: str
    # Round engine
    guess_grace_seconds: float
    default_time_limit_seconds: int
    panorama_time_limit_seconds: int
    default_locations_per_round: int
    current_scoring_version: int
    # Abuse limits
    rate_limit_requests_per_min: int
    rate_limit_guesses_per_min: int
    # Leaderboard writes
    leaderboard_retry_attempts: int
    leaderboard_retry_delay_ms: int
    admin_nicknames: frozenset[str]
    enable_prometheus_metrics: bool

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_production(self) -> bool:
        return self.env.lower() not in _DEV_ENVS

    def validate(self) -> None:
        """Fail at import time on settings the round engine cannot run with."""
        if self.is_production and self.secret_key == _DEFAULT_SECRET_KEY:
            raise RuntimeError(
                "SECRET_KEY must be explicitly set in production. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )
        if self.current_scoring_version < 1:
            raise RuntimeError("CURRENT_SCORING_VERSION must be a positive integer")
        if self.guess_grace_seconds >= self.default_time_limit_seconds:
            raise RuntimeError("GUESS_GRACE_SECONDS must be shorter than DEFAULT_TIME_LIMIT_SECONDS")


settings = Settings(
    env=os.getenv("ENV", "development"),
    secret_key=os.getenv("SECRET_KEY", _DEFAULT_SECRET_KEY),
    jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
    jwt_exp_minutes=_env_int("JWT_EXP_MINUTES", 60 * 12, minimum=1),
    port=_env_int("PORT", 8000),
    database_url=_normalize_database_url(os.getenv("DATABASE_URL")),
    db_pool_size=_env_int("DB_POOL_SIZE", 5, minimum=1),
    db_max_overflow=_env_int("DB_MAX_OVERFLOW", 10, minimum=0),
    db_pool_timeout=_env_int("DB_POOL_TIMEOUT", 30, minimum=1),
    db_pool_recycle=_env_int("DB_POOL_RECYCLE", 1800, minimum=60),
    cors_origins=_env_list("CORS_ORIGINS", "http://localhost:3000"),
    debug=_env_bool("DEBUG", False),
    log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    guess_grace_seconds=_env_float("GUESS_GRACE_SECONDS", 2.0, minimum=0.0),
    default_time_limit_seconds=_env_int("DEFAULT_TIME_LIMIT_SECONDS", 30, minimum=1),
    panorama_time_limit_seconds=_env_int("PANORAMA_TIME_LIMIT_SECONDS", 60, minimum=1),
    default_locations_per_round=_env_int("DEFAULT_LOCATIONS_PER_ROUND", 5, minimum=1),
    current_scoring_version=_env_int("CURRENT_SCORING_VERSION", 2),
    rate_limit_requests_per_min=_env_int("RATE_LIMIT_REQUESTS_PER_MIN", 120, minimum=1),
    rate_limit_guesses_per_min=_env_int("RATE_LIMIT_GUESSES_PER_MIN", 40, minimum=1),
    leaderboard_retry_attempts=_env_int("LEADERBOARD_RETRY_ATTEMPTS", 3, minimum=1),
    leaderboard_retry_delay_ms=_env_int("LEADERBOARD_RETRY_DELAY_MS", 100, minimum=0),
    admin_nicknames=frozenset(name.lower() for name in _env_list("ADMIN_NICKNAMES", "admin")),
    enable_prometheus_metrics=_env_bool("ENABLE_PROMETHEUS_METRICS", True),
)

settings.validate()
