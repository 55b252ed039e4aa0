from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import secrets
import time
from typing import Any, Callable, Mapping, Optional
import uuid

from fastapi import HTTPException
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .answer_sources import AnswerLocation, pick_locations, resolve_answer
from .config import settings
from .db import SqlHelpers, get_db
from .errors import Conflict, Expired, Forbidden, Invalid, NotFound
from .game_types import GameTypeConfig, Metric, resolve_game_type
from .geo import DistanceResult, haversine_km, pixel_distance_km, region_distance, validate_lat_lng, validate_pixel
from .leaderboard import GameSummary, Leaderboard
from .metrics import CLOCK_STARTS_TOTAL, EXPIRED_SUBMISSIONS_TOTAL, GUESS_ELAPSED_SECONDS, GUESSES_TOTAL
from .rate_limit import SlidingWindowLimiter
from .round_store import (
    ActiveSlot,
    clear_active,
    fetch_game,
    game_lock,
    has_guessed,
    reserve_location,
    slot_of,
    start_clock,
)
from .scoring import ScoringParams, calculate_score, resolve_version
from .security import AuthContext, create_access_token

logger = logging.getLogger("geoquiz.rounds")

Clock = Callable[[], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GuessPoint:
    lat: Optional[float] = None
    lng: Optional[float] = None
    x: Optional[float] = None
    y: Optional[float] = None


@dataclass(frozen=True)
class GuessOutcome:
    distance_km: float
    score: int
    is_correct: Optional[bool]
    time_seconds: Optional[float]


class RoundService(SqlHelpers):
    """Server-authoritative round lifecycle: start, ready, guess, timeout, finalize.

    A missing ``AuthContext`` marks a guest. Guests only ever see ownerless games
    and get the full location up front; nothing they do is clocked or recorded.
    """

    def __init__(self, leaderboard: Optional[Leaderboard] = None, clock: Clock = _now_ms) -> None:
        self.leaderboard = leaderboard or Leaderboard()
        self.clock = clock
        self.guess_limiter = SlidingWindowLimiter()

    # ---------- Players ----------
    def create_player(self, nickname: str, image: Optional[str] = None) -> dict[str, Any]:
        candidate = nickname.strip()
        if len(candidate) < 2:
            raise Invalid("Nickname too short")

        player_id = str(uuid.uuid4())
        with get_db() as session:
            final_name = candidate
            suffix_attempt = 0
            while True:
                try:
                    session.execute(
                        text(
                            """
                            INSERT INTO players (id, nickname, image, created_at)
                            VALUES (:id, :nickname, :image, :created_at)
                            """
                        ),
                        {"id": player_id, "nickname": final_name, "image": image, "created_at": _utc_now()},
                    )
                    break
                except IntegrityError:
                    session.rollback()
                    suffix_attempt += 1
                    if suffix_attempt > 20:
                        raise Conflict("Nickname already taken")
                    final_name = f"{candidate}{secrets.randbelow(9000) + 1000}"

        is_admin = final_name.lower() in settings.admin_nicknames
        token = create_access_token(player_id=player_id, nickname=final_name, is_admin=is_admin)
        return {
            "player_id": player_id,
            "nickname": final_name,
            "access_token": token,
            "token_type": "bearer",
        }

    def ensure_player_exists(self, player_id: str) -> None:
        with get_db() as session:
            row = self._one(session, "SELECT id FROM players WHERE id = :player_id", {"player_id": player_id})
            if not row:
                raise HTTPException(status_code=401, detail="Player not found")

    # ---------- Lookups ----------
    def _fetch_round(self, session: Session, game_id: str, round_number: int, location_index: int) -> Mapping[str, Any]:
        row = self._one(
            session,
            """
            SELECT * FROM game_rounds
            WHERE game_id = :game_id AND round_number = :round_number AND location_index = :location_index
            """,
            {"game_id": game_id, "round_number": round_number, "location_index": location_index},
        )
        if not row:
            raise NotFound(f"Location {location_index} of round {round_number} not found")
        return row

    def _fetch_round_by_id(self, session: Session, round_id: str) -> Mapping[str, Any]:
        row = self._one(session, "SELECT * FROM game_rounds WHERE id = :round_id", {"round_id": round_id})
        if not row:
            raise NotFound("Round not found")
        return row

    def _is_participant(self, session: Session, game_id: str, player_id: str) -> bool:
        row = self._one(
            session,
            "SELECT 1 AS ok FROM game_participants WHERE game_id = :game_id AND player_id = :player_id",
            {"game_id": game_id, "player_id": player_id},
        )
        return row is not None

    def _ensure_can_play(self, session: Session, game: Mapping[str, Any], auth: Optional[AuthContext]) -> None:
        if auth is None:
            if game["owner_id"] is not None:
                raise Forbidden("This game belongs to a registered player")
            return
        if not self._is_participant(session, game["id"], auth.player_id):
            raise Forbidden("Not a participant of this game")

    def _time_limit(self, rnd: Mapping[str, Any], game: Mapping[str, Any], config: GameTypeConfig) -> int:
        return int(rnd["time_limit_seconds"] or game["time_limit_seconds"] or config.default_time_limit_seconds)

    def _deadline_ms(self, slot: ActiveSlot, limit_seconds: int) -> Optional[int]:
        if slot.started_at is None:
            return None
        return slot.started_at + limit_seconds * 1000

    def _grace_ms(self) -> int:
        return int(settings.guess_grace_seconds * 1000)

    def _expected_locations(self, game: Mapping[str, Any]) -> int:
        return int(game["total_rounds"]) * int(game["locations_per_round"])

    def _guess_count(self, session: Session, game_id: str, player_id: str) -> int:
        return int(
            self._scalar(
                session,
                """
                SELECT COUNT(*)
                FROM guesses g
                JOIN game_rounds r ON r.id = g.round_id
                WHERE r.game_id = :game_id AND g.player_id = :player_id
                """,
                {"game_id": game_id, "player_id": player_id},
            )
        )

    def _player_finished(self, session: Session, game: Mapping[str, Any], player_id: str) -> bool:
        return self._guess_count(session, game["id"], player_id) >= self._expected_locations(game)

    # ---------- Games ----------
    def create_game(
        self,
        auth: Optional[AuthContext],
        game_type: str,
        mode: str = "ranked",
        total_rounds: int = 1,
        locations_per_round: Optional[int] = None,
        time_limit_seconds: Optional[int] = None,
        scoring_version: Optional[int] = None,
    ) -> dict[str, Any]:
        if auth is None and mode != "solo":
            raise Forbidden("Guests can only play solo games")

        game_id = str(uuid.uuid4())
        per_round = locations_per_round or settings.default_locations_per_round
        with get_db() as session:
            config = resolve_game_type(session, game_type)
            version = int(config.scoring_version or scoring_version or settings.current_scoring_version)
            owner_id = auth.player_id if auth else None

            session.execute(
                text(
                    """
                    INSERT INTO games (
                        id, mode, game_type, status, owner_id, total_rounds, locations_per_round,
                        current_round, active_round_number, active_location_index,
                        location_started_at, time_limit_seconds, scoring_version, created_at
                    ) VALUES (
                        :id, :mode, :game_type, 'active', :owner_id, :total_rounds, :locations_per_round,
                        1, NULL, NULL, NULL, :time_limit_seconds, :scoring_version, :created_at
                    )
                    """
                ),
                {
                    "id": game_id,
                    "mode": mode,
                    "game_type": game_type,
                    "owner_id": owner_id,
                    "total_rounds": total_rounds,
                    "locations_per_round": per_round,
                    "time_limit_seconds": time_limit_seconds,
                    "scoring_version": version,
                    "created_at": _utc_now(),
                },
            )
            if owner_id:
                self._add_participant(session, game_id, owner_id)
            self._create_round(session, game_id, 1, per_round, config)

        logger.info(
            "Game created",
            extra={"event": "game_created", "game_id": game_id, "player_id": owner_id, "game_type": game_type},
        )
        return self.game_state(auth, game_id)

    def _add_participant(self, session: Session, game_id: str, player_id: str) -> None:
        session.execute(
            text(
                """
                INSERT INTO game_participants (game_id, player_id, joined_at)
                VALUES (:game_id, :player_id, :joined_at)
                """
            ),
            {"game_id": game_id, "player_id": player_id, "joined_at": _utc_now()},
        )

    def _create_round(
        self,
        session: Session,
        game_id: str,
        round_number: int,
        count: int,
        config: GameTypeConfig,
    ) -> None:
        location_ids = pick_locations(session, config, count)
        session.execute(
            text(
                """
                INSERT INTO game_rounds (
                    id, game_id, round_number, location_index, location_id,
                    location_source, game_type, time_limit_seconds
                ) VALUES (
                    :id, :game_id, :round_number, :location_index, :location_id,
                    :location_source, :game_type, NULL
                )
                """
            ),
            [
                {
                    "id": str(uuid.uuid4()),
                    "game_id": game_id,
                    "round_number": round_number,
                    "location_index": index,
                    "location_id": location_id,
                    "location_source": config.answer_source.value,
                    "game_type": config.game_type,
                }
                for index, location_id in enumerate(location_ids, start=1)
            ],
        )

    def join_game(self, auth: AuthContext, game_id: str) -> dict[str, Any]:
        with game_lock(game_id), get_db() as session:
            game = fetch_game(session, game_id, for_update=True)
            if game["owner_id"] is None:
                raise Forbidden("Guest games cannot be joined")
            if game["mode"] not in {"group", "duel"}:
                raise Forbidden("Only group and duel games accept participants")
            if game["status"] == "completed":
                raise Conflict("Game already completed")
            if not self._is_participant(session, game_id, auth.player_id):
                self._add_participant(session, game_id, auth.player_id)

        return self.game_state(auth, game_id)

    def release_round(self, auth: AuthContext, game_id: str) -> dict[str, Any]:
        with game_lock(game_id), get_db() as session:
            game = fetch_game(session, game_id, for_update=True)
            if game["owner_id"] != auth.player_id:
                raise Forbidden("Only the game owner can release rounds")
            if game["status"] == "completed":
                raise Conflict("Game already completed")
            next_round = int(game["current_round"]) + 1
            if next_round > int(game["total_rounds"]):
                raise Conflict("All rounds already released")

            config = resolve_game_type(session, game["game_type"])
            self._create_round(session, game_id, next_round, int(game["locations_per_round"]), config)
            session.execute(
                text("UPDATE games SET current_round = :current_round WHERE id = :game_id"),
                {"current_round": next_round, "game_id": game_id},
            )

        logger.info(
            "Round released",
            extra={"event": "round_released", "game_id": game_id, "round_number": next_round},
        )
        return self.game_state(auth, game_id)

    def game_state(self, auth: Optional[AuthContext], game_id: str) -> dict[str, Any]:
        """Game status with per-location progress.

        Answer positions appear only for locations the caller has already guessed.
        """
        with get_db() as session:
            game = fetch_game(session, game_id)
            self._ensure_can_play(session, game, auth)

            rounds = self._all(
                session,
                """
                SELECT * FROM game_rounds
                WHERE game_id = :game_id
                ORDER BY round_number, location_index
                """,
                {"game_id": game_id},
            )
            guesses: dict[str, Mapping[str, Any]] = {}
            if auth is not None:
                guesses = {
                    row["round_id"]: row
                    for row in self._all(
                        session,
                        """
                        SELECT g.*
                        FROM guesses g
                        JOIN game_rounds r ON r.id = g.round_id
                        WHERE r.game_id = :game_id AND g.player_id = :player_id
                        """,
                        {"game_id": game_id, "player_id": auth.player_id},
                    )
                }

            locations = []
            for rnd in rounds:
                item: dict[str, Any] = {
                    "round_id": rnd["id"],
                    "round_number": int(rnd["round_number"]),
                    "location_index": int(rnd["location_index"]),
                    "guessed": rnd["id"] in guesses,
                }
                guess = guesses.get(rnd["id"])
                if guess is not None:
                    answer = resolve_answer(session, rnd["location_source"], rnd["location_id"])
                    item["location"] = answer.disclosed()
                    item["guess"] = _guess_payload(guess)
                locations.append(item)

            players = self._all(
                session,
                """
                SELECT gp.player_id, p.nickname
                FROM game_participants gp
                JOIN players p ON p.id = gp.player_id
                WHERE gp.game_id = :game_id
                ORDER BY gp.joined_at, gp.player_id
                """,
                {"game_id": game_id},
            )

        slot = slot_of(game)
        return {
            "game_id": game["id"],
            "mode": game["mode"],
            "game_type": game["game_type"],
            "status": game["status"],
            "owner_id": game["owner_id"],
            "total_rounds": int(game["total_rounds"]),
            "locations_per_round": int(game["locations_per_round"]),
            "current_round": int(game["current_round"]),
            "active_round_number": slot.round_number,
            "active_location_index": slot.location_index,
            "location_started_at": slot.started_at,
            "time_limit_seconds": game["time_limit_seconds"],
            "scoring_version": int(game["scoring_version"]),
            "total_score": sum(int(g["score"]) for g in guesses.values()),
            "participants": [dict(row) for row in players],
            "locations": locations,
        }

    # ---------- Round lifecycle ----------
    def start_location(
        self,
        auth: Optional[AuthContext],
        game_id: str,
        location_index: int,
        round_number: Optional[int] = None,
    ) -> dict[str, Any]:
        finalize_for: Optional[str] = None
        with game_lock(game_id), get_db() as session:
            game = fetch_game(session, game_id, for_update=True)
            self._ensure_can_play(session, game, auth)
            if game["status"] == "completed":
                raise Conflict("Game already completed")

            target_round = round_number or int(game["current_round"])
            if target_round < 1 or target_round > int(game["current_round"]):
                raise Forbidden("Round not released yet")
            rnd = self._fetch_round(session, game_id, target_round, location_index)
            config = resolve_game_type(session, rnd["game_type"])
            limit = self._time_limit(rnd, game, config)

            if auth is None:
                # Guests get everything up front and keep time themselves.
                answer = resolve_answer(session, rnd["location_source"], rnd["location_id"])
                return self._round_payload(rnd, limit, answer.disclosed(), None)

            if has_guessed(session, rnd["id"], auth.player_id):
                raise Conflict("Location already guessed")

            slot = slot_of(game)
            if slot.is_clocked and not slot.matches(target_round, location_index):
                if not self._close_if_expired(session, game, slot):
                    raise Conflict("Another location is in progress")
                if slot.clocked_by and self._player_finished(session, game, slot.clocked_by):
                    finalize_for = slot.clocked_by

            self._ensure_previous_guessed(session, game_id, target_round, location_index, auth.player_id)

            answer = resolve_answer(session, rnd["location_source"], rnd["location_id"])
            slot = reserve_location(session, game_id, target_round, location_index)

        logger.info(
            "Location reserved",
            extra={
                "event": "location_reserved",
                "game_id": game_id,
                "player_id": auth.player_id,
                "round_number": target_round,
                "location_index": location_index,
            },
        )
        if finalize_for:
            self._finalize_quietly(game_id, finalize_for)
        return self._round_payload(rnd, limit, answer.prompt(), slot)

    def _round_payload(
        self,
        rnd: Mapping[str, Any],
        limit: int,
        location: dict[str, Any],
        slot: Optional[ActiveSlot],
    ) -> dict[str, Any]:
        started_at = slot.started_at if slot else None
        return {
            "round_id": rnd["id"],
            "round_number": int(rnd["round_number"]),
            "location_index": int(rnd["location_index"]),
            "game_type": rnd["game_type"],
            "time_limit_seconds": limit,
            "location": location,
            "location_started_at": started_at,
            "deadline": started_at + limit * 1000 if started_at is not None else None,
        }

    def _ensure_previous_guessed(
        self,
        session: Session,
        game_id: str,
        round_number: int,
        location_index: int,
        player_id: str,
    ) -> None:
        missing = self._scalar(
            session,
            """
            SELECT COUNT(*)
            FROM game_rounds r
            LEFT JOIN guesses g ON g.round_id = r.id AND g.player_id = :player_id
            WHERE r.game_id = :game_id
              AND g.id IS NULL
              AND (r.round_number < :round_number
                   OR (r.round_number = :round_number AND r.location_index < :location_index))
            """,
            {
                "game_id": game_id,
                "player_id": player_id,
                "round_number": round_number,
                "location_index": location_index,
            },
        )
        if int(missing) > 0:
            raise Forbidden("Earlier locations must be played first")

    def notify_ready(
        self,
        auth: AuthContext,
        game_id: str,
        location_index: int,
        round_number: Optional[int] = None,
    ) -> dict[str, Any]:
        with game_lock(game_id), get_db() as session:
            # Stamp with the time the lock was won.
            now = self.clock()
            game = fetch_game(session, game_id, for_update=True)
            self._ensure_can_play(session, game, auth)
            before = slot_of(game)
            if round_number is None and before.location_index == location_index and before.round_number:
                round_number = before.round_number
            target_round = round_number or int(game["current_round"])
            rnd = self._fetch_round(session, game_id, target_round, location_index)
            if has_guessed(session, rnd["id"], auth.player_id):
                raise Conflict("Location already guessed")

            slot = start_clock(session, game_id, target_round, location_index, now, auth.player_id)
            if not slot.matches(target_round, location_index) or slot.started_at is None:
                CLOCK_STARTS_TOTAL.labels(outcome="not_reserved").inc()
                raise Conflict("Location is not reserved; start it first")

            config = resolve_game_type(session, rnd["game_type"])
            limit = self._time_limit(rnd, game, config)

        repeated = before.is_clocked and before.matches(target_round, location_index)
        CLOCK_STARTS_TOTAL.labels(outcome="repeat" if repeated else "started").inc()
        if not repeated:
            logger.info(
                "Location clock started",
                extra={
                    "event": "clock_started",
                    "game_id": game_id,
                    "player_id": auth.player_id,
                    "round_number": target_round,
                    "location_index": location_index,
                    "started_at": slot.started_at,
                },
            )

        deadline = slot.started_at + limit * 1000
        return {
            "round_id": rnd["id"],
            "round_number": target_round,
            "location_index": location_index,
            "location_started_at": slot.started_at,
            "deadline": deadline,
            "time_limit_seconds": limit,
            "remaining_seconds": max(0.0, (deadline - now) / 1000),
        }

    def submit_guess(
        self,
        auth: AuthContext,
        round_id: str,
        point: Optional[GuessPoint] = None,
        timeout: bool = False,
        client_elapsed_seconds: Optional[float] = None,
    ) -> dict[str, Any]:
        if not self.guess_limiter.allow(f"guess:{auth.player_id}", settings.rate_limit_guesses_per_min, 60):
            raise HTTPException(status_code=429, detail="Too many guesses")
        if not timeout and point is None:
            raise Invalid("A guess needs a point or timeout=true")

        with get_db() as session:
            game_id = self._fetch_round_by_id(session, round_id)["game_id"]

        with game_lock(game_id), get_db() as session:
            game = fetch_game(session, game_id, for_update=True)
            rnd = self._fetch_round_by_id(session, round_id)
            self._ensure_can_play(session, game, auth)
            if int(rnd["round_number"]) > int(game["current_round"]):
                raise Forbidden("Round not released yet")
            if has_guessed(session, round_id, auth.player_id):
                raise Conflict("Location already guessed")

            slot = slot_of(game)
            if not slot.matches(int(rnd["round_number"]), int(rnd["location_index"])) or not slot.is_clocked:
                raise Conflict("Location clock has not been started")
            if slot.clocked_by is not None and slot.clocked_by != auth.player_id:
                raise Conflict("Location clock was started by another player")

            config = resolve_game_type(session, rnd["game_type"])
            limit = self._time_limit(rnd, game, config)
            now = self.clock()
            elapsed_ms = max(0, now - slot.started_at)

            if not timeout and elapsed_ms > limit * 1000 + self._grace_ms():
                EXPIRED_SUBMISSIONS_TOTAL.inc()
                logger.info(
                    "Guess rejected after deadline",
                    extra={
                        "event": "guess_expired",
                        "game_id": game_id,
                        "player_id": auth.player_id,
                        "round_id": round_id,
                        "elapsed_ms": elapsed_ms,
                    },
                )
                raise Expired("Time limit exceeded; submit as timeout")

            answer = resolve_answer(session, rnd["location_source"], rnd["location_id"])
            if timeout:
                outcome = self._timeout_outcome(config)
            else:
                outcome = self._score_point(
                    config,
                    answer,
                    point,
                    elapsed_seconds=min(elapsed_ms / 1000, float(limit)),
                    limit=limit,
                    version=int(game["scoring_version"]),
                )

            self._insert_guess(
                session, rnd, auth.player_id, point, outcome, timeout, client_elapsed_seconds, game
            )
            clear_active(session, game_id)
            finished = self._player_finished(session, game, auth.player_id)
            if finished:
                self._mark_completed_if_all_done(session, game)

        GUESSES_TOTAL.labels(kind="timeout" if timeout else "point").inc()
        if not timeout:
            GUESS_ELAPSED_SECONDS.observe(elapsed_ms / 1000)
        logger.info(
            "Guess recorded",
            extra={
                "event": "guess_recorded",
                "game_id": game_id,
                "player_id": auth.player_id,
                "round_id": round_id,
                "elapsed_ms": elapsed_ms,
                "reason": "timeout" if timeout else None,
            },
        )

        leaderboard_recorded = self._finalize_quietly(game_id, auth.player_id) if finished else False
        return {
            "round_id": round_id,
            "distance_km": outcome.distance_km,
            "score": outcome.score,
            "is_correct": outcome.is_correct,
            "is_timeout": timeout,
            "time_seconds": outcome.time_seconds,
            "target": answer.disclosed(),
            "game_complete": finished,
            "leaderboard_recorded": leaderboard_recorded,
        }

    def handle_timeout(self, auth: AuthContext, round_id: str) -> dict[str, Any]:
        return self.submit_guess(auth, round_id, point=None, timeout=True)

    def active_location(self, auth: AuthContext, game_id: str) -> dict[str, Any]:
        """Status poll for the active slot; closes it as a timeout once past deadline and grace."""
        expired_closed = False
        finalize_for: Optional[str] = None
        with game_lock(game_id), get_db() as session:
            now = self.clock()
            game = fetch_game(session, game_id, for_update=True)
            self._ensure_can_play(session, game, auth)
            slot = slot_of(game)
            if not slot.is_reserved:
                return {"active": False, "expired_closed": False, "status": game["status"]}

            rnd = self._fetch_round(session, game_id, slot.round_number, slot.location_index)
            config = resolve_game_type(session, rnd["game_type"])
            limit = self._time_limit(rnd, game, config)
            guessed = has_guessed(session, rnd["id"], auth.player_id)

            if slot.is_clocked:
                expired_closed = self._close_if_expired(session, game, slot)
                if expired_closed:
                    guessed = has_guessed(session, rnd["id"], auth.player_id)
                    if slot.clocked_by and self._player_finished(session, game, slot.clocked_by):
                        finalize_for = slot.clocked_by
                    game = fetch_game(session, game_id)

        if finalize_for:
            self._finalize_quietly(game_id, finalize_for)

        current = slot_of(game)
        deadline = self._deadline_ms(current, limit)
        return {
            "active": True,
            "status": game["status"],
            "round_id": rnd["id"],
            "round_number": int(rnd["round_number"]),
            "location_index": int(rnd["location_index"]),
            "guessed": guessed,
            "location_started_at": current.started_at,
            "deadline": deadline,
            "time_limit_seconds": limit,
            "remaining_seconds": max(0.0, (deadline - now) / 1000) if deadline is not None else None,
            "expired_closed": expired_closed,
        }

    def _close_if_expired(
        self,
        session: Session,
        game: Mapping[str, Any],
        slot: ActiveSlot,
    ) -> bool:
        """Close a clocked slot past deadline + grace.

        The timeout is charged to the player who started the clock; nobody else gets
        a guess recorded on their behalf.
        """
        rnd = self._fetch_round(session, game["id"], slot.round_number, slot.location_index)
        config = resolve_game_type(session, rnd["game_type"])
        limit = self._time_limit(rnd, game, config)
        if self.clock() <= self._deadline_ms(slot, limit) + self._grace_ms():
            return False

        player_id = slot.clocked_by
        if player_id is not None and not has_guessed(session, rnd["id"], player_id):
            self._insert_guess(session, rnd, player_id, None, self._timeout_outcome(config), True, None, game)
            GUESSES_TOTAL.labels(kind="expired").inc()
        clear_active(session, game["id"])
        if player_id is not None and self._player_finished(session, game, player_id):
            self._mark_completed_if_all_done(session, game)
        logger.info(
            "Expired location closed as timeout",
            extra={"event": "slot_expired", "game_id": game["id"], "player_id": player_id, "round_id": rnd["id"]},
        )
        return True

    # ---------- Scoring ----------
    def _timeout_outcome(self, config: GameTypeConfig) -> GuessOutcome:
        return GuessOutcome(
            distance_km=config.timeout_penalty_km,
            score=0,
            is_correct=False if config.metric is Metric.POLYGON else None,
            time_seconds=None,
        )

    def _score_point(
        self,
        config: GameTypeConfig,
        answer: AnswerLocation,
        point: GuessPoint,
        elapsed_seconds: float,
        limit: int,
        version: int,
    ) -> GuessOutcome:
        result = self._measure(config, answer, point)
        score = calculate_score(
            ScoringParams(
                distance_km=result.distance_km,
                time_seconds=elapsed_seconds,
                scale_factor=config.scale_factor,
                is_correct=result.is_correct,
                time_limit_seconds=float(limit),
            ),
            version,
        )
        return GuessOutcome(
            distance_km=result.distance_km,
            score=score,
            is_correct=result.is_correct,
            time_seconds=elapsed_seconds,
        )

    def _measure(self, config: GameTypeConfig, answer: AnswerLocation, point: GuessPoint) -> DistanceResult:
        if config.metric is Metric.PIXEL:
            if point.x is None or point.y is None:
                raise Invalid("Image locations need pixel coordinates")
            validate_pixel(point.x, point.y)
            return DistanceResult(distance_km=pixel_distance_km(point.x, point.y, answer.x, answer.y))

        if point.lat is None or point.lng is None:
            raise Invalid("Map locations need lat/lng coordinates")
        validate_lat_lng(point.lat, point.lng)
        if config.metric is Metric.POLYGON:
            return region_distance(point.lat, point.lng, answer.geojson, answer.latitude, answer.longitude)
        return DistanceResult(distance_km=haversine_km(point.lat, point.lng, answer.latitude, answer.longitude))

    def _insert_guess(
        self,
        session: Session,
        rnd: Mapping[str, Any],
        player_id: str,
        point: Optional[GuessPoint],
        outcome: GuessOutcome,
        is_timeout: bool,
        client_elapsed_seconds: Optional[float],
        game: Mapping[str, Any],
    ) -> None:
        placed = point if point is not None and not is_timeout else GuessPoint()
        session.execute(
            text(
                """
                INSERT INTO guesses (
                    id, round_id, player_id, latitude, longitude, pixel_x, pixel_y,
                    distance_km, score, is_correct, is_timeout, time_seconds,
                    client_time_seconds, scoring_version, created_at
                ) VALUES (
                    :id, :round_id, :player_id, :latitude, :longitude, :pixel_x, :pixel_y,
                    :distance_km, :score, :is_correct, :is_timeout, :time_seconds,
                    :client_time_seconds, :scoring_version, :created_at
                )
                """
            ),
            {
                "id": str(uuid.uuid4()),
                "round_id": rnd["id"],
                "player_id": player_id,
                "latitude": placed.lat,
                "longitude": placed.lng,
                "pixel_x": placed.x,
                "pixel_y": placed.y,
                "distance_km": outcome.distance_km,
                "score": outcome.score,
                "is_correct": outcome.is_correct,
                "is_timeout": is_timeout,
                "time_seconds": outcome.time_seconds,
                "client_time_seconds": client_elapsed_seconds,
                "scoring_version": int(resolve_version(game["scoring_version"])),
                "created_at": _utc_now(),
            },
        )

    # ---------- Completion ----------
    def _mark_completed_if_all_done(self, session: Session, game: Mapping[str, Any]) -> None:
        participants = self._all(
            session,
            "SELECT player_id FROM game_participants WHERE game_id = :game_id",
            {"game_id": game["id"]},
        )
        if int(game["current_round"]) < int(game["total_rounds"]):
            return
        if all(self._player_finished(session, game, row["player_id"]) for row in participants):
            session.execute(
                text("UPDATE games SET status = 'completed' WHERE id = :game_id"),
                {"game_id": game["id"]},
            )

    def _summary(self, game_id: str, player_id: str) -> GameSummary:
        with get_db() as session:
            game = fetch_game(session, game_id)
            if not self._player_finished(session, game, player_id):
                raise Conflict("Game still has unplayed locations")
            row = self._one(
                session,
                """
                SELECT COALESCE(SUM(g.score), 0) AS total_score,
                       COALESCE(SUM(g.distance_km), 0) AS total_distance,
                       COUNT(*) AS guess_count
                FROM guesses g
                JOIN game_rounds r ON r.id = g.round_id
                WHERE r.game_id = :game_id AND g.player_id = :player_id
                """,
                {"game_id": game_id, "player_id": player_id},
            )

        total_score = int(row["total_score"])
        count = int(row["guess_count"])
        return GameSummary(
            game_id=game_id,
            player_id=player_id,
            game_type=game["game_type"],
            total_score=total_score,
            average_score=total_score / count if count else 0.0,
            total_distance=float(row["total_distance"]),
        )

    def _finalize_quietly(self, game_id: str, player_id: str) -> bool:
        # The guess is already committed; a failed leaderboard update is retried via complete_game.
        try:
            return self.leaderboard.record_completion(self._summary(game_id, player_id))
        except (SQLAlchemyError, HTTPException):
            logger.exception(
                "Leaderboard update failed",
                extra={"event": "leaderboard_update_failed", "game_id": game_id, "player_id": player_id},
            )
            return False

    def complete_game(self, auth: Optional[AuthContext], game_id: str) -> dict[str, Any]:
        """Finalize the caller's game into the leaderboards; safe to repeat."""
        with get_db() as session:
            game = fetch_game(session, game_id)
            self._ensure_can_play(session, game, auth)

        if auth is None:
            return {"game_id": game_id, "status": game["status"], "recorded": False, "total_score": None}

        summary = self._summary(game_id, auth.player_id)
        recorded = self.leaderboard.record_completion(summary)
        with get_db() as session:
            status = fetch_game(session, game_id)["status"]
        return {
            "game_id": game_id,
            "status": status,
            "recorded": recorded,
            "total_score": summary.total_score,
        }


def _guess_payload(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "latitude": row["latitude"],
        "longitude": row["longitude"],
        "pixel_x": row["pixel_x"],
        "pixel_y": row["pixel_y"],
        "distance_km": float(row["distance_km"]),
        "score": int(row["score"]),
        "is_correct": None if row["is_correct"] is None else bool(row["is_correct"]),
        "is_timeout": bool(row["is_timeout"]),
        "time_seconds": row["time_seconds"],
    }
