from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, Mapping, Optional
import uuid

from sqlalchemy import text
from sqlalchemy.orm import Session

from .db import SqlHelpers, get_db, with_retry
from .errors import Invalid, NotFound
from .metrics import RANK_RECALCULATIONS_TOTAL

logger = logging.getLogger("geoquiz.leaderboard")

PERIODS = ("daily", "weekly", "monthly", "alltime")
OVERALL = "overall"
SORT_OPTIONS = ("best", "total")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def period_key(period: str, now: datetime) -> str:
    """Bucket key for ``period`` at ``now``, always evaluated in UTC."""
    moment = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    if period == "daily":
        return moment.strftime("%Y-%m-%d")
    if period == "weekly":
        iso_year, iso_week, _ = moment.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if period == "monthly":
        return moment.strftime("%Y-%m")
    if period == "alltime":
        return "alltime"
    raise Invalid(f"Unknown period: {period!r}")


def period_start(period: str, now: datetime) -> Optional[datetime]:
    moment = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        return midnight
    if period == "weekly":
        return midnight - timedelta(days=midnight.weekday())
    if period == "monthly":
        return midnight.replace(day=1)
    if period == "alltime":
        return None
    raise Invalid(f"Unknown period: {period!r}")


@dataclass(frozen=True)
class GameSummary:
    game_id: str
    player_id: str
    game_type: str
    total_score: int
    average_score: float
    total_distance: float


class Leaderboard(SqlHelpers):
    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self.clock = clock

    # ---------- Write side ----------
    def record_completion(self, summary: GameSummary) -> bool:
        """Fold one finished game into every bucket it touches.

        The result row, the ranking upserts and the rank recomputation commit
        together and are retried as one unit. Returns False when the game was
        already recorded for this player.
        """
        return with_retry(lambda: self._record_completion_once(summary), "leaderboard_update")

    def _record_completion_once(self, summary: GameSummary) -> bool:
        now = self.clock()
        with get_db() as session:
            existing = self._one(
                session,
                "SELECT id FROM game_results WHERE game_id = :game_id AND player_id = :player_id",
                {"game_id": summary.game_id, "player_id": summary.player_id},
            )
            if existing:
                return False

            player = self._one(
                session,
                "SELECT nickname, image FROM players WHERE id = :player_id",
                {"player_id": summary.player_id},
            )
            if not player:
                raise NotFound("Player not found")

            self._insert_result(session, summary, now)

            touched: list[tuple[str, str, str]] = []
            for game_type in (summary.game_type, OVERALL):
                for period in PERIODS:
                    key = period_key(period, now)
                    self._upsert_entry(session, summary, player, game_type, period, key, now)
                    touched.append((game_type, period, key))

            for game_type, period, key in touched:
                self.recalculate_ranks(session, game_type, period, key)

        logger.info(
            "Game result recorded",
            extra={
                "event": "game_result_recorded",
                "game_id": summary.game_id,
                "player_id": summary.player_id,
                "game_type": summary.game_type,
            },
        )
        return True

    def _insert_result(self, session: Session, summary: GameSummary, now: datetime) -> None:
        session.execute(
            text(
                """
                INSERT INTO game_results (
                    id, game_id, player_id, game_type, total_score,
                    average_score, total_distance, completed_at
                ) VALUES (
                    :id, :game_id, :player_id, :game_type, :total_score,
                    :average_score, :total_distance, :completed_at
                )
                """
            ),
            {
                "id": str(uuid.uuid4()),
                "game_id": summary.game_id,
                "player_id": summary.player_id,
                "game_type": summary.game_type,
                "total_score": summary.total_score,
                "average_score": summary.average_score,
                "total_distance": summary.total_distance,
                "completed_at": now,
            },
        )

    def _upsert_entry(
        self,
        session: Session,
        summary: GameSummary,
        player: Mapping[str, Any],
        game_type: str,
        period: str,
        key: str,
        now: datetime,
    ) -> None:
        params = {
            "player_id": summary.player_id,
            "game_type": game_type,
            "period": period,
            "period_key": key,
        }
        entry = self._one(
            session,
            """
            SELECT id, total_score, total_games, best_score
            FROM rankings
            WHERE player_id = :player_id AND game_type = :game_type
              AND period = :period AND period_key = :period_key
            """,
            params,
        )

        if not entry:
            session.execute(
                text(
                    """
                    INSERT INTO rankings (
                        id, player_id, game_type, period, period_key, total_score, total_games,
                        average_score, best_score, display_name, display_image, rank, updated_at
                    ) VALUES (
                        :id, :player_id, :game_type, :period, :period_key, :score, 1,
                        :score, :score, :display_name, :display_image, NULL, :updated_at
                    )
                    """
                ),
                {
                    **params,
                    "id": str(uuid.uuid4()),
                    "score": summary.total_score,
                    "display_name": player["nickname"],
                    "display_image": player["image"],
                    "updated_at": now,
                },
            )
            return

        total_score = int(entry["total_score"]) + summary.total_score
        total_games = int(entry["total_games"]) + 1
        session.execute(
            text(
                """
                UPDATE rankings
                SET total_score = :total_score,
                    total_games = :total_games,
                    average_score = :average_score,
                    best_score = :best_score,
                    display_name = :display_name,
                    display_image = :display_image,
                    updated_at = :updated_at
                WHERE id = :id
                """
            ),
            {
                "id": entry["id"],
                "total_score": total_score,
                "total_games": total_games,
                "average_score": total_score / total_games,
                "best_score": max(int(entry["best_score"]), summary.total_score),
                "display_name": player["nickname"],
                "display_image": player["image"],
                "updated_at": now,
            },
        )

    def recalculate_ranks(self, session: Session, game_type: str, period: str, key: str) -> int:
        rows = self._all(
            session,
            """
            SELECT id
            FROM rankings
            WHERE game_type = :game_type AND period = :period AND period_key = :period_key
            ORDER BY best_score DESC, total_games ASC, updated_at ASC, id ASC
            """,
            {"game_type": game_type, "period": period, "period_key": key},
        )
        for position, row in enumerate(rows, start=1):
            session.execute(
                text("UPDATE rankings SET rank = :rank WHERE id = :id"),
                {"rank": position, "id": row["id"]},
            )
        RANK_RECALCULATIONS_TOTAL.labels(period=period).inc()
        return len(rows)

    # ---------- Read side ----------
    def _resolve_key(self, period: str, key: Optional[str]) -> str:
        if period not in PERIODS:
            raise Invalid(f"Unknown period: {period!r}")
        return key or period_key(period, self.clock())

    def get_rankings(
        self,
        game_type: str = OVERALL,
        period: str = "alltime",
        key: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "best",
    ) -> list[dict[str, Any]]:
        if sort_by not in SORT_OPTIONS:
            raise Invalid(f"Unknown sort order: {sort_by!r}")
        bucket_key = self._resolve_key(period, key)

        if sort_by == "best":
            order = "CASE WHEN rank IS NULL THEN 1 ELSE 0 END, rank ASC, id ASC"
        else:
            order = "total_score DESC, best_score DESC, total_games ASC, updated_at ASC, id ASC"

        with get_db() as session:
            rows = self._all(
                session,
                f"""
                SELECT player_id, display_name, display_image, total_score, total_games,
                       average_score, best_score, rank
                FROM rankings
                WHERE game_type = :game_type AND period = :period AND period_key = :period_key
                ORDER BY {order}
                LIMIT :limit OFFSET :offset
                """,
                {
                    "game_type": game_type,
                    "period": period,
                    "period_key": bucket_key,
                    "limit": limit,
                    "offset": offset,
                },
            )

        items = []
        for position, row in enumerate(rows, start=offset + 1):
            item = _ranking_item(row)
            # Total ordering is display-only; stored ranks stay best-score based.
            if sort_by == "total":
                item["rank"] = position
            items.append(item)
        return items

    def get_user_rank(
        self,
        player_id: str,
        game_type: str = OVERALL,
        period: str = "alltime",
        key: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        bucket_key = self._resolve_key(period, key)
        params = {"player_id": player_id, "game_type": game_type, "period": period, "period_key": bucket_key}
        with get_db() as session:
            row = self._one(
                session,
                """
                SELECT player_id, display_name, display_image, total_score, total_games,
                       average_score, best_score, rank
                FROM rankings
                WHERE player_id = :player_id AND game_type = :game_type
                  AND period = :period AND period_key = :period_key
                """,
                params,
            )
            if not row:
                return None
            total_players = self._scalar(
                session,
                """
                SELECT COUNT(*) FROM rankings
                WHERE game_type = :game_type AND period = :period AND period_key = :period_key
                """,
                params,
            )

        return {**_ranking_item(row), "period_key": bucket_key, "total_players": int(total_players)}

    def get_user_stats(self, player_id: str) -> dict[str, Any]:
        with get_db() as session:
            player = self._one(
                session,
                "SELECT id, nickname, image FROM players WHERE id = :player_id",
                {"player_id": player_id},
            )
            if not player:
                raise NotFound("Player not found")

            rows = self._all(
                session,
                """
                SELECT game_type, total_score, total_games, average_score, best_score, rank
                FROM rankings
                WHERE player_id = :player_id AND period = 'alltime'
                ORDER BY game_type ASC
                """,
                {"player_id": player_id},
            )

        overall = next((row for row in rows if row["game_type"] == OVERALL), None)
        by_game_type = [
            {
                "game_type": row["game_type"],
                "total_score": int(row["total_score"]),
                "total_games": int(row["total_games"]),
                "average_score": float(row["average_score"]),
                "best_score": int(row["best_score"]),
                "rank": row["rank"],
            }
            for row in rows
            if row["game_type"] != OVERALL
        ]
        ranks = [item["rank"] for item in by_game_type if item["rank"] is not None]

        return {
            "player_id": player["id"],
            "nickname": player["nickname"],
            "total_games": int(overall["total_games"]) if overall else 0,
            "total_score": int(overall["total_score"]) if overall else 0,
            "average_score": float(overall["average_score"]) if overall else 0.0,
            "best_score": int(overall["best_score"]) if overall else 0,
            "overall_rank": overall["rank"] if overall else None,
            "best_rank": min(ranks) if ranks else None,
            "game_types": by_game_type,
        }

    def get_top_games(
        self,
        game_type: str = OVERALL,
        period: str = "alltime",
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        if period not in PERIODS:
            raise Invalid(f"Unknown period: {period!r}")
        clauses = ["1 = 1"]
        params: dict[str, Any] = {"limit": limit}
        if game_type != OVERALL:
            clauses.append("gr.game_type = :game_type")
            params["game_type"] = game_type
        start = period_start(period, self.clock())
        if start is not None:
            clauses.append("gr.completed_at >= :start")
            params["start"] = start

        with get_db() as session:
            rows = self._all(
                session,
                f"""
                SELECT gr.game_id, gr.player_id, p.nickname, gr.game_type, gr.total_score,
                       gr.average_score, gr.total_distance, gr.completed_at
                FROM game_results gr
                JOIN players p ON p.id = gr.player_id
                WHERE {" AND ".join(clauses)}
                ORDER BY gr.total_score DESC, gr.completed_at ASC
                LIMIT :limit
                """,
                params,
            )

        return [
            {
                "game_id": row["game_id"],
                "player_id": row["player_id"],
                "nickname": row["nickname"],
                "game_type": row["game_type"],
                "total_score": int(row["total_score"]),
                "average_score": float(row["average_score"]),
                "total_distance": float(row["total_distance"]),
                "completed_at": str(row["completed_at"]),
            }
            for row in rows
        ]


def _ranking_item(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "rank": row["rank"],
        "player_id": row["player_id"],
        "display_name": row["display_name"],
        "display_image": row["display_image"],
        "total_score": int(row["total_score"]),
        "total_games": int(row["total_games"]),
        "average_score": float(row["average_score"]),
        "best_score": int(row["best_score"]),
    }
