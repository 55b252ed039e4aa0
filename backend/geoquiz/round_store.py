"""Atomic operations on a game's active location slot.

The slot lives on the ``games`` row as ``(active_round_number, active_location_index,
location_started_at, clocked_by)``. Every mutation runs under :func:`game_lock` and re-reads the
row with ``SELECT ... FOR UPDATE`` so concurrent requests for the same game are
serialized on SQLite and Postgres alike.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
import threading
from typing import Any, Iterator, Mapping, Optional

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from .errors import NotFound
from .models import Game

logger = logging.getLogger("geoquiz.round_store")

_games_table = Game.__table__

LOCK_STRIPES = 256

# Games hash onto a fixed set of stripes; two games may share one.
_game_locks: tuple[threading.Lock, ...] = tuple(threading.Lock() for _ in range(LOCK_STRIPES))


def lock_for(game_id: str) -> threading.Lock:
    return _game_locks[hash(game_id) % LOCK_STRIPES]


@contextmanager
def game_lock(game_id: str) -> Iterator[None]:
    with lock_for(game_id):
        yield


@dataclass(frozen=True)
class ActiveSlot:
    round_number: Optional[int]
    location_index: Optional[int]
    started_at: Optional[int]
    clocked_by: Optional[str] = None

    @property
    def is_reserved(self) -> bool:
        return self.location_index is not None

    @property
    def is_clocked(self) -> bool:
        return self.started_at is not None

    def matches(self, round_number: int, location_index: int) -> bool:
        return self.round_number == round_number and self.location_index == location_index


def slot_of(game: Mapping[str, Any]) -> ActiveSlot:
    started_at = game["location_started_at"]
    return ActiveSlot(
        round_number=game["active_round_number"],
        location_index=game["active_location_index"],
        started_at=int(started_at) if started_at is not None else None,
        clocked_by=game["clocked_by"],
    )


def fetch_game(session: Session, game_id: str, for_update: bool = False) -> Mapping[str, Any]:
    query = select(_games_table).where(_games_table.c.id == game_id)
    if for_update:
        query = query.with_for_update()
    game = session.execute(query).mappings().first()
    if not game:
        raise NotFound("Game not found")
    return game


def reserve_location(session: Session, game_id: str, round_number: int, location_index: int) -> ActiveSlot:
    """Point the slot at ``(round_number, location_index)`` with no clock.

    Re-reserving the slot that is already active changes nothing, so a running
    clock survives a retried start request.
    """
    current = slot_of(fetch_game(session, game_id, for_update=True))
    if current.matches(round_number, location_index):
        return current
    if current.is_clocked:
        logger.info(
            "Replacing clocked slot",
            extra={
                "event": "slot_replaced",
                "game_id": game_id,
                "round_number": current.round_number,
                "location_index": current.location_index,
            },
        )

    session.execute(
        text(
            """
            UPDATE games
            SET active_round_number = :round_number,
                active_location_index = :location_index,
                location_started_at = NULL,
                clocked_by = NULL
            WHERE id = :game_id
            """
        ),
        {"game_id": game_id, "round_number": round_number, "location_index": location_index},
    )
    return ActiveSlot(round_number=round_number, location_index=location_index, started_at=None)


def start_clock(
    session: Session,
    game_id: str,
    round_number: int,
    location_index: int,
    now_ms: int,
    player_id: str,
) -> ActiveSlot:
    """Stamp the start time (and who started it) if the reserved slot still matches and has none yet.

    Returns the slot as it stands afterwards; callers compare it against the
    requested slot to tell a mismatch from a successful (or repeated) start.
    """
    current = slot_of(fetch_game(session, game_id, for_update=True))
    if not current.matches(round_number, location_index) or current.is_clocked:
        return current

    session.execute(
        text(
            """
            UPDATE games
            SET location_started_at = :now_ms,
                clocked_by = :player_id
            WHERE id = :game_id
              AND active_round_number = :round_number
              AND active_location_index = :location_index
              AND location_started_at IS NULL
            """
        ),
        {
            "game_id": game_id,
            "round_number": round_number,
            "location_index": location_index,
            "now_ms": now_ms,
            "player_id": player_id,
        },
    )
    return slot_of(fetch_game(session, game_id))


def clear_active(session: Session, game_id: str) -> None:
    # The slot indices stay; the next start_location moves them.
    session.execute(
        text("UPDATE games SET location_started_at = NULL, clocked_by = NULL WHERE id = :game_id"),
        {"game_id": game_id},
    )


def has_guessed(session: Session, round_id: str, player_id: str) -> bool:
    row = session.execute(
        text("SELECT 1 FROM guesses WHERE round_id = :round_id AND player_id = :player_id"),
        {"round_id": round_id, "player_id": player_id},
    ).first()
    return row is not None
