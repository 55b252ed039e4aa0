from concurrent.futures import ThreadPoolExecutor
import json
from pathlib import Path
import threading

import pytest
from shapely.geometry import shape
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from geoquiz import round_store
from geoquiz.answer_sources import resolve_answer
from geoquiz.config import settings
from geoquiz.db import get_db, init_db, reset_database_engine, seed_sample_locations_if_empty
from geoquiz.errors import Conflict, Expired, Forbidden, Invalid, NotFound
from geoquiz.geo import haversine_km
from geoquiz.leaderboard import Leaderboard
from geoquiz.round_service import GuessPoint, RoundService
from geoquiz.security import AuthContext

START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    test_url = f"sqlite:///{tmp_path / 'geoquiz-rounds-test.db'}"

    object.__setattr__(settings, "database_url", test_url)
    reset_database_engine(test_url)
    init_db()
    seed_sample_locations_if_empty()

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        reset_database_engine(original_db_url)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def service(clock: FakeClock) -> RoundService:
    return RoundService(leaderboard=Leaderboard(), clock=clock)


def _player(service: RoundService, nickname: str) -> AuthContext:
    created = service.create_player(nickname)
    return AuthContext(player_id=created["player_id"], nickname=created["nickname"], is_admin=False)


def _answer(round_id: str):
    with get_db() as session:
        row = session.execute(
            text("SELECT location_source, location_id FROM game_rounds WHERE id = :id"),
            {"id": round_id},
        ).mappings().first()
        return resolve_answer(session, row["location_source"], row["location_id"])


def _started_at(game_id: str):
    with get_db() as session:
        return session.execute(
            text("SELECT location_started_at FROM games WHERE id = :id"),
            {"id": game_id},
        ).scalar_one()


def _guess_rows(round_id: str):
    with get_db() as session:
        return session.execute(
            text("SELECT * FROM guesses WHERE round_id = :id"),
            {"id": round_id},
        ).mappings().all()


def _swiss_game(service: RoundService, auth: AuthContext, **kwargs) -> dict:
    options = {"mode": "ranked", "locations_per_round": 2, "scoring_version": 2}
    options.update(kwargs)
    return service.create_game(auth, "country:switzerland", **options)


def _clocked(service: RoundService, auth: AuthContext, game_id: str, index: int = 1) -> dict:
    started = service.start_location(auth, game_id, index)
    service.notify_ready(auth, game_id, index)
    return started


def test_start_withholds_coordinates_and_ready_returns_deadline(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)

    started = service.start_location(alice, game["game_id"], 1)
    assert "lat" not in started["location"]
    assert "lng" not in started["location"]
    assert started["location_started_at"] is None
    assert started["time_limit_seconds"] == 30

    ready = service.notify_ready(alice, game["game_id"], 1)
    assert ready["location_started_at"] == START_MS
    assert ready["deadline"] == START_MS + 30_000
    assert ready["remaining_seconds"] == 30.0
    assert ready["round_id"] == started["round_id"]


def test_repeated_ready_keeps_first_start_time(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    service.start_location(alice, game["game_id"], 1)

    first = service.notify_ready(alice, game["game_id"], 1)
    clock.advance(200)
    second = service.notify_ready(alice, game["game_id"], 1)

    assert first["location_started_at"] == second["location_started_at"] == START_MS
    assert second["remaining_seconds"] == pytest.approx(29.8)


def test_second_start_for_same_location_does_not_reset_clock(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    _clocked(service, alice, game["game_id"])

    clock.advance(5_000)
    again = service.start_location(alice, game["game_id"], 1)

    assert again["location_started_at"] == START_MS
    assert _started_at(game["game_id"]) == START_MS


def test_ready_without_reservation_is_conflict(service):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)

    with pytest.raises(Conflict):
        service.notify_ready(alice, game["game_id"], 1)


def test_guess_before_clock_start_is_conflict(service):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    started = service.start_location(alice, game["game_id"], 1)

    with pytest.raises(Conflict):
        service.submit_guess(alice, started["round_id"], GuessPoint(lat=46.9, lng=7.4))
    assert _guess_rows(started["round_id"]) == []


def test_exact_guess_scores_with_time_bonus_and_clears_slot(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    started = _clocked(service, alice, game["game_id"])
    answer = _answer(started["round_id"])

    clock.advance(5_000)
    result = service.submit_guess(
        alice,
        started["round_id"],
        GuessPoint(lat=answer.latitude, lng=answer.longitude),
        client_elapsed_seconds=4.2,
    )

    assert result["distance_km"] == 0.0
    assert result["score"] == round(100 * (1 + 3 / 5.1))
    assert result["time_seconds"] == 5.0
    assert result["target"]["lat"] == answer.latitude
    assert result["is_correct"] is None
    assert result["game_complete"] is False
    assert _started_at(game["game_id"]) is None

    stored = _guess_rows(started["round_id"])[0]
    assert stored["client_time_seconds"] == 4.2
    assert stored["scoring_version"] == 2


def test_duplicate_guess_is_conflict_and_keeps_first_result(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    started = _clocked(service, alice, game["game_id"])
    answer = _answer(started["round_id"])

    clock.advance(3_000)
    first = service.submit_guess(alice, started["round_id"], GuessPoint(lat=answer.latitude, lng=answer.longitude))

    with pytest.raises(Conflict):
        service.submit_guess(alice, started["round_id"], GuessPoint(lat=45.0, lng=6.0))
    with pytest.raises(Conflict):
        service.handle_timeout(alice, started["round_id"])

    rows = _guess_rows(started["round_id"])
    assert len(rows) == 1
    assert rows[0]["score"] == first["score"]
    assert rows[0]["distance_km"] == 0.0


def test_late_guess_is_expired_and_persists_nothing(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    started = _clocked(service, alice, game["game_id"])

    clock.advance(30_000 + 2_000 + 1)
    with pytest.raises(Expired) as exc:
        service.submit_guess(alice, started["round_id"], GuessPoint(lat=46.9, lng=7.4))

    assert exc.value.status_code == 410
    assert _guess_rows(started["round_id"]) == []
    assert _started_at(game["game_id"]) == START_MS


def test_guess_inside_grace_window_is_accepted_with_clamped_time(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    started = _clocked(service, alice, game["game_id"])

    clock.advance(31_500)
    result = service.submit_guess(alice, started["round_id"], GuessPoint(lat=46.9, lng=7.4))

    assert result["time_seconds"] == 30.0
    assert result["score"] > 0


def test_timeout_records_penalty_distance_and_zero_score(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    started = _clocked(service, alice, game["game_id"])

    clock.advance(100_000)
    result = service.handle_timeout(alice, started["round_id"])

    assert result["is_timeout"] is True
    assert result["score"] == 0
    assert result["distance_km"] == 400.0
    stored = _guess_rows(started["round_id"])[0]
    assert stored["latitude"] is None
    assert bool(stored["is_timeout"]) is True


def test_outsider_cannot_start_or_guess(service):
    alice = _player(service, "Alice")
    mallory = _player(service, "Mallory")
    game = _swiss_game(service, alice)
    started = _clocked(service, alice, game["game_id"])

    with pytest.raises(Forbidden):
        service.start_location(mallory, game["game_id"], 1)
    with pytest.raises(Forbidden):
        service.submit_guess(mallory, started["round_id"], GuessPoint(lat=46.9, lng=7.4))


def test_unreleased_round_and_unknown_location(service):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice, total_rounds=2)

    with pytest.raises(Forbidden):
        service.start_location(alice, game["game_id"], 1, round_number=2)
    with pytest.raises(NotFound):
        service.start_location(alice, game["game_id"], 9)
    with pytest.raises(NotFound):
        service.submit_guess(alice, "missing-round", GuessPoint(lat=1.0, lng=1.0))

    released = service.release_round(alice, game["game_id"])
    assert released["current_round"] == 2
    assert len(released["locations"]) == 4

    with pytest.raises(Conflict):
        service.release_round(alice, game["game_id"])


def test_locations_must_be_played_in_order(service):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)

    with pytest.raises(Forbidden):
        service.start_location(alice, game["game_id"], 2)


def test_start_while_another_location_is_running_is_conflict(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    _clocked(service, alice, game["game_id"], 1)

    clock.advance(1_000)
    with pytest.raises(Conflict):
        service.start_location(alice, game["game_id"], 2)


def test_stale_clock_is_closed_as_timeout_when_next_location_starts(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    first = _clocked(service, alice, game["game_id"], 1)

    clock.advance(60_000)
    second = service.start_location(alice, game["game_id"], 2)

    assert second["location_index"] == 2
    rows = _guess_rows(first["round_id"])
    assert len(rows) == 1
    assert bool(rows[0]["is_timeout"]) is True
    assert rows[0]["score"] == 0


def test_active_poll_reports_remaining_time_then_closes_expired_slot(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    started = _clocked(service, alice, game["game_id"])

    clock.advance(10_000)
    status = service.active_location(alice, game["game_id"])
    assert status["active"] is True
    assert status["remaining_seconds"] == 20.0
    assert status["expired_closed"] is False

    clock.advance(30_000)
    status = service.active_location(alice, game["game_id"])
    assert status["expired_closed"] is True
    assert status["guessed"] is True
    assert status["location_started_at"] is None

    rows = _guess_rows(started["round_id"])
    assert rows[0]["distance_km"] == 400.0


def test_region_quiz_click_inside_polygon_gets_full_credit(service, clock):
    alice = _player(service, "Alice")
    game = service.create_game(alice, "world:country-flags", mode="ranked", locations_per_round=1)
    assert game["scoring_version"] == 3

    started = _clocked(service, alice, game["game_id"])
    answer = _answer(started["round_id"])
    inside = shape(json.loads(answer.geojson)).representative_point()

    clock.advance(5_000)
    result = service.submit_guess(alice, started["round_id"], GuessPoint(lat=inside.y, lng=inside.x))

    assert result["distance_km"] == 0.0
    assert result["is_correct"] is True
    assert result["score"] == round(100 * (1 + 3 / 5.1))
    assert result["game_complete"] is True


def test_region_quiz_miss_measures_to_labeled_center(service, clock):
    alice = _player(service, "Alice")
    game = service.create_game(alice, "world:place-names", mode="ranked", locations_per_round=1)
    started = _clocked(service, alice, game["game_id"])
    answer = _answer(started["round_id"])

    clock.advance(2_000)
    result = service.submit_guess(alice, started["round_id"], GuessPoint(lat=-80.0, lng=0.0))

    assert result["is_correct"] is False
    assert result["distance_km"] == pytest.approx(haversine_km(-80.0, 0.0, answer.latitude, answer.longitude))


def test_image_quiz_uses_pixel_distance(service, clock):
    alice = _player(service, "Alice")
    game = service.create_game(alice, "image:garden", mode="solo", locations_per_round=1, scoring_version=1)
    started = _clocked(service, alice, game["game_id"])
    answer = _answer(started["round_id"])

    with pytest.raises(Invalid):
        service.submit_guess(alice, started["round_id"], GuessPoint(lat=1.0, lng=1.0))

    result = service.submit_guess(alice, started["round_id"], GuessPoint(x=answer.x + 276, y=answer.y + 368))
    assert result["distance_km"] == pytest.approx(0.05)
    assert result["score"] == 37
    assert result["target"] == {**answer.prompt(), "x": answer.x, "y": answer.y}


def test_out_of_range_coordinates_are_invalid_and_not_stored(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    started = _clocked(service, alice, game["game_id"])

    with pytest.raises(Invalid):
        service.submit_guess(alice, started["round_id"], GuessPoint(lat=95.0, lng=7.0))
    assert _guess_rows(started["round_id"]) == []
    assert _started_at(game["game_id"]) == START_MS


def test_guest_gets_full_location_without_clock(service):
    game = service.create_game(None, "country:switzerland", mode="solo", locations_per_round=1)
    assert game["owner_id"] is None

    started = service.start_location(None, game["game_id"], 1)
    answer = _answer(started["round_id"])
    assert started["location"]["lat"] == answer.latitude
    assert started["location"]["lng"] == answer.longitude
    assert started["location_started_at"] is None
    assert _started_at(game["game_id"]) is None


def test_guest_cannot_touch_owned_games_or_create_ranked(service):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)

    with pytest.raises(Forbidden):
        service.start_location(None, game["game_id"], 1)
    with pytest.raises(Forbidden):
        service.create_game(None, "country:switzerland", mode="ranked")


def test_group_game_join(service):
    alice = _player(service, "Alice")
    bob = _player(service, "Bob")
    game = service.create_game(alice, "country:switzerland", mode="group", locations_per_round=1)

    joined = service.join_game(bob, game["game_id"])
    assert {p["nickname"] for p in joined["participants"]} == {"Alice", "Bob"}

    solo = _swiss_game(service, alice, mode="solo")
    with pytest.raises(Forbidden):
        service.join_game(bob, solo["game_id"])


def test_finishing_all_locations_completes_game_and_ranks_once(service, clock):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)

    for index in (1, 2):
        started = _clocked(service, alice, game["game_id"], index)
        answer = _answer(started["round_id"])
        clock.advance(4_000)
        result = service.submit_guess(alice, started["round_id"], GuessPoint(lat=answer.latitude, lng=answer.longitude))

    assert result["game_complete"] is True
    assert result["leaderboard_recorded"] is True

    state = service.game_state(alice, game["game_id"])
    assert state["status"] == "completed"
    assert all(item["guessed"] for item in state["locations"])
    assert all("lat" in item["location"] for item in state["locations"])

    again = service.complete_game(alice, game["game_id"])
    assert again["recorded"] is False
    assert again["total_score"] == state["total_score"]

    rankings = service.leaderboard.get_rankings("country:switzerland", "alltime")
    assert len(rankings) == 1
    assert rankings[0]["rank"] == 1
    assert rankings[0]["total_games"] == 1
    assert rankings[0]["best_score"] == state["total_score"]

    with pytest.raises(Conflict):
        service.start_location(alice, game["game_id"], 1)


def test_complete_before_all_locations_played_is_conflict(service):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)

    with pytest.raises(Conflict):
        service.complete_game(alice, game["game_id"])


def test_leaderboard_failure_keeps_guess_and_can_be_retried(service, clock, monkeypatch):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice, locations_per_round=1)
    started = _clocked(service, alice, game["game_id"])

    def broken(_summary):
        raise OperationalError("INSERT INTO game_results", {}, Exception("disk I/O error"))

    monkeypatch.setattr(service.leaderboard, "record_completion", broken)
    clock.advance(2_000)
    result = service.submit_guess(alice, started["round_id"], GuessPoint(lat=46.9, lng=7.4))

    assert result["game_complete"] is True
    assert result["leaderboard_recorded"] is False
    assert len(_guess_rows(started["round_id"])) == 1

    monkeypatch.undo()
    completed = service.complete_game(alice, game["game_id"])
    assert completed["recorded"] is True
    assert completed["status"] == "completed"


def test_unexpected_leaderboard_error_propagates_after_guess_is_stored(service, clock, monkeypatch):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice, locations_per_round=1)
    started = _clocked(service, alice, game["game_id"])

    def broken(_summary):
        raise KeyError("total_score")

    monkeypatch.setattr(service.leaderboard, "record_completion", broken)
    clock.advance(2_000)
    with pytest.raises(KeyError):
        service.submit_guess(alice, started["round_id"], GuessPoint(lat=46.9, lng=7.4))

    assert len(_guess_rows(started["round_id"])) == 1


def _group_game(service: RoundService, owner: AuthContext, *others: AuthContext) -> str:
    game = service.create_game(owner, "country:switzerland", mode="group", locations_per_round=2)
    for player in others:
        service.join_game(player, game["game_id"])
    return game["game_id"]


def test_expired_slot_is_charged_to_the_player_who_started_it(service, clock):
    alice = _player(service, "Alice")
    bob = _player(service, "Bob")
    game_id = _group_game(service, alice, bob)

    first = _clocked(service, alice, game_id, 1)
    clock.advance(2_000)
    service.submit_guess(alice, first["round_id"], GuessPoint(lat=46.9, lng=7.4))
    second = _clocked(service, alice, game_id, 2)

    clock.advance(60_000)
    started = service.start_location(bob, game_id, 1)
    assert started["location_index"] == 1

    rows = _guess_rows(second["round_id"])
    assert [row["player_id"] for row in rows] == [alice.player_id]
    assert bool(rows[0]["is_timeout"]) is True
    assert _guess_rows(first["round_id"])[0]["player_id"] == alice.player_id
    assert len(_guess_rows(first["round_id"])) == 1


def test_poll_by_another_participant_does_not_record_a_guess_for_them(service, clock):
    alice = _player(service, "Alice")
    bob = _player(service, "Bob")
    game_id = _group_game(service, alice, bob)
    first = _clocked(service, alice, game_id, 1)

    clock.advance(60_000)
    status = service.active_location(bob, game_id)

    assert status["expired_closed"] is True
    assert status["guessed"] is False
    rows = _guess_rows(first["round_id"])
    assert [row["player_id"] for row in rows] == [alice.player_id]


def test_guess_on_a_clock_started_by_someone_else_is_conflict(service, clock):
    alice = _player(service, "Alice")
    bob = _player(service, "Bob")
    game_id = _group_game(service, alice, bob)
    first = _clocked(service, alice, game_id, 1)

    clock.advance(1_000)
    with pytest.raises(Conflict):
        service.submit_guess(bob, first["round_id"], GuessPoint(lat=46.9, lng=7.4))
    assert _guess_rows(first["round_id"]) == []
    assert _started_at(game_id) == START_MS


class TickingClock:
    """Thread-safe clock that moves forward one millisecond per read."""

    def __init__(self, now: int = START_MS) -> None:
        self._lock = threading.Lock()
        self.now = now

    def __call__(self) -> int:
        with self._lock:
            self.now += 1
            return self.now


def test_concurrent_ready_calls_stamp_one_start_time():
    service = RoundService(leaderboard=Leaderboard(), clock=TickingClock())
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    service.start_location(alice, game["game_id"], 1)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: service.notify_ready(alice, game["game_id"], 1), range(8)))

    started = {result["location_started_at"] for result in results}
    assert len(started) == 1
    assert started == {_started_at(game["game_id"])}


def test_concurrent_duplicate_guesses_store_exactly_one():
    service = RoundService(leaderboard=Leaderboard(), clock=TickingClock())
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    started = _clocked(service, alice, game["game_id"])

    def attempt(_):
        try:
            return service.submit_guess(alice, started["round_id"], GuessPoint(lat=46.9, lng=7.4))
        except Conflict:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(8)))

    assert sum(outcome is not None for outcome in outcomes) == 1
    assert outcomes.count(None) == 7
    assert len(_guess_rows(started["round_id"])) == 1


def test_ready_reads_the_clock_while_holding_the_game_lock(service):
    alice = _player(service, "Alice")
    game = _swiss_game(service, alice)
    service.start_location(alice, game["game_id"], 1)
    held = []

    def clock():
        held.append(round_store.lock_for(game["game_id"]).locked())
        return START_MS

    service.clock = clock
    service.notify_ready(alice, game["game_id"], 1)

    assert held == [True]


def test_game_locks_come_from_a_fixed_pool(service):
    alice = _player(service, "Alice")
    game_ids = [_swiss_game(service, alice)["game_id"] for _ in range(20)]

    assert round_store.lock_for(game_ids[0]) is round_store.lock_for(game_ids[0])
    for game_id in game_ids:
        service.start_location(alice, game_id, 1)
    assert len(round_store._game_locks) == round_store.LOCK_STRIPES
