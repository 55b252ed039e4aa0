from pathlib import Path

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import text

from geoquiz import main
from geoquiz.answer_sources import resolve_answer
from geoquiz.config import settings
from geoquiz.db import get_db, init_db, reset_database_engine, seed_sample_locations_if_empty
from geoquiz.main import app


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    test_db = tmp_path / "geoquiz-api-test.db"
    test_url = f"sqlite:///{test_db}"

    object.__setattr__(settings, "database_url", test_url)
    reset_database_engine(test_url)
    init_db()
    seed_sample_locations_if_empty()
    main.http_rate_limiter.reset()
    main.service.guess_limiter.reset()

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        reset_database_engine(original_db_url)


def create_player(client: TestClient, nickname: str):
    response = client.post("/api/auth/players", json={"nickname": nickname})
    assert response.status_code == 200
    data = response.json()
    return data["player_id"], {"Authorization": f"Bearer {data['access_token']}"}


def answer_for(round_id: str):
    with get_db() as session:
        row = session.execute(
            text("SELECT location_source, location_id FROM game_rounds WHERE id = :id"),
            {"id": round_id},
        ).mappings().first()
        return resolve_answer(session, row["location_source"], row["location_id"])


def test_guess_routes_require_jwt():
    client = TestClient(app)
    response = client.post("/api/guesses", json={"roundId": "abc", "timeout": True})
    assert response.status_code == 401

    bad_token = client.post(
        "/api/guesses",
        json={"roundId": "abc", "timeout": True},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert bad_token.status_code == 401


def test_full_ranked_flow_through_http():
    client = TestClient(app)
    player_id, headers = create_player(client, "Explorer")

    created = client.post(
        "/api/games",
        json={"gameType": "country:switzerland", "mode": "ranked", "locationsPerRound": 1, "scoringVersion": 2},
        headers=headers,
    )
    assert created.status_code == 200
    game = created.json()
    assert game["owner_id"] == player_id
    assert game["locations"][0]["guessed"] is False
    assert "location" not in game["locations"][0] or game["locations"][0]["location"] is None

    game_id = game["game_id"]
    started = client.post(f"/api/rounds/{game_id}/start", json={"locationIndex": 1}, headers=headers)
    assert started.status_code == 200
    start_body = started.json()
    assert "lat" not in start_body["location"]
    assert start_body["deadline"] is None

    ready = client.post(f"/api/rounds/{game_id}/ready", json={"locationIndex": 1}, headers=headers)
    assert ready.status_code == 200
    assert ready.json()["deadline"] - ready.json()["location_started_at"] == 30_000

    active = client.get(f"/api/rounds/{game_id}/active", headers=headers)
    assert active.status_code == 200
    assert active.json()["active"] is True
    assert active.json()["guessed"] is False

    answer = answer_for(start_body["round_id"])
    guess = client.post(
        "/api/guesses",
        json={
            "roundId": start_body["round_id"],
            "point": {"lat": answer.latitude, "lng": answer.longitude},
            "clientElapsedSeconds": 1.5,
        },
        headers=headers,
    )
    assert guess.status_code == 200
    body = guess.json()
    assert body["distance_km"] == 0.0
    assert body["score"] > 100
    assert body["target"]["lat"] == answer.latitude
    assert body["game_complete"] is True
    assert body["leaderboard_recorded"] is True

    duplicate = client.post(
        "/api/guesses",
        json={"roundId": start_body["round_id"], "timeout": True},
        headers=headers,
    )
    assert duplicate.status_code == 409

    complete = client.post(f"/api/games/{game_id}/complete", headers=headers)
    assert complete.status_code == 200
    assert complete.json()["recorded"] is False
    assert complete.json()["status"] == "completed"

    rankings = client.get("/api/rankings", params={"gameType": "country:switzerland", "period": "alltime"})
    assert rankings.status_code == 200
    assert rankings.json()[0]["player_id"] == player_id
    assert rankings.json()[0]["rank"] == 1

    me = client.get("/api/rankings/me", params={"period": "weekly"}, headers=headers)
    assert me.status_code == 200
    assert me.json()["total_players"] == 1

    stats = client.get(f"/api/players/{player_id}/stats")
    assert stats.status_code == 200
    assert stats.json()["total_games"] == 1

    top = client.get("/api/rankings/top-games", params={"period": "daily"})
    assert top.status_code == 200
    assert top.json()[0]["game_id"] == game_id


def test_guest_game_reveals_location_and_rejects_ready():
    client = TestClient(app)
    created = client.post("/api/games", json={"gameType": "country:switzerland", "mode": "solo", "locationsPerRound": 1})
    assert created.status_code == 200
    game_id = created.json()["game_id"]

    started = client.post(f"/api/rounds/{game_id}/start", json={"locationIndex": 1})
    assert started.status_code == 200
    assert "lat" in started.json()["location"]
    assert "lng" in started.json()["location"]

    ready = client.post(f"/api/rounds/{game_id}/ready", json={"locationIndex": 1})
    assert ready.status_code == 401

    ranked_guest = client.post("/api/games", json={"gameType": "country:switzerland", "mode": "ranked"})
    assert ranked_guest.status_code == 403


def test_outsider_gets_403_on_someone_elses_game():
    client = TestClient(app)
    _, owner_headers = create_player(client, "Owner")
    _, intruder_headers = create_player(client, "Intruder")

    game_id = client.post(
        "/api/games",
        json={"gameType": "country:switzerland", "locationsPerRound": 1},
        headers=owner_headers,
    ).json()["game_id"]

    assert client.get(f"/api/games/{game_id}", headers=intruder_headers).status_code == 403
    start = client.post(f"/api/rounds/{game_id}/start", json={"locationIndex": 1}, headers=intruder_headers)
    assert start.status_code == 403


def test_strict_validation_on_games_and_guesses():
    client = TestClient(app)
    _, headers = create_player(client, "Validator")

    bad_type = client.post("/api/games", json={"gameType": "Switzerland"}, headers=headers)
    bad_mode = client.post("/api/games", json={"gameType": "country:switzerland", "mode": "arcade"}, headers=headers)
    extra_field = client.post(
        "/api/games",
        json={"gameType": "country:switzerland", "cheat": True},
        headers=headers,
    )
    unknown_kind = client.post("/api/games", json={"gameType": "moon:craters"}, headers=headers)

    both = client.post(
        "/api/guesses",
        json={"roundId": "abc", "timeout": True, "point": {"lat": 1.0, "lng": 2.0}},
        headers=headers,
    )
    half_point = client.post("/api/guesses", json={"roundId": "abc", "point": {"lat": 1.0}}, headers=headers)
    negative_elapsed = client.post(
        "/api/guesses",
        json={"roundId": "abc", "point": {"lat": 1.0, "lng": 2.0}, "clientElapsedSeconds": -1},
        headers=headers,
    )
    bad_index = client.post("/api/rounds/whatever/start", json={"locationIndex": 0}, headers=headers)

    assert bad_type.status_code == 422
    assert bad_mode.status_code == 422
    assert extra_field.status_code == 422
    assert unknown_kind.status_code == 422
    assert both.status_code == 422
    assert half_point.status_code == 422
    assert negative_elapsed.status_code == 422
    assert bad_index.status_code == 422


def test_out_of_range_guess_is_422():
    client = TestClient(app)
    _, headers = create_player(client, "Wanderer")
    game_id = client.post(
        "/api/games",
        json={"gameType": "country:switzerland", "locationsPerRound": 1},
        headers=headers,
    ).json()["game_id"]
    round_id = client.post(f"/api/rounds/{game_id}/start", json={"locationIndex": 1}, headers=headers).json()["round_id"]
    client.post(f"/api/rounds/{game_id}/ready", json={"locationIndex": 1}, headers=headers)

    response = client.post(
        "/api/guesses",
        json={"roundId": round_id, "point": {"lat": 91.0, "lng": 7.0}},
        headers=headers,
    )
    assert response.status_code == 422


def test_rankings_query_validation():
    client = TestClient(app)
    assert client.get("/api/rankings", params={"period": "hourly"}).status_code == 422
    assert client.get("/api/rankings", params={"sortBy": "fastest"}).status_code == 422
    assert client.get("/api/rankings", params={"limit": 0}).status_code == 422
    assert client.get("/api/rankings").json() == []
    assert client.get("/api/players/nobody/stats").status_code == 404


def test_health_and_metrics():
    client = TestClient(app)
    health = client.get("/api/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    metrics = client.get("/api/metrics")
    assert metrics.status_code == 200
    assert "requests_total" in metrics.text


def test_http_rate_limit_returns_429():
    original_limit = settings.rate_limit_requests_per_min
    object.__setattr__(settings, "rate_limit_requests_per_min", 2)
    try:
        client = TestClient(app)
        assert client.get("/api/").status_code == 200
        assert client.get("/api/").status_code == 200
        limited = client.get("/api/")
        assert limited.status_code == 429
        assert int(limited.headers["Retry-After"]) >= 1
    finally:
        object.__setattr__(settings, "rate_limit_requests_per_min", original_limit)
        main.http_rate_limiter.reset()
