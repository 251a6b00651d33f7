import pathlib
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from league import create_app


@pytest.fixture()
def client():
    app = create_app()
    app.config.update({"TESTING": True})
    with app.test_client() as client:
        yield client


def _seed(client):
    for team_id, name in ((1, "Aces"), (2, "Baseliners")):
        r = client.post("/api/teams", json={"id": team_id, "name": name}, headers={"X-User": "Admin"})
        assert r.status_code == 201
    for pid, team_id, gender in ((1, 1, "M"), (2, 1, "F"), (3, 2, "M"), (4, 2, "F")):
        r = client.post("/api/players", json={
            "id": pid, "first_name": f"P{pid}", "last_name": "Smith",
            "gender": gender, "ntrp_rating": 3.5, "team_id": team_id,
        })
        assert r.status_code == 201


def test_app_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        create_app()


def test_team_crud_status_codes(client):
    _seed(client)
    r = client.get("/api/teams")
    assert [t["name"] for t in r.get_json()["teams"]] == ["Aces", "Baseliners"]

    assert client.post("/api/teams", json={"id": 1, "name": "Again"}).status_code == 409
    assert client.post("/api/teams", json={"id": 3}).status_code == 400
    assert client.post("/api/teams", data="not json").status_code == 400
    assert client.get("/api/teams/99").status_code == 404

    r = client.patch("/api/teams/1", json={"name": "Aces Reloaded"}, headers={"X-User": "Admin"})
    assert r.status_code == 200
    body = r.get_json()
    assert body["success"] is True
    assert body["entity"]["name"] == "Aces Reloaded"
    assert body["entity"]["updated_by"] == "Admin"

    assert client.patch("/api/teams/1", json={"color": "red"}).status_code == 400
    assert client.patch("/api/teams/77", json={"name": "Ghost"}).status_code == 404
    stale = client.patch("/api/teams/1", json={"name": "Old"}, headers={"If-Match": "1999-01-01T00:00:00+00:00"})
    assert stale.status_code == 409
    assert "updated by another user" in stale.get_json()["error"]

    assert client.delete("/api/teams/2").status_code == 200
    assert client.delete("/api/teams/2").status_code == 404
    players = client.get("/api/players?team_id=2").get_json()["players"]
    assert players == []
    assert client.get("/api/metadata/teams").get_json()["count"] == 1


def test_player_routes(client):
    _seed(client)
    r = client.patch("/api/players/3", json={"team_id": 1})
    assert r.status_code == 200
    assert r.get_json()["entity"]["team_id"] == 1
    assert len(client.get("/api/players?team_id=1").get_json()["players"]) == 3
    assert client.patch("/api/players/3", json={"ntrp_rating": 9}).status_code == 400
    assert client.get("/api/players?team_id=abc").status_code == 400
    assert client.get("/api/players/4").get_json()["player"]["gender"] == "F"
    assert client.delete("/api/players/4").status_code == 200
    assert client.get("/api/players/4").status_code == 404


def test_captain_routes_hide_password(client):
    _seed(client)
    r = client.post("/api/captains", json={
        "id": 1, "username": "ace", "password": "secret1", "name": "Ann Ace", "team_id": 1,
    })
    assert r.status_code == 201
    captain = r.get_json()["captain"]
    assert "password_hash" not in captain and "password" not in captain
    assert client.get("/api/teams/1").get_json()["team"]["captain_id"] == 1

    ok = client.post("/api/captains/login", json={"username": "ace", "password": "secret1"})
    assert ok.status_code == 200
    assert "password_hash" not in ok.get_json()["captain"]
    bad = client.post("/api/captains/login", json={"username": "ace", "password": "nope"})
    assert bad.status_code == 401

    dup = client.post("/api/captains", json={"id": 2, "username": "ace", "password": "abcd", "name": "Copy"})
    assert dup.status_code == 409
    listed = client.get("/api/captains").get_json()["captains"]
    assert all("password_hash" not in c for c in listed)


def test_challenge_match_and_leaderboard_routes(client):
    _seed(client)
    r = client.post("/api/challenges", json={
        "challenger_team_id": 1, "challenger_players": [1, 2], "proposed_date": "2025-11-10",
    }, headers={"X-User": "Cap A"})
    assert r.status_code == 201
    cid = r.get_json()["challenge"]["challenge_id"]

    r = client.post(f"/api/challenges/{cid}/accept", json={
        "challenged_team_id": 2, "challenged_players": [3, 4],
    }, headers={"X-User": "Cap B"})
    assert r.status_code == 200
    body = r.get_json()
    assert body["challenge"]["accepted_by"] == "Cap B"
    match_id = body["match"]["match_id"]

    again = client.post(f"/api/challenges/{cid}/accept", json={"challenged_team_id": 2, "challenged_players": [3, 4]})
    assert again.status_code == 409
    assert "already been accepted by Cap B" in again.get_json()["error"]

    pending = client.get("/api/matches?status=pending").get_json()["matches"]
    assert [m["match_id"] for m in pending] == [match_id]

    bad = client.post(f"/api/matches/{match_id}/complete", json={"set1_team1": 6, "set1_team2": 6})
    assert bad.status_code == 400
    r = client.post(f"/api/matches/{match_id}/complete", json={
        "set1_team1": 6, "set1_team2": 2, "set2_team1": 6, "set2_team2": 1,
    })
    assert r.status_code == 200
    assert r.get_json()["match"]["winner"] == "team1"
    assert client.get(f"/api/challenges/{cid}").get_json()["challenge"]["status"] == "completed"

    board = client.get("/api/leaderboard").get_json()["leaderboard"]
    assert board[0]["name"] == "Aces"
    assert board[0]["match_wins"] == 1
    assert board[0]["rank"] == 1

    assert client.get("/api/matches/MATCH-1999-001").status_code == 404
    assert client.get("/api/challenges/CHALL-1999-001").status_code == 404


def test_bonus_activity_and_migration_routes(client):
    _seed(client)
    r = client.post("/api/bonuses", json={"team_id": 1, "points": 2, "reason": "clinic"})
    assert r.status_code == 201
    entry_id = r.get_json()["bonus"]["id"]
    assert len(client.get("/api/bonuses?team_id=1").get_json()["bonuses"]) == 1
    assert client.delete(f"/api/bonuses/{entry_id}").status_code == 200
    assert client.delete(f"/api/bonuses/{entry_id}").status_code == 404

    logs = client.get("/api/activity?filter=teams").get_json()["logs"]
    assert logs and all(log["action"].startswith("team_") for log in logs)
    assert logs[0]["description"].startswith("Added team")
    assert client.get("/api/activity?limit=2").get_json()["logs"].__len__() == 2

    r = client.post("/api/migrate/players", json={"items": [
        {"id": 10, "first_name": "Mia", "last_name": "Lee", "ntrp_rating": 4.0},
        {"id": 11, "first_name": "", "last_name": "Blank"},
    ]})
    assert r.status_code == 200
    result = r.get_json()
    assert result["migrated"] == 1
    assert result["errors"] == 1
    assert result["verification"]["success"] is True
    assert client.post("/api/migrate/players", json={"items": "nope"}).status_code == 400
    assert client.get("/api/metadata/widgets").status_code == 400


def test_activity_filter_reaches_past_newer_entries(client):
    _seed(client)
    assert client.delete("/api/players/4", headers={"X-User": "Admin"}).status_code == 200
    for i in range(3):
        assert client.patch("/api/teams/1", json={"name": f"Aces {i}"}).status_code == 200

    logs = client.get("/api/activity?filter=deletions&limit=1").get_json()["logs"]
    assert [log["action"] for log in logs] == ["player_deleted"]
    assert logs[0]["description"] == "Deleted player: P4 Smith"
