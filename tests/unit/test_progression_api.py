"""
Tests for the progression HTTP API.
"""

import pytest
from fastapi.testclient import TestClient

from app.auth.verify import auth_dependency
from app.features.progression.services.engine import get_engine
from app.main import app

ALICE = "alice"
BOB = "bob"


@pytest.fixture
def client(engine, apply_auth_override):
    app.dependency_overrides[get_engine] = lambda: engine
    apply_auth_override(app)
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_user(user_id: str) -> None:
    app.dependency_overrides[auth_dependency] = lambda: {"sub": user_id}


def _connect(client) -> str:
    as_user(ALICE)
    response = client.post("/connections", json={"targetUserId": BOB})
    assert response.status_code == 201
    connection_id = response.json()["id"]

    as_user(BOB)
    assert client.post(f"/connections/{connection_id}/accept").status_code == 200
    return connection_id


def test_request_connection_returns_camel_case_view(client):
    response = client.post("/connections", json={"targetUserId": BOB})

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "PENDING"
    assert data["isInitiator"] is True
    assert data["otherUser"] == {"id": BOB}
    assert data["chatUnlocked"] is False
    assert data["temperature"] == "COLD"


def test_duplicate_request_conflict_body(client):
    client.post("/connections", json={"targetUserId": BOB})

    response = client.post("/connections", json={"targetUserId": BOB})

    assert response.status_code == 409
    assert response.json()["code"] == "DUPLICATE_CONNECTION"
    assert response.json()["error"]


def test_pending_count_and_seen(client):
    response = client.post("/connections", json={"targetUserId": BOB})
    connection_id = response.json()["id"]

    as_user(BOB)
    assert client.get("/connections/pending-count").json() == {
        "pending": 1,
        "later": 0,
        "unseen": 1,
        "total": 1,
    }

    client.get(f"/connections/{connection_id}")
    client.post(f"/connections/{connection_id}/later")

    assert client.get("/connections/pending-count").json() == {
        "pending": 0,
        "later": 1,
        "unseen": 0,
        "total": 1,
    }


def test_list_connections_filters_by_direction(client):
    client.post("/connections", json={"targetUserId": BOB})

    outgoing = client.get("/connections", params={"status": "outgoing"})
    incoming = client.get("/connections", params={"status": "incoming", "sortBy": "oldest"})

    assert len(outgoing.json()) == 1
    assert incoming.json() == []
    assert client.get("/connections", params={"sortBy": "sideways"}).status_code == 422


def test_full_mission_flow(client):
    connection_id = _connect(client)

    as_user(ALICE)
    round_data = client.get(f"/connections/{connection_id}/round").json()
    assert round_data["status"] == "VOTING"
    assert round_data["userVoted"] is False
    assert [o["missionId"] for o in round_data["options"]][0] == "soundtrack"
    assert round_data["options"][0]["mission"]["type"] == "CHOICE"

    voted = client.post(
        f"/connections/{connection_id}/round/vote", json={"missionOptionId": "soundtrack"}
    ).json()
    assert voted["userVoted"] is True
    assert voted["otherVoted"] is False

    as_user(BOB)
    resolved = client.post(
        f"/connections/{connection_id}/round/vote", json={"missionOptionId": "soundtrack"}
    ).json()
    assert resolved["resolvedMissionId"] == "soundtrack"
    assert resolved["status"] == "ACTIVE"

    mission = client.get(f"/connections/{connection_id}/mission").json()
    assert mission["mission"]["id"] == "soundtrack"
    assert mission["userResponded"] is False

    first = client.post(
        f"/connections/{connection_id}/mission/respond",
        json={"missionId": "soundtrack", "response": {"selected": "Rock"}},
    ).json()
    assert first["bothResponded"] is False
    assert first["reveal"] is None

    hidden = client.get(f"/connections/{connection_id}/missions/soundtrack/responses").json()
    assert hidden["revealed"] is False
    assert len(hidden["responses"]) == 1

    as_user(ALICE)
    done = client.post(
        f"/connections/{connection_id}/mission/respond",
        json={"missionId": "soundtrack", "response": {"selected": "Jazz"}},
    ).json()
    assert done["missionCompleted"] is True
    assert done["awardedPoints"] == 12
    assert done["progress"] == 12
    assert done["reveal"]["comparison"] == {"same": False}

    revealed = client.get(f"/connections/{connection_id}/missions/soundtrack/responses").json()
    assert revealed["revealed"] is True
    assert {r["userId"] for r in revealed["responses"]} == {ALICE, BOB}

    history = client.get(f"/connections/{connection_id}/history").json()
    assert [entry["missionId"] for entry in history] == ["soundtrack"]
    assert history[0]["missionTitle"]

    view = client.get(f"/connections/{connection_id}").json()
    assert view["progress"] == 12
    assert view["currentRound"]["roundNumber"] == 2
    assert view["sharedInterests"][0] == {"interest": "music", "weight": 0.667, "isMain": True}
    assert view["compatibilityScore"] == 50


def test_error_bodies(client):
    connection_id = _connect(client)

    as_user(ALICE)
    client.post(f"/connections/{connection_id}/round/vote", json={"missionOptionId": "soundtrack"})
    again = client.post(
        f"/connections/{connection_id}/round/vote", json={"missionOptionId": "dream-trip"}
    )
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_VOTED"

    as_user(BOB)
    invalid = client.post(
        f"/connections/{connection_id}/round/vote", json={"missionOptionId": "bookshelf"}
    )
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "INVALID_OPTION"

    no_mission = client.get(f"/connections/{connection_id}/mission")
    assert no_mission.status_code == 404
    assert no_mission.json()["code"] == "MISSION_NOT_ACTIVE"

    missing = client.get("/connections/does-not-exist")
    assert missing.status_code == 404
    assert missing.json() == {"error": "Connection does-not-exist not found", "code": "NOT_FOUND"}

    as_user("mallory")
    outsider = client.get(f"/connections/{connection_id}/round")
    assert outsider.status_code == 403
    assert outsider.json()["code"] == "NOT_PARTICIPANT"


def test_invalid_response_payload(client):
    connection_id = _connect(client)
    for user in (ALICE, BOB):
        as_user(user)
        client.post(
            f"/connections/{connection_id}/round/vote", json={"missionOptionId": "soundtrack"}
        )

    response = client.post(
        f"/connections/{connection_id}/mission/respond",
        json={"missionId": "soundtrack", "response": {"selected": "Polka"}},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "INVALID_RESPONSE"


def test_end_then_vote_is_gone(client):
    connection_id = _connect(client)

    ended = client.post(f"/connections/{connection_id}/end")
    assert ended.json()["status"] == "ENDED"
    assert ended.json()["currentRound"]["status"] == "SKIPPED"

    response = client.post(
        f"/connections/{connection_id}/round/vote", json={"missionOptionId": "soundtrack"}
    )
    assert response.status_code == 410
    assert response.json()["code"] == "ROUND_CLOSED"


def test_list_missions(client):
    missions = client.get("/missions").json()

    question = next(m for m in missions if m["id"] == "first-impressions")
    assert question["content"]["maxLength"] == 280
    assert all(m["points"] > 0 for m in missions)

    travel = client.get("/missions", params={"category": "travel"}).json()
    assert [m["id"] for m in travel] == ["dream-trip"]


def test_overview_and_category_missions(client):
    connection_id = _connect(client)
    for user in (ALICE, BOB):
        as_user(user)
        client.post(
            f"/connections/{connection_id}/round/vote", json={"missionOptionId": "soundtrack"}
        )
    as_user(ALICE)
    client.post(
        f"/connections/{connection_id}/mission/respond",
        json={"missionId": "soundtrack", "response": {"selected": "Jazz"}},
    )

    as_user(BOB)
    pending = client.get(f"/connections/{connection_id}/overview/music").json()
    assert pending["answered"] == 0
    [entry] = pending["missions"]
    assert entry["isCurrent"] is True
    assert entry["userResponse"] is None
    assert entry["otherResponse"] is None

    client.post(
        f"/connections/{connection_id}/mission/respond",
        json={"missionId": "soundtrack", "response": {"selected": "Rock"}},
    )

    overview = client.get(f"/connections/{connection_id}/overview").json()
    assert overview["connection"]["progress"] == 12
    assert (overview["answered"], overview["total"]) == (1, 12)
    music = next(c for c in overview["categories"] if c["category"] == "music")
    assert music == {"category": "music", "answered": 1, "total": 1, "isCompleted": True}

    done = client.get(f"/connections/{connection_id}/overview/music").json()
    assert done["missions"][0]["userResponse"] == {"selected": "Rock"}
    assert done["missions"][0]["otherResponse"] == {"selected": "Jazz"}

    missing = client.get(f"/connections/{connection_id}/overview/astrology")
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"
