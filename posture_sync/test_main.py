"""
Tests for the reference summary server (FastAPI + SQLite)
"""
import pytest
from fastapi.testclient import TestClient

from posture_sync import database
from posture_sync.auth import create_jwt_token, static_token_provider
from posture_sync.main import app


@pytest.fixture
def client(tmp_path):
    database.configure(f"sqlite:///{tmp_path / 'server.db'}")
    with TestClient(app) as test_client:
        yield test_client
    database.engine.dispose()


def auth_headers(user_id="user-1"):
    return {"Authorization": f"Bearer {create_jwt_token(user_id)}"}


def body(**overrides):
    data = {"dateISO": "2024-03-05", "sumWeighted": 8.5, "weightSeconds": 35.0, "count": 3, "badSeconds": 5.0}
    data.update(overrides)
    return data


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_missing_or_bad_token_is_401(client):
    assert client.put("/summaries", json=body()).status_code == 401
    bad = {"Authorization": "Bearer not-a-jwt"}
    assert client.put("/summaries", json=body(), headers=bad).status_code == 401


def test_upsert_then_read_back(client):
    response = client.put("/summaries", json=body(), headers=auth_headers())
    assert response.status_code == 200
    stored = response.json()
    assert stored["dateISO"] == "2024-03-05"
    assert stored["count"] == 3
    assert stored["averageDeviation"] == pytest.approx(8.5 / 35.0)

    fetched = client.get("/summaries/2024-03-05", headers=auth_headers()).json()
    assert fetched["sumWeighted"] == 8.5


def test_same_upsert_twice_leaves_one_unchanged_row(client):
    first = client.put("/summaries", json=body(), headers=auth_headers()).json()
    second = client.put("/summaries", json=body(), headers=auth_headers()).json()

    first.pop("updatedAt")
    second.pop("updatedAt")
    assert first == second
    assert len(client.get("/summaries", headers=auth_headers()).json()) == 1


def test_later_upsert_replaces_values(client):
    client.put("/summaries", json=body(), headers=auth_headers())
    client.put("/summaries", json=body(count=4, sumWeighted=9.0, weightSeconds=36.0), headers=auth_headers())

    stored = client.get("/summaries/2024-03-05", headers=auth_headers()).json()
    assert stored["count"] == 4
    assert stored["weightSeconds"] == 36.0


def test_invalid_date_rejected_before_persistence(client):
    response = client.put("/summaries", json=body(dateISO="2024-13-40"), headers=auth_headers())
    assert response.status_code == 422
    assert client.get("/summaries/2024-13-40", headers=auth_headers()).status_code == 404
    assert client.get("/summaries", headers=auth_headers()).json() == []


def test_valid_date_accepted(client):
    response = client.put("/summaries", json=body(dateISO="2024-03-05"), headers=auth_headers())
    assert response.status_code == 200


def test_summaries_are_scoped_to_principal(client):
    client.put("/summaries", json=body(), headers=auth_headers("user-1"))
    assert client.get("/summaries/2024-03-05", headers=auth_headers("user-2")).status_code == 404


def test_token_provider_resolves_principal():
    token = create_jwt_token("user-9")
    principal = static_token_provider(token)()
    assert principal.user_id == "user-9"
    assert principal.token == token

    assert static_token_provider(None)() is None
    assert static_token_provider(create_jwt_token("user-9", expires_in_hours=-1))() is None
