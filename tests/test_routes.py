"""Tests for the HTTP API: sessions, turns, SSE streams and image status."""

import json

import pytest
from fastapi.testclient import TestClient

from backend.app import create_app


@pytest.fixture
def client(game, storage, platforms):
    app = create_app(data_dir=storage.base_path, platforms=platforms)
    with TestClient(app) as c:
        yield c


def new_session(client, user_id="player", **body):
    resp = client.post("/api/games/castle/sessions", headers={"X-User-Id": user_id}, json=body or None)
    assert resp.status_code == 200, resp.text
    return resp.json()


def sse_events(resp):
    return [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]


# ── platforms ─────────────────────────────────────────────────


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_list_platforms(client):
    resp = client.get("/api/platforms")
    assert resp.status_code == 200
    platforms = {p["id"]: p for p in resp.json()}
    assert set(platforms) == {"openai", "mistral", "mock"}
    premium = next(m for m in platforms["openai"]["models"] if m["id"] == "premium")
    assert premium["supportsImage"] is True


# ── sessions ──────────────────────────────────────────────────


def test_create_session(client):
    session = new_session(client)
    assert session["gameId"] == "castle"
    assert session["aiPlatform"] == "mock"
    assert session["apiKeyId"] == "player-key"


def test_create_session_with_language(client):
    session = new_session(client, language="de")
    assert session["language"] == "de"


def test_create_session_requires_user(client):
    assert client.post("/api/games/castle/sessions").status_code == 422


def test_create_session_unknown_game(client):
    resp = client.post("/api/games/nope/sessions", headers={"X-User-Id": "player"})
    assert resp.status_code == 404
    assert resp.json()["errorCode"] == "not_found"


def test_create_session_without_key(client):
    resp = client.post("/api/games/castle/sessions", headers={"X-User-Id": "stranger"})
    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "no_api_key_available"


def test_get_unknown_session(client):
    resp = client.get("/api/sessions/missing")
    assert resp.status_code == 404


# ── turns ─────────────────────────────────────────────────────


def test_intro_then_stream(client):
    session = new_session(client)
    resp = client.post(f"/api/sessions/{session['id']}", json={"action": "intro"})
    assert resp.status_code == 200, resp.text
    message = resp.json()
    assert message["seq"] == 1
    assert message["type"] == "game"
    assert message["hasImage"] is True
    assert "image" not in message
    assert [f["name"] for f in message["statusFields"]] == ["Health", "Gold"]

    stream = client.get(f"/api/messages/{message['id']}/stream")
    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    events = sse_events(stream)
    assert any(e.get("textDone") for e in events)
    assert any(e.get("imageDone") and e.get("imageData") for e in events)
    assert any(e.get("audioDone") for e in events)
    assert "".join(e.get("text", "") for e in events)

    # consumed streams are gone
    assert client.get(f"/api/messages/{message['id']}/stream").status_code == 404


def test_player_action_and_session_messages(client):
    session = new_session(client)
    intro = client.post(f"/api/sessions/{session['id']}", json={"action": "intro"}).json()
    client.get(f"/api/messages/{intro['id']}/stream")
    resp = client.post(f"/api/sessions/{session['id']}", json={"action": "player-action", "message": "look around"})
    assert resp.status_code == 200, resp.text
    assert resp.json()["seq"] == 3

    everything = client.get(f"/api/sessions/{session['id']}", params={"messages": "all"}).json()
    assert [m["type"] for m in everything["messages"]] == ["game", "player", "game"]
    latest = client.get(f"/api/sessions/{session['id']}", params={"messages": "latest"}).json()
    assert [m["seq"] for m in latest["messages"]] == [3]
    bare = client.get(f"/api/sessions/{session['id']}").json()
    assert "messages" not in bare


def test_player_action_requires_message(client):
    session = new_session(client)
    resp = client.post(f"/api/sessions/{session['id']}", json={"action": "player-action", "message": "  "})
    assert resp.status_code == 400


def test_unknown_action_rejected(client):
    session = new_session(client)
    resp = client.post(f"/api/sessions/{session['id']}", json={"action": "dance"})
    assert resp.status_code == 422


def test_second_intro_conflicts(client):
    session = new_session(client)
    client.post(f"/api/sessions/{session['id']}", json={"action": "intro"})
    resp = client.post(f"/api/sessions/{session['id']}", json={"action": "intro"})
    assert resp.status_code == 409


# ── message status / image ────────────────────────────────────


def test_unknown_stream(client):
    assert client.get("/api/messages/missing/stream").status_code == 404


def test_status_of_unknown_message(client):
    resp = client.get("/api/messages/missing/status")
    assert resp.json() == {"exists": False, "hash": "", "complete": False, "error": "", "errorCode": ""}


def test_image_not_cached(client):
    assert client.get("/api/messages/missing/image").status_code == 404


def test_image_served_from_cache(client):
    client.app.state.image_cache.update("m1", b"\x89PNG partial")
    resp = client.get("/api/messages/m1/image")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert resp.content == b"\x89PNG partial"
    status = client.get("/api/messages/m1/status").json()
    assert status["exists"] and status["hash"]


def test_retry_image_when_image_exists(client):
    session = new_session(client)
    message = client.post(f"/api/sessions/{session['id']}", json={"action": "intro"}).json()
    client.get(f"/api/messages/{message['id']}/stream")
    resp = client.post(f"/api/sessions/{session['id']}/messages/{message['id']}/image")
    assert resp.status_code == 200
    assert resp.json()["id"] == message["id"]
