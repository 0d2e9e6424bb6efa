"""Tests for JSON file storage: credential graph, sessions and messages."""

import pytest

from gamelab.models import AiSession, ApiKeyShare, Game, GameSession, GameSessionMessage, StatusField


def _session(storage, **overrides):
    return storage.create_session(GameSession(**{"game_id": "g1", "user_id": "u1", **overrides}))


# ── system settings ───────────────────────────────────────────


def test_system_settings_defaults(storage):
    assert storage.get_system_settings() == {
        "default_ai_tier": None,
        "free_use_api_key_id": None,
        "free_use_ai_tier": None,
    }


def test_system_settings_ignore_unknown_keys(storage):
    settings = storage.update_system_settings({"default_ai_tier": "premium", "colour": "red"})
    assert settings["default_ai_tier"] == "premium"
    assert "colour" not in storage.get_system_settings()


# ── credential graph ──────────────────────────────────────────


def test_upsert_replaces_by_id(storage):
    storage.save_game(Game(id="g1", name="First"))
    storage.save_game(Game(id="g1", name="Renamed"))
    assert storage.get_game("g1").name == "Renamed"
    assert storage.get_game("missing") is None


def test_get_with_none_id(storage):
    assert storage.get_share(None) is None
    assert storage.get_api_key(None) is None


def test_user_default_share(storage):
    storage.save_share(ApiKeyShare(id="s1", api_key_id="k1", user_id="u1"))
    storage.save_share(ApiKeyShare(id="s2", api_key_id="k2", user_id="u1", is_user_default=True))
    assert storage.get_user_default_share("u1").id == "s2"
    assert storage.get_user_default_share("u2") is None


def test_clear_public_sponsorship_only_for_matching_share(storage):
    storage.save_game(Game(id="g1", name="G", public_sponsored_api_key_share_id="s1"))
    assert not storage.clear_game_public_sponsorship("g1", "other")
    assert storage.clear_game_public_sponsorship("g1", "s1")
    assert storage.get_game("g1").public_sponsored_api_key_share_id is None


# ── sessions ──────────────────────────────────────────────────


def test_session_roundtrip(storage):
    s = _session(storage, status_fields=[StatusField(name="Health", value="3")])
    assert storage.get_session(s.id) == s
    assert storage.get_session("missing") is None


def test_update_missing_session_raises(storage):
    with pytest.raises(KeyError):
        storage.update_session(GameSession(game_id="g", user_id="u"))


def test_session_patches(storage):
    s = _session(storage, api_key_id="k1")
    storage.update_session_ai_state(s.id, AiSession(platform="openai", blob='{"responseId": "r"}'))
    storage.set_organisation_unverified(s.id)
    storage.clear_session_api_key(s.id)
    loaded = storage.get_session(s.id)
    assert loaded.ai_session.blob == '{"responseId": "r"}'
    assert loaded.organisation_unverified
    assert loaded.api_key_id is None


def test_turn_update_keeps_background_flags(storage):
    s = _session(storage, api_key_id="k1")
    storage.set_organisation_unverified(s.id)

    # s is the copy a text step read before the flag was set
    s.api_key_id = "k2"
    s.ai_platform = "mock"
    s.ai_model = "premium"
    s.ai_session = AiSession(platform="mock", blob='{"turn": 2}')
    storage.update_session_turn(s)

    loaded = storage.get_session(s.id)
    assert loaded.organisation_unverified
    assert loaded.api_key_id == "k2"
    assert loaded.ai_platform == "mock"
    assert loaded.ai_model == "premium"
    assert loaded.ai_session.blob == '{"turn": 2}'


def test_list_and_delete_sessions(storage):
    a = _session(storage)
    _session(storage, user_id="u2")
    assert {s.id for s in storage.list_sessions(user_id="u1")} == {a.id}
    assert len(storage.list_sessions(game_id="g1")) == 2
    assert storage.delete_session(a.id)
    assert not storage.delete_session(a.id)


# ── messages ──────────────────────────────────────────────────


def test_append_assigns_increasing_seq(storage):
    s = _session(storage)
    first = storage.append_message(s.id, GameSessionMessage(session_id=s.id, type="system"))
    second = storage.append_message(s.id, GameSessionMessage(session_id=s.id, type="game"))
    assert (first.seq, second.seq) == (1, 2)
    assert storage.get_latest_message(s.id).id == second.id


def test_seq_continues_after_tail_delete(storage):
    s = _session(storage)
    storage.append_message(s.id, GameSessionMessage(session_id=s.id, type="game"))
    tail = storage.append_message(s.id, GameSessionMessage(session_id=s.id, type="player"))
    assert storage.delete_message(s.id, tail.id)
    assert not storage.delete_message(s.id, tail.id)
    again = storage.append_message(s.id, GameSessionMessage(session_id=s.id, type="player"))
    assert again.seq == 2


def test_update_message_keeps_seq(storage):
    s = _session(storage)
    m = storage.append_message(s.id, GameSessionMessage(session_id=s.id, type="game", stream=True))
    storage.update_message(m.model_copy(update={"seq": 99, "stream": False, "message": "done"}))
    loaded = storage.get_message(s.id, m.id)
    assert loaded.seq == 1
    assert loaded.message == "done"
    assert not loaded.stream


def test_image_and_audio_bytes_persist(storage):
    s = _session(storage)
    m = storage.append_message(s.id, GameSessionMessage(session_id=s.id, type="game"))
    storage.update_message_image(s.id, m.id, b"\x89PNG\r\n")
    storage.update_message_audio(s.id, m.id, b"\xff\xfb")
    loaded = storage.get_message(s.id, m.id)
    assert loaded.image == b"\x89PNG\r\n"
    assert loaded.audio == b"\xff\xfb"


def test_patch_unknown_message_raises(storage):
    s = _session(storage)
    with pytest.raises(KeyError):
        storage.update_message_image(s.id, "nope", b"x")
