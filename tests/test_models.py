"""Tests for gamelab.models."""

import json

import pytest
from pydantic import ValidationError

from gamelab.models import (
    AiSession,
    Chunk,
    GameSession,
    GameSessionMessage,
    StatusField,
    TokenUsage,
)


def _u(i: int, o: int) -> TokenUsage:
    return TokenUsage(input_tokens=i, output_tokens=o, total_tokens=i + o)


class TestTokenUsage:
    def test_add_sums_each_counter(self) -> None:
        total = _u(3, 4).add(_u(10, 20))
        assert total == TokenUsage(input_tokens=13, output_tokens=24, total_tokens=37)

    def test_add_is_commutative(self) -> None:
        a, b = _u(1, 2), _u(30, 40)
        assert a.add(b) == b.add(a)

    def test_add_is_associative(self) -> None:
        a, b, c = _u(1, 2), _u(5, 7), _u(100, 1)
        assert a.add(b).add(c) == a.add(b.add(c))

    def test_zero_is_identity(self) -> None:
        a = _u(8, 9)
        assert a.add(TokenUsage()) == a
        assert TokenUsage().add(a) == a

    def test_add_none_returns_self(self) -> None:
        a = _u(1, 1)
        assert a.add(None) is a

    def test_frozen(self) -> None:
        with pytest.raises(ValidationError):
            _u(1, 1).input_tokens = 5

    def test_camel_case_wire_form(self) -> None:
        dumped = _u(1, 2).model_dump(by_alias=True)
        assert dumped == {"inputTokens": 1, "outputTokens": 2, "totalTokens": 3}


class TestGameSessionMessage:
    def test_defaults(self) -> None:
        m = GameSessionMessage(session_id="s", type="game")
        assert m.seq == 0
        assert m.stream is False
        assert m.image is None
        assert m.id

    def test_invalid_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GameSessionMessage(session_id="s", type="narrator")

    def test_image_bytes_serialise_as_base64(self) -> None:
        m = GameSessionMessage(session_id="s", type="game", image=b"\x89PNG")
        dumped = json.loads(m.model_dump_json())
        assert dumped["image"] == "iVBORw=="
        restored = GameSessionMessage.model_validate_json(m.model_dump_json())
        assert restored.image == b"\x89PNG"

    def test_accepts_camel_and_snake_case(self) -> None:
        a = GameSessionMessage.model_validate({"sessionId": "s", "type": "game", "hasImage": True})
        b = GameSessionMessage.model_validate({"session_id": "s", "type": "game", "has_image": True})
        assert a.has_image and b.has_image

    def test_to_ai_json_shape(self) -> None:
        m = GameSessionMessage(
            session_id="s", type="player", message="open the door",
            status_fields=[StatusField(name="Health", value="10")],
        )
        assert json.loads(m.to_ai_json()) == {
            "type": "player",
            "message": "open the door",
            "status": {"Health": "10"},
        }


class TestChunk:
    def test_event_omits_defaults(self) -> None:
        assert Chunk(text="Hi").to_event() == {"text": "Hi"}

    def test_event_uses_camel_case_flags(self) -> None:
        event = Chunk(image_data=b"\x00\x01", image_done=True).to_event()
        assert event == {"imageData": "AAE=", "imageDone": True}

    def test_error_event(self) -> None:
        event = Chunk(error="boom", error_code="ai_error", text_done=True).to_event()
        assert event == {"error": "boom", "errorCode": "ai_error", "textDone": True}


class TestGameSession:
    def test_roundtrip_with_ai_session(self) -> None:
        s = GameSession(
            game_id="g", user_id="u",
            ai_session=AiSession(platform="openai", blob='{"responseId": "r1"}'),
            status_fields=[StatusField(name="Gold", value="3")],
        )
        restored = GameSession.model_validate_json(s.model_dump_json())
        assert restored == s

    def test_tier_validated(self) -> None:
        with pytest.raises(ValidationError):
            GameSession(game_id="g", user_id="u", ai_model="ultra")
