"""Tests for the structured turn response parser."""

import pytest

from gamelab.errors import MalformedAiResponse
from gamelab.models import StatusField
from gamelab.status import map_to_fields, parse_game_response

SCHEMA = [StatusField(name="Health", value="10"), StatusField(name="Gold", value="0")]


def _values(parsed):
    return [(f.name, f.value) for f in parsed.status_fields]


# ── happy path ────────────────────────────────────────────────


def test_parses_message_status_and_image_prompt():
    parsed = parse_game_response(
        '{"message": "You find a coin.", "status": {"Health": "10", "Gold": "1"}, '
        '"imagePrompt": "glinting coin in mud"}',
        SCHEMA,
    )
    assert parsed.message == "You find a coin."
    assert _values(parsed) == [("Health", "10"), ("Gold", "1")]
    assert parsed.image_prompt == "glinting coin in mud"
    assert parsed.dropped_fields == []


def test_status_order_follows_schema():
    parsed = parse_game_response('{"message": "", "status": {"Gold": "5", "Health": "9"}}', SCHEMA)
    assert _values(parsed) == [("Health", "9"), ("Gold", "5")]


def test_accepts_name_value_array():
    parsed = parse_game_response(
        '{"message": "m", "statusFields": [{"name": "Health", "value": "7"}, {"name": "Gold", "value": "2"}]}',
        SCHEMA,
    )
    assert _values(parsed) == [("Health", "7"), ("Gold", "2")]


def test_non_string_values_become_text():
    parsed = parse_game_response('{"message": "m", "status": {"Health": 8, "Gold": true}}', SCHEMA)
    assert _values(parsed) == [("Health", "8"), ("Gold", "true")]


@pytest.mark.parametrize("wrapped", [
    '```json\n{"message": "fenced", "status": {}}\n```',
    '```\n{"message": "fenced", "status": {}}\n```',
    '  {"message": "fenced", "status": {}}  ',
])
def test_code_fences_and_whitespace_stripped(wrapped):
    assert parse_game_response(wrapped, SCHEMA).message == "fenced"


def test_blank_image_prompt_is_none():
    parsed = parse_game_response('{"message": "m", "status": {}, "imagePrompt": "   "}', SCHEMA)
    assert parsed.image_prompt is None


# ── schema enforcement ────────────────────────────────────────


def test_missing_fields_backfilled_from_previous_turn():
    previous = [StatusField(name="Health", value="4"), StatusField(name="Gold", value="12")]
    parsed = parse_game_response('{"message": "m", "status": {"Health": "3"}}', SCHEMA, previous)
    assert _values(parsed) == [("Health", "3"), ("Gold", "12")]


def test_missing_fields_fall_back_to_schema_values():
    parsed = parse_game_response('{"message": "m"}', SCHEMA)
    assert _values(parsed) == [("Health", "10"), ("Gold", "0")]


def test_unknown_fields_dropped():
    parsed = parse_game_response(
        '{"message": "m", "status": {"Health": "1", "Gold": "2", "Mana": "99"}}', SCHEMA,
    )
    assert [f.name for f in parsed.status_fields] == ["Health", "Gold"]
    assert parsed.dropped_fields == ["Mana"]


def test_empty_schema_yields_no_fields():
    parsed = parse_game_response('{"message": "m", "status": {"Health": "1"}}', [])
    assert parsed.status_fields == []


# ── malformed output ──────────────────────────────────────────


@pytest.mark.parametrize("text", [
    "",
    "   ",
    "The dragon attacks!",
    '["message"]',
    '{"message": 42}',
    '{"message": "m", "status": "Health 10"}',
])
def test_malformed_output_raises(text):
    with pytest.raises(MalformedAiResponse):
        parse_game_response(text, SCHEMA)


def test_malformed_status_entries_are_skipped():
    parsed = parse_game_response('{"message": "m", "statusFields": ["oops", {"name": "Gold", "value": "3"}]}', SCHEMA)
    assert _values(parsed) == [("Health", "10"), ("Gold", "3")]


# ── map_to_fields ─────────────────────────────────────────────


def test_map_to_fields_without_fallback_uses_empty_string():
    assert map_to_fields({}, ["A"]) == [StatusField(name="A", value="")]
