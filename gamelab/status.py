"""Response schema parser.

Decodes the provider's structured turn output into message text, status
fields and an optional image prompt. The status field *names* of the result
always equal the session's frozen schema: missing names are backfilled from
the previous turn, unknown names are dropped.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from gamelab.errors import MalformedAiResponse
from gamelab.models import StatusField

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```\s*$", re.DOTALL)


@dataclass
class ParsedResponse:
    message: str
    status_fields: list[StatusField] = field(default_factory=list)
    image_prompt: str | None = None
    dropped_fields: list[str] = field(default_factory=list)


def field_names(fields: Sequence[StatusField]) -> list[str]:
    return [f.name for f in fields]


def fields_to_map(fields: Sequence[StatusField] | None) -> dict[str, str]:
    return {f.name: f.value for f in fields or ()}


def map_to_fields(
    status: Mapping[str, str],
    names: Sequence[str],
    fallback: Mapping[str, str] | None = None,
) -> list[StatusField]:
    """Ordered fields for ``names``; values missing from ``status`` come from ``fallback``."""
    result = []
    for name in names:
        if name in status:
            value = status[name]
        else:
            value = (fallback or {}).get(name, "")
        result.append(StatusField(name=name, value=value))
    return result


def _strip_fences(text: str) -> str:
    text = text.strip()
    match = _FENCE.match(text)
    if match:
        return match.group(1).strip()
    return text


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


def _read_status(data: dict[str, Any]) -> dict[str, str]:
    """Accept ``status`` as an object or ``statusFields`` as a name/value array."""
    raw = data.get("status")
    if raw is None:
        raw = data.get("statusFields")
    if raw is None:
        return {}

    if isinstance(raw, dict):
        return {str(k): _as_text(v) for k, v in raw.items()}
    if isinstance(raw, list):
        status: dict[str, str] = {}
        for item in raw:
            if isinstance(item, dict) and "name" in item:
                status[str(item["name"])] = _as_text(item.get("value"))
            else:
                logger.warning("Ignoring malformed status entry: %r", item)
        return status
    raise MalformedAiResponse(f"status must be an object or array, got {type(raw).__name__}")


def parse_game_response(
    text: str,
    schema_fields: Sequence[StatusField],
    fallback_fields: Sequence[StatusField] | None = None,
) -> ParsedResponse:
    """Parse raw provider output for one turn.

    ``schema_fields`` is the session's frozen status schema (names and their
    order); ``fallback_fields`` are the prior turn's values. Raises
    MalformedAiResponse when the payload is not a JSON object.
    """
    body = _strip_fences(text or "")
    if not body:
        raise MalformedAiResponse("AI returned an empty response")
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedAiResponse(f"AI returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedAiResponse(f"AI response must be a JSON object, got {type(data).__name__}")

    message = data.get("message", "")
    if not isinstance(message, str):
        raise MalformedAiResponse(f"message must be a string, got {type(message).__name__}")

    names = field_names(schema_fields)
    status = _read_status(data)

    dropped = [k for k in status if k not in names]
    if dropped:
        logger.warning("Dropping status fields not in the session schema: %s", ", ".join(dropped))
    missing = [n for n in names if n not in status]
    if missing:
        logger.warning("Backfilling status fields missing from AI response: %s", ", ".join(missing))

    fallback = fields_to_map(fallback_fields) or fields_to_map(schema_fields)
    image_prompt = data.get("imagePrompt")
    if image_prompt is not None:
        image_prompt = _as_text(image_prompt).strip() or None

    return ParsedResponse(
        message=message,
        status_fields=map_to_fields(status, names, fallback),
        image_prompt=image_prompt,
        dropped_fields=dropped,
    )
