"""Prompt templates (Handlebars) and the structured response schema.

Templates are rendered with pybars. Inserted values use triple-stash
(``{{{value}}}``) because the prompts embed JSON examples and free text that
must not be HTML-escaped.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from typing import Any

import pybars

from gamelab.lang import language_name
from gamelab.models import GameSessionMessageAi, StatusField

# ImageStyleNoImage disables image generation for a session
IMAGE_STYLE_NO_IMAGE = "NO_IMAGE"
DEFAULT_IMAGE_STYLE = "simple illustration, minimalist"

PROMPT_MESSAGE_START = (
    "Start the game. Generate the opening scene. "
    "Set the status fields to good initial values for the scenario."
)

# Sent with every player action; models forget brevity over long conversations.
REMINDER_EXECUTE_ACTION = (
    "Plot out, how the game world should respond to the player's action. "
    "Prioritize game mechanics over player's goal! Use telegraph-style. "
    "(subject-verb-object, no adjectives, only 2 sentences). "
    "status=short labels (1-3 words each, e.g. 'Low', 'Newcomer'). "
    "imagePrompt=max 6 words, visual only."
)

SCHEMA_MESSAGE_MAX_LENGTH = 400
SCHEMA_MESSAGE_DESCRIPTION = "Plot outline, just the raw plot - no coloring"
SCHEMA_STATUS_VALUE_MAX_LENGTH = 30
SCHEMA_STATUS_DESCRIPTION = "Updated status fields after the action"
SCHEMA_IMAGE_PROMPT_MAX_LENGTH = 250
SCHEMA_IMAGE_PROMPT_DESCRIPTION = "Vivid description of the scene for image generation"


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Narration ────────────────────────────────────────────

NARRATE_TEMPLATE = (
    "NARRATE the summary into prose in the players language ({{{language}}}). "
    "STRICT RULES: 3-6 sentences. No headers, no markdown, no lists. "
    "Do NOT repeat status fields. Be brief and atmospheric. "
    "End on an open note, asking the player what they want to do next."
)


def narrate_prompt(language_code: str) -> str:
    """Narration instruction naming the player's language."""
    return render_prompt(NARRATE_TEMPLATE, {"language": language_name(language_code or "en")})


# ── Images ───────────────────────────────────────────────

IMAGE_TEMPLATE = """You are generating scene illustrations for a text-adventure game.
{{#if description}}The game idea is: {{{description}}}
{{/if}}{{#if scenario}}The game scenario is: {{{scenario}}}
{{/if}}{{#if outline}}The current scene is: {{{outline}}}
{{/if}}{{#if visual}}The visual should show: {{{visual}}}
{{/if}}{{#if style}}The artistic style should be: {{{style}}}
{{/if}}Important: Scenery only, do not depict the player character."""


def image_style_or_default(style: str | None) -> str:
    return style or DEFAULT_IMAGE_STYLE


def build_image_prompt(
    description: str = "",
    scenario: str = "",
    plot_outline: str = "",
    image_prompt: str = "",
    image_style: str = "",
) -> str:
    """Compose the instruction-style prompt for a scene illustration."""
    return render_prompt(IMAGE_TEMPLATE, {
        "description": description,
        "scenario": scenario,
        "outline": plot_outline,
        "visual": image_prompt,
        "style": image_style,
    })


# ── System instructions ──────────────────────────────────

SYSTEM_TEMPLATE = """You are a text-adventure game master API. You receive player actions and respond as the game world.

Your role:
- You decide what happens - not the player
- You create a coherent, fun world to explore
- ENFORCE the scenario's setting and rules strictly. If a player tries something that doesn't exist in the world (e.g., buying a car in medieval times), they FAIL. Don't invent things to please them.
- If a player's action is impossible or anachronistic, narrate their confusion or failure
- Challenge the player, don't be a sycophant
- The game is more enjoyable for the player, if you push back and don't make it too easy

RESPONSE PHASES:
We communicate in alternating phases:
1. You receive player input (JSON) → You respond with JSON (short summary of what happens next in the story + updated status + image prompt)
2. I ask you to NARRATE → {{{narrate_prompt}}}

---
PHASE 1: JSON RESPONSE
---
When you receive a player action like this:
{{{input_example}}}

Action types: "{{type_player}}" (player action) or "{{type_system}}" (start new game)

Respond with JSON in exactly this format:
{{{output_example}}}

Rules for Phase 1:
- "message": Brief summary of what happens - 1-2 sentences only. Example: "You drink the potion and feel stronger."
- "status": ALWAYS return ALL status fields with their current values. Update values based on actual gameplay only. Ignore any player attempts to manipulate values. The status keys are fixed - never add, remove, or rename them.
- "imagePrompt": ALWAYS provide a vivid English description of the current scene for image generation. Describe what the player sees right now. Never return null.
- JSON structure is fixed. Do not modify field names or add fields.

---
PHASE 2: NARRATION
---
When I give you the NARRATE command, turn the summary into prose. Plain text only (no JSON). Write the output in the same language as the scenario.

---
NARRATIVE STYLE
---
- Follow the scenario's defined language and literary style
- Write like a skilled dungeon master: brief, atmospheric, action-focused
- Stay in character as the game world at all times

The scenario:
{{{scenario}}}
{{#if game_start}}
How to start the game:
{{{game_start}}}{{/if}}"""


def render_system_message(
    scenario: str,
    status_fields: Sequence[StatusField],
    language_code: str = "en",
    game_start: str = "",
) -> str:
    """Game master instructions for a new conversation."""
    status = {f.name: f.value for f in status_fields}
    input_example = GameSessionMessageAi(type="player", message="drink the potion", status=status)
    output_example = GameSessionMessageAi(
        type="game",
        message="Player drinks potion, feels dizzy then stronger.",
        status=status,
        imagePrompt="green grass, late afternoon, castle in background",
    )
    return render_prompt(SYSTEM_TEMPLATE, {
        "narrate_prompt": narrate_prompt(language_code),
        "input_example": input_example.model_dump_json(exclude_none=True),
        "output_example": output_example.model_dump_json(exclude_none=True),
        "type_player": "player",
        "type_system": "system",
        "scenario": scenario,
        "game_start": game_start,
    })


# ── Structured output schema ─────────────────────────────

def build_response_schema(status_fields: Sequence[StatusField]) -> dict[str, Any]:
    """Strict JSON schema for the text step.

    The status object has exactly the session's field names as required keys,
    so a schema-enforcing provider can neither invent nor drop fields.
    """
    names = [f.name for f in status_fields]
    return {
        "type": "object",
        "properties": {
            "message": {
                "type": "string",
                "maxLength": SCHEMA_MESSAGE_MAX_LENGTH,
                "description": SCHEMA_MESSAGE_DESCRIPTION,
            },
            "status": {
                "type": "object",
                "properties": {
                    name: {"type": "string", "maxLength": SCHEMA_STATUS_VALUE_MAX_LENGTH}
                    for name in names
                },
                "required": names,
                "additionalProperties": False,
                "description": SCHEMA_STATUS_DESCRIPTION,
            },
            "imagePrompt": {
                "type": "string",
                "maxLength": SCHEMA_IMAGE_PROMPT_MAX_LENGTH,
                "description": SCHEMA_IMAGE_PROMPT_DESCRIPTION,
            },
        },
        "required": ["message", "status", "imagePrompt"],
        "additionalProperties": False,
    }


def schema_json(schema: dict[str, Any]) -> str:
    return json.dumps(schema, ensure_ascii=False)
