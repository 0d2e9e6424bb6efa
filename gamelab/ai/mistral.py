"""Mistral adapter (Conversations API).

Conversation continuity uses the server-side conversation id. Image
generation needs the ``image_generation`` tool declared at conversation
creation, so every picture is its own throwaway conversation whose
``tool_file`` output is downloaded from the Files API.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from gamelab import catalog
from gamelab.ai.base import (
    TRANSLATE_INSTRUCTION,
    AiPlatformAdapter,
    ImageCallback,
    translate_input,
)
from gamelab.errors import AiError, MalformedAiResponse
from gamelab.lang import language_name
from gamelab.models import GameSession, GameSessionMessage, TokenUsage
from gamelab.stream import Stream
from gamelab.templates import (
    PROMPT_MESSAGE_START,
    REMINDER_EXECUTE_ACTION,
    narrate_prompt,
    schema_json,
)

logger = logging.getLogger(__name__)

CONVERSATIONS_ENDPOINT = "/conversations"
FILES_ENDPOINT = "/files"
CHAT_ENDPOINT = "/chat/completions"

MAX_TOKENS = 5000
IMAGE_MODEL = "mistral-medium-latest"
TRANSLATE_MODEL = "mistral-small-latest"
TRANSLATE_TEMPERATURE = 0.3


def parse_usage(data: dict[str, Any] | None) -> TokenUsage:
    usage = data or {}
    return TokenUsage(
        input_tokens=usage.get("prompt_tokens", 0) or 0,
        output_tokens=usage.get("completion_tokens", 0) or 0,
        total_tokens=usage.get("total_tokens", 0) or 0,
    )


def content_text(content: Any) -> str:
    """``content`` is a plain string, or a chunk list once tools are involved."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            c.get("text", "") for c in content
            if isinstance(c, dict) and c.get("type") == "text"
        )
    return ""


def _assistant_outputs(data: dict[str, Any]):
    for output in data.get("outputs") or []:
        if output.get("role", "assistant") == "assistant" and output.get("content"):
            yield output["content"]


def extract_response_text(data: dict[str, Any]) -> str:
    for content in _assistant_outputs(data):
        text = content_text(content)
        if text:
            return text
    return ""


def extract_file_id(data: dict[str, Any]) -> str:
    for content in _assistant_outputs(data):
        if not isinstance(content, list):
            continue
        for chunk in content:
            if isinstance(chunk, dict) and chunk.get("type") == "tool_file" and chunk.get("file_id"):
                return chunk["file_id"]
    return ""


class MistralPlatform(AiPlatformAdapter):
    platform = catalog.MISTRAL_PLATFORM

    def __init__(self, base_url: str = "https://api.mistral.ai/v1", **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)

    # ── Text step ───────────────────────────────────────────

    async def execute_action(
        self,
        session: GameSession,
        api_key: str,
        action: GameSessionMessage,
        response: GameSessionMessage,
        schema: dict[str, Any],
    ) -> TokenUsage:
        state = self.load_state(session)
        completion_args = {
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "game_response", "schema": schema, "strict": True},
            },
            "max_tokens": MAX_TOKENS,
        }
        conversation_id = state.get("conversationId")

        if action.type == "system" or not conversation_id:
            instructions = action.message if action.type == "system" else session.system_message
            if action.type == "system":
                inputs = [{"role": "user", "content": PROMPT_MESSAGE_START}]
            else:
                inputs = [
                    {"role": "system", "content": REMINDER_EXECUTE_ACTION},
                    {"role": "user", "content": action.to_ai_json()},
                ]
            body: dict[str, Any] = {
                "model": self.model_for(session),
                "inputs": inputs,
                "instructions": instructions,
                "store": True,
                "completion_args": completion_args,
            }
            path = CONVERSATIONS_ENDPOINT
        else:
            inputs = [
                {"role": "system", "content": REMINDER_EXECUTE_ACTION},
                {"role": "user", "content": action.to_ai_json()},
            ]
            body = {"inputs": inputs, "store": True, "completion_args": completion_args}
            path = f"{CONVERSATIONS_ENDPOINT}/{conversation_id}"

        response.prompt_status_update = json.dumps(inputs, ensure_ascii=False)
        response.prompt_response_schema = schema_json(schema)

        data = await self._post_json(path, api_key, body)
        usage = parse_usage(data.get("usage"))
        logger.debug("mistral execute_action usage: %s", usage)

        self.apply_game_output(session, action, response, extract_response_text(data))
        new_id = data.get("conversation_id") or conversation_id or ""
        self.store_state(session, {"conversationId": new_id})
        return usage

    # ── Narration ───────────────────────────────────────────

    async def expand_story(
        self,
        session: GameSession,
        api_key: str,
        response: GameSessionMessage,
        stream: Stream,
    ) -> TokenUsage:
        conversation_id = self.load_state(session).get("conversationId")
        if not conversation_id:
            raise AiError("no Mistral conversation to narrate")
        prompt = narrate_prompt(session.language)
        response.prompt_expand_story = prompt
        body = {
            "inputs": [{"role": "user", "content": prompt}],
            "store": True,
            "stream": True,
        }

        text: list[str] = []
        usage = TokenUsage()
        try:
            path = f"{CONVERSATIONS_ENDPOINT}/{conversation_id}"
            async for event in self._sse_events(path, api_key, body):
                kind = event.get("type", "")
                if kind == "message.output.delta":
                    delta = content_text(event.get("content"))
                    if delta:
                        text.append(delta)
                        stream.send_text(delta)
                elif kind == "conversation.response.done":
                    usage = parse_usage(event.get("usage"))
                    conversation_id = event.get("conversation_id") or conversation_id
                elif kind == "conversation.response.error":
                    raise AiError(f"{event.get('code') or 'error'}: {event.get('message', '')}")
                else:
                    logger.debug("mistral stream: unhandled event %s", kind)
        finally:
            if text:
                response.message = "".join(text)

        stream.send_text("", done=True)
        self.store_state(session, {"conversationId": conversation_id})
        return usage

    # ── Media ───────────────────────────────────────────────

    async def generate_image(
        self,
        session: GameSession,
        api_key: str,
        response: GameSessionMessage,
        prompt: str,
        stream: Stream,
        on_image: ImageCallback | None = None,
    ) -> bytes:
        body = {
            "model": IMAGE_MODEL,
            "inputs": [{"role": "user", "content": prompt}],
            "instructions": "Use the image generation tool to create the requested picture.",
            "store": False,
            "tools": [{"type": "image_generation"}],
        }
        data = await self._post_json(CONVERSATIONS_ENDPOINT, api_key, body)
        file_id = extract_file_id(data)
        if not file_id:
            raise AiError("Mistral image conversation returned no image file")
        image = await self._get_bytes(f"{FILES_ENDPOINT}/{file_id}/content", api_key)
        logger.debug("mistral image %s downloaded (%d bytes)", file_id, len(image))
        self.emit_image(response, stream, on_image, image, True)
        return image

    # ── Translation ─────────────────────────────────────────

    async def translate(
        self, api_key: str, documents: list[str], target_language: str
    ) -> tuple[str, TokenUsage]:
        body = {
            "model": TRANSLATE_MODEL,
            "messages": [
                {"role": "system", "content": TRANSLATE_INSTRUCTION},
                {"role": "user", "content": translate_input(documents, language_name(target_language))},
            ],
            "temperature": TRANSLATE_TEMPERATURE,
            "response_format": {"type": "json_object"},
        }
        data = await self._post_json(CHAT_ENDPOINT, api_key, body)
        choices = data.get("choices") or []
        if not choices:
            raise MalformedAiResponse("translation returned no choices")
        text = content_text((choices[0].get("message") or {}).get("content"))
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedAiResponse(f"translation is not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise MalformedAiResponse("translation is not a JSON object")
        return text, parse_usage(data.get("usage"))
