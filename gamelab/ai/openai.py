"""OpenAI adapter (Responses API).

The provider keeps the conversation server-side (``store: true``); the only
state we persist is the id of the last response, chained through
``previous_response_id`` on every follow-up request.
"""

from __future__ import annotations

import base64
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

RESPONSES_ENDPOINT = "/responses"
IMAGES_ENDPOINT = "/images/generations"
SPEECH_ENDPOINT = "/audio/speech"

MAX_OUTPUT_TOKENS = 5000
IMAGE_MODEL = "gpt-image-1"
IMAGE_SIZE = "1024x1024"
IMAGE_QUALITY = "low"
IMAGE_PARTIALS = 3
TTS_MODEL = "gpt-4o-mini-tts"
TTS_VOICE = "cedar"
TTS_FORMAT = "mp3"
TRANSLATE_MODEL = "gpt-5.1-codex"


def parse_usage(data: dict[str, Any] | None) -> TokenUsage:
    usage = data or {}
    return TokenUsage(
        input_tokens=usage.get("input_tokens", 0) or 0,
        output_tokens=usage.get("output_tokens", 0) or 0,
        total_tokens=usage.get("total_tokens", 0) or 0,
    )


def extract_output_text(data: dict[str, Any]) -> str:
    """Concatenate the assistant's ``output_text`` parts."""
    parts = []
    for item in data.get("output") or []:
        if item.get("type") != "message" or item.get("role") != "assistant":
            continue
        for content in item.get("content") or []:
            if content.get("type") == "output_text":
                parts.append(content.get("text", ""))
    return "".join(parts)


def check_completed(data: dict[str, Any]) -> None:
    """Raise AiError unless the response finished normally."""
    status = data.get("status")
    if status == "completed":
        return
    error = data.get("error") or {}
    if error.get("message"):
        code = error.get("code") or ""
        raise AiError(f"{code}: {error['message']}" if code else error["message"])
    details = data.get("incomplete_details") or {}
    if status == "incomplete" and details.get("reason"):
        raise AiError(f"the AI response was incomplete (reason: {details['reason']})")
    if status == "failed":
        raise AiError("the AI failed to generate a response")
    raise AiError(f"unexpected response status: {status}")


class OpenAiPlatform(AiPlatformAdapter):
    platform = catalog.OPENAI_PLATFORM

    def __init__(self, base_url: str = "https://api.openai.com/v1", **kwargs: Any) -> None:
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
        body: dict[str, Any] = {
            "model": self.model_for(session),
            "store": True,
            "max_output_tokens": MAX_OUTPUT_TOKENS,
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "game_response",
                    "schema": schema,
                    "strict": True,
                },
            },
        }

        if action.type == "system":
            body["instructions"] = action.message
            body["input"] = [{"role": "user", "content": PROMPT_MESSAGE_START}]
        else:
            previous = state.get("responseId")
            if previous:
                body["previous_response_id"] = previous
            else:
                # Conversation lost; restart it from the frozen instructions.
                body["instructions"] = session.system_message
            body["input"] = [
                {"role": "developer", "content": REMINDER_EXECUTE_ACTION},
                {"role": "user", "content": action.to_ai_json()},
            ]

        response.prompt_status_update = json.dumps(body["input"], ensure_ascii=False)
        response.prompt_response_schema = schema_json(schema)

        data = await self._post_json(RESPONSES_ENDPOINT, api_key, body)
        check_completed(data)
        usage = parse_usage(data.get("usage"))
        logger.debug("openai execute_action usage: %s", usage)

        self.apply_game_output(session, action, response, extract_output_text(data))
        self.store_state(session, {"responseId": data.get("id", "")})
        return usage

    # ── Narration ───────────────────────────────────────────

    async def expand_story(
        self,
        session: GameSession,
        api_key: str,
        response: GameSessionMessage,
        stream: Stream,
    ) -> TokenUsage:
        state = self.load_state(session)
        prompt = narrate_prompt(session.language)
        response.prompt_expand_story = prompt
        body: dict[str, Any] = {
            "model": self.model_for(session),
            "input": [{"role": "developer", "content": prompt}],
            "store": True,
            "stream": True,
        }
        if state.get("responseId"):
            body["previous_response_id"] = state["responseId"]

        text: list[str] = []
        usage = TokenUsage()
        response_id = ""
        try:
            async for event in self._sse_events(RESPONSES_ENDPOINT, api_key, body):
                kind = event.get("type", "")
                if kind == "response.output_text.delta":
                    delta = event.get("delta", "")
                    if delta:
                        text.append(delta)
                        stream.send_text(delta)
                elif kind == "response.completed":
                    completed = event.get("response") or {}
                    response_id = completed.get("id", "")
                    usage = parse_usage(completed.get("usage"))
                elif kind in ("response.failed", "response.incomplete"):
                    check_completed(event.get("response") or {})
                elif kind == "error":
                    raise AiError(f"{event.get('code') or 'error'}: {event.get('message', '')}")
        finally:
            if text:
                response.message = "".join(text)

        stream.send_text("", done=True)
        if response_id:
            self.store_state(session, {"responseId": response_id})
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
            "prompt": prompt,
            "n": 1,
            "size": IMAGE_SIZE,
            "quality": IMAGE_QUALITY,
            "output_format": "png",
            "stream": True,
            "partial_images": IMAGE_PARTIALS,
        }
        final = b""
        async for event in self._sse_events(IMAGES_ENDPOINT, api_key, body):
            kind = event.get("type", "")
            if kind not in ("image_generation.partial_image", "image_generation.completed"):
                if kind == "error":
                    raise AiError(f"image generation failed: {event.get('message') or event}")
                continue
            encoded = event.get("b64_json")
            if not encoded:
                continue
            data = base64.b64decode(encoded)
            complete = kind == "image_generation.completed"
            self.emit_image(response, stream, on_image, data, complete)
            if complete:
                final = data
        if not final:
            raise AiError("image stream ended without a final image")
        return final

    async def generate_audio(
        self,
        session: GameSession,
        api_key: str,
        text: str,
        stream: Stream,
    ) -> bytes | None:
        body = {
            "model": TTS_MODEL,
            "input": text,
            "voice": TTS_VOICE,
            "response_format": TTS_FORMAT,
        }
        resp = await self._request("POST", SPEECH_ENDPOINT, api_key, body)
        audio = resp.content
        stream.send_audio(audio, done=True)
        return audio

    # ── Translation ─────────────────────────────────────────

    async def translate(
        self, api_key: str, documents: list[str], target_language: str
    ) -> tuple[str, TokenUsage]:
        body = {
            "model": TRANSLATE_MODEL,
            "instructions": TRANSLATE_INSTRUCTION,
            "input": translate_input(documents, language_name(target_language)),
            "store": False,
            "text": {"format": {"type": "json_object"}},
        }
        data = await self._post_json(RESPONSES_ENDPOINT, api_key, body)
        check_completed(data)
        text = extract_output_text(data)
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedAiResponse(f"translation is not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise MalformedAiResponse("translation is not a JSON object")
        return text, parse_usage(data.get("usage"))

