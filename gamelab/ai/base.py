"""Provider adapter interface and shared HTTP plumbing.

Every platform implements the same capability surface (``AiPlatformAdapter``)
against its own native protocol. Adapters are composed, not inherited from
one another: each one talks to its provider through the helpers here and is
looked up by platform id in ``gamelab.ai.PlatformRegistry``.

Each adapter privately owns the conversation blob it stores in
``GameSession.ai_session``. The envelope carries the owning platform id and a
version; an adapter handed someone else's envelope starts a new conversation.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx

from gamelab import catalog
from gamelab.errors import AiError, ErrorCode
from gamelab.models import (
    AiModel,
    AiPlatform,
    AiSession,
    GameSession,
    GameSessionMessage,
    TokenUsage,
)
from gamelab.status import parse_game_response
from gamelab.stream import Stream

logger = logging.getLogger(__name__)

# Called with (image bytes, complete) for every partial and the final image
ImageCallback = Callable[[bytes, bool], None]

TRANSLATE_INSTRUCTION = (
    "You translate UI and game text for a text-adventure platform. "
    "You receive one or more JSON documents with identical structure. "
    "Return a single JSON object with exactly the same keys and nesting as the "
    "first document, with every string value translated into the target language. "
    "Keep placeholders such as {{name}} or %s unchanged. Do not add commentary."
)


def translate_input(documents: list[str], language: str) -> str:
    originals = "".join(f"Original #{i}: \n{doc}\n\n" for i, doc in enumerate(documents, start=1))
    return f"Translate this JSON to {language}:\n\n{originals}"


class AiPlatformAdapter(ABC):
    """Uniform capability surface for one AI platform.

    Args:
        base_url: Provider API root, e.g. "https://api.openai.com/v1".
        timeout:  HTTP timeout in seconds.
        client:   Optional shared httpx.AsyncClient (tests inject one backed
                  by httpx.MockTransport). Created lazily otherwise.
    """

    platform: AiPlatform
    state_version: int = 1

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def id(self) -> str:
        return self.platform.id

    # ------------------------------------------------------------------
    # Catalog accessors
    # ------------------------------------------------------------------

    def platform_info(self) -> AiPlatform:
        return self.platform

    def resolve_model_info(self, tier: str) -> AiModel | None:
        return catalog.resolve_model_info(self.platform.models, tier)

    def model_for(self, session: GameSession) -> str:
        """Concrete model string for the session's tier."""
        info = self.resolve_model_info(session.ai_model)
        if info is None:
            raise AiError(
                f"Platform {self.id} has no model at or below tier {session.ai_model}",
                code=ErrorCode.INVALID_PLATFORM,
            )
        return info.model

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    @abstractmethod
    async def execute_action(
        self,
        session: GameSession,
        api_key: str,
        action: GameSessionMessage,
        response: GameSessionMessage,
        schema: dict[str, Any],
    ) -> TokenUsage:
        """Blocking, schema-constrained text step.

        A ``system`` action starts a new provider conversation whose
        instructions are ``action.message``; any other action is appended to
        the existing one. Fills ``response`` and updates ``session.ai_session``.
        """

    @abstractmethod
    async def expand_story(
        self,
        session: GameSession,
        api_key: str,
        response: GameSessionMessage,
        stream: Stream,
    ) -> TokenUsage:
        """Stream the narrated version of ``response.message`` into ``stream``.

        Sends ``text_done`` at the end and replaces ``response.message`` with
        the full text.
        """

    @abstractmethod
    async def generate_image(
        self,
        session: GameSession,
        api_key: str,
        response: GameSessionMessage,
        prompt: str,
        stream: Stream,
        on_image: ImageCallback | None = None,
    ) -> bytes:
        """Separate request for a scene illustration.

        Every partial and the final image go to ``stream`` and ``on_image``.
        Returns the final image bytes.
        """

    async def generate_audio(
        self,
        session: GameSession,
        api_key: str,
        text: str,
        stream: Stream,
    ) -> bytes | None:
        """Narration audio. Platforms without text-to-speech return None."""
        return None

    @abstractmethod
    async def translate(
        self, api_key: str, documents: list[str], target_language: str
    ) -> tuple[str, TokenUsage]:
        """Stateless single-shot translation; returns a JSON object string."""

    # ------------------------------------------------------------------
    # Conversation state
    # ------------------------------------------------------------------

    def load_state(self, session: GameSession) -> dict[str, Any]:
        """Decode this adapter's blob, or {} if the session holds none of ours."""
        envelope = session.ai_session
        if envelope is None or not envelope.blob:
            return {}
        if envelope.platform != self.id or envelope.version != self.state_version:
            logger.info(
                "session %s: conversation state belongs to %s v%d, starting fresh on %s",
                session.id, envelope.platform, envelope.version, self.id,
            )
            return {}
        try:
            state = json.loads(envelope.blob)
        except json.JSONDecodeError:
            logger.warning("session %s: unreadable conversation state, starting fresh", session.id)
            return {}
        return state if isinstance(state, dict) else {}

    def store_state(self, session: GameSession, state: dict[str, Any]) -> None:
        session.ai_session = AiSession(
            platform=self.id, version=self.state_version, blob=json.dumps(state),
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self, api_key: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _status_error(self, status: int, body: str) -> AiError:
        code = ErrorCode.INVALID_API_KEY if status == 401 else None
        return AiError(f"{self.platform.name} returned HTTP {status}: {body}", code=code)

    async def _request(
        self, method: str, path: str, api_key: str, body: dict[str, Any] | None = None
    ) -> httpx.Response:
        try:
            resp = await self._http().request(
                method, self._url(path), json=body, headers=self._headers(api_key),
            )
        except httpx.TimeoutException as e:
            raise AiError(f"{self.platform.name} timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise AiError(f"Cannot connect to {self.platform.name} at {self._base_url}: {e}") from e
        if resp.status_code >= 400:
            raise self._status_error(resp.status_code, resp.text)
        return resp

    async def _post_json(self, path: str, api_key: str, body: dict[str, Any]) -> dict[str, Any]:
        resp = await self._request("POST", path, api_key, body)
        try:
            data = resp.json()
        except ValueError as e:
            raise AiError(f"{self.platform.name} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise AiError(f"{self.platform.name} returned unexpected JSON")
        return data

    async def _get_bytes(self, path: str, api_key: str) -> bytes:
        resp = await self._request("GET", path, api_key)
        return resp.content

    @asynccontextmanager
    async def _open_stream(
        self, path: str, api_key: str, body: dict[str, Any]
    ) -> AsyncIterator[httpx.Response]:
        try:
            async with self._http().stream(
                "POST", self._url(path), json=body, headers=self._headers(api_key),
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise self._status_error(resp.status_code, resp.text)
                yield resp
        except httpx.TimeoutException as e:
            raise AiError(f"{self.platform.name} stream timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise AiError(f"{self.platform.name} stream failed: {e}") from e

    async def _sse_events(
        self, path: str, api_key: str, body: dict[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        """POST ``body`` and yield each JSON ``data:`` event of the SSE reply."""
        async with self._open_stream(path, api_key, body) as resp:
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("%s: skipping unparseable SSE line", self.id)
                    continue
                if isinstance(event, dict):
                    yield event

    # ------------------------------------------------------------------
    # Shared result handling
    # ------------------------------------------------------------------

    def apply_game_output(
        self,
        session: GameSession,
        action: GameSessionMessage,
        response: GameSessionMessage,
        raw: str,
    ) -> None:
        """Parse the structured text-step output into ``response``.

        Raises MalformedAiResponse (after recording the raw text) when the
        output does not fit the schema.
        """
        response.raw_response = raw
        parsed = parse_game_response(raw, session.status_fields, action.status_fields or None)
        response.message = parsed.message
        response.status_fields = parsed.status_fields
        response.image_prompt = parsed.image_prompt

    def emit_image(
        self,
        response: GameSessionMessage,
        stream: Stream,
        on_image: ImageCallback | None,
        data: bytes,
        complete: bool,
    ) -> None:
        if on_image is not None:
            on_image(data, complete)
        stream.send_image(data, done=complete)
        if complete:
            response.image = data
