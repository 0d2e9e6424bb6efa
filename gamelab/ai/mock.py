"""Offline mock platform for development and tests.

Produces schema-shaped turns with random status values, streams lorem ipsum
narration a few words at a time, renders a tiny solid-colour PNG (one partial
then the final) and a single silent MP3 frame. No network, no API key needed.
"""

from __future__ import annotations

import asyncio
import json
import random
import struct
import zlib
from typing import Any

from gamelab import catalog
from gamelab.ai.base import AiPlatformAdapter, ImageCallback
from gamelab.models import GameSession, GameSessionMessage, TokenUsage
from gamelab.stream import Stream
from gamelab.templates import narrate_prompt, schema_json

LOREM = (
    "Lorem ipsum dolor sit amet, consectetur adipiscing elit, sed do eiusmod "
    "tempor incididunt ut labore et dolore magna aliqua. Ut enim ad minim veniam, "
    "quis nostrud exercitation ullamco laboris nisi ut aliquip ex ea commodo consequat."
).split()

STATUS_VALUES = ("Low", "Medium", "High", "Newcomer", "Veteran", "Calm", "Tense", "Wounded")

WORDS_PER_CHUNK = 3

# MPEG-1 Layer III frame header, 128 kbit/s, 44.1 kHz, followed by silence
MP3_FRAME = bytes([0xFF, 0xFB, 0x90, 0x00]) + bytes(8)


def _png_chunk(kind: bytes, data: bytes) -> bytes:
    body = kind + data
    return struct.pack(">I", len(data)) + body + struct.pack(">I", zlib.crc32(body) & 0xFFFFFFFF)


def solid_png(rgb: tuple[int, int, int], size: int = 8) -> bytes:
    """Minimal truecolour PNG filled with one colour."""
    row = b"\x00" + bytes(rgb) * size
    return (
        b"\x89PNG\r\n\x1a\n"
        + _png_chunk(b"IHDR", struct.pack(">IIBBBBB", size, size, 8, 2, 0, 0, 0))
        + _png_chunk(b"IDAT", zlib.compress(row * size))
        + _png_chunk(b"IEND", b"")
    )


def _usage(text_in: str, text_out: str) -> TokenUsage:
    i, o = len(text_in.split()), len(text_out.split())
    return TokenUsage(input_tokens=i, output_tokens=o, total_tokens=i + o)


class MockPlatform(AiPlatformAdapter):
    """Deterministic when given a seeded ``rng``.

    ``delay`` is the pause between streamed chunks in seconds.
    """

    platform = catalog.MOCK_PLATFORM

    def __init__(self, rng: random.Random | None = None, delay: float = 0.05, **kwargs: Any) -> None:
        super().__init__("", **kwargs)
        self._rng = rng or random.Random()
        self.delay = delay

    async def _pause(self) -> None:
        if self.delay > 0:
            await asyncio.sleep(self.delay)

    def _status_value(self, name: str) -> str:
        if name.lower() in ("health", "hp"):
            return f"{self._rng.randint(1, 100)}/100"
        return self._rng.choice(STATUS_VALUES)

    def _words(self, count: int) -> str:
        start = self._rng.randrange(len(LOREM))
        return " ".join(LOREM[(start + i) % len(LOREM)] for i in range(count))

    async def execute_action(
        self,
        session: GameSession,
        api_key: str,
        action: GameSessionMessage,
        response: GameSessionMessage,
        schema: dict[str, Any],
    ) -> TokenUsage:
        status = {f.name: self._status_value(f.name) for f in session.status_fields}
        raw = json.dumps({
            "message": self._words(12).capitalize() + ".",
            "status": status,
            "imagePrompt": self._words(6),
        })
        response.prompt_status_update = action.to_ai_json()
        response.prompt_response_schema = schema_json(schema)

        state = self.load_state(session)
        turn = 0 if action.type == "system" else state.get("turn", 0) + 1
        self.apply_game_output(session, action, response, raw)
        self.store_state(session, {"turn": turn})
        await self._pause()
        return _usage(action.message, raw)

    async def expand_story(
        self,
        session: GameSession,
        api_key: str,
        response: GameSessionMessage,
        stream: Stream,
    ) -> TokenUsage:
        response.prompt_expand_story = narrate_prompt(session.language)
        words = [response.message] + LOREM[: self._rng.randint(12, len(LOREM))]
        sent: list[str] = []
        for i in range(0, len(words), WORDS_PER_CHUNK):
            piece = " ".join(words[i:i + WORDS_PER_CHUNK])
            piece = piece if not sent else " " + piece
            sent.append(piece)
            stream.send_text(piece)
            await self._pause()
        stream.send_text("", done=True)
        response.message = "".join(sent)
        return _usage(response.prompt_expand_story, response.message)

    async def generate_image(
        self,
        session: GameSession,
        api_key: str,
        response: GameSessionMessage,
        prompt: str,
        stream: Stream,
        on_image: ImageCallback | None = None,
    ) -> bytes:
        colour = tuple(self._rng.randrange(256) for _ in range(3))
        partial = solid_png((colour[0] // 2, colour[1] // 2, colour[2] // 2))
        self.emit_image(response, stream, on_image, partial, False)
        await self._pause()
        final = solid_png(colour)
        self.emit_image(response, stream, on_image, final, True)
        return final

    async def generate_audio(
        self,
        session: GameSession,
        api_key: str,
        text: str,
        stream: Stream,
    ) -> bytes | None:
        await self._pause()
        stream.send_audio(MP3_FRAME, done=True)
        return MP3_FRAME

    async def translate(
        self, api_key: str, documents: list[str], target_language: str
    ) -> tuple[str, TokenUsage]:
        """Echo the input documents merged into one object."""
        merged: dict[str, Any] = {}
        for doc in documents:
            merged.update(json.loads(doc))
        text = json.dumps(merged, ensure_ascii=False)
        await self._pause()
        return text, _usage(" ".join(documents), text)
