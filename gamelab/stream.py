"""In-process streaming registry.

The orchestrator produces chunks for a game message while it is still being
generated; the SSE handler for that message id drains them. Each Stream is a
single-producer/single-consumer bounded buffer:

  - ``send`` never blocks. When the buffer is full, a partial chunk is
    coalesced into the latest queued partial of the same modality (text is
    concatenated, image/audio replaced by the newer partial). Terminal chunks
    (any ``*_done`` flag or an error) are never dropped.
  - After a modality reports done, further chunks for it are ignored.
  - The stream closes itself once text, image and audio are all done. A
    closed stream stays drainable until empty.

The registry is constructed explicitly (one per app, created in the FastAPI
lifespan) and torn down with ``aclose``. Entries are removed by the consumer
when it finishes, or by the expiry timer when no consumer ever shows up.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator

from gamelab.models import Chunk

logger = logging.getLogger(__name__)

TEXT = "text"
IMAGE = "image"
AUDIO = "audio"
MODALITIES = (TEXT, IMAGE, AUDIO)


def _modalities(chunk: Chunk) -> set[str]:
    found = set()
    if chunk.text or chunk.text_done:
        found.add(TEXT)
    if chunk.image_data is not None or chunk.image_done:
        found.add(IMAGE)
    if chunk.audio_data is not None or chunk.audio_done:
        found.add(AUDIO)
    return found


def _is_terminal(chunk: Chunk) -> bool:
    return bool(chunk.text_done or chunk.image_done or chunk.audio_done or chunk.error)


def _merge(older: Chunk, newer: Chunk, modality: str) -> Chunk:
    if modality == TEXT:
        return older.model_copy(update={"text": older.text + newer.text})
    if modality == IMAGE:
        return older.model_copy(update={"image_data": newer.image_data})
    return older.model_copy(update={"audio_data": newer.audio_data})


class Stream:
    """Bounded chunk buffer for one message id."""

    def __init__(self, message_id: str, buffer_size: int = 100) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.message_id = message_id
        self.buffer_size = buffer_size
        self._buffer: deque[Chunk] = deque()
        self._done: dict[str, bool] = {m: False for m in MODALITIES}
        self._closed = False
        self._wakeup = asyncio.Event()
        self.coalesced = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def is_done(self, modality: str) -> bool:
        return self._done[modality]

    @property
    def all_done(self) -> bool:
        return all(self._done.values())

    def send(self, chunk: Chunk) -> bool:
        """Queue ``chunk`` without blocking. Returns False if it was ignored."""
        if self._closed:
            logger.debug("stream %s: closed, chunk ignored", self.message_id)
            return False

        modalities = _modalities(chunk)
        if not chunk.error and modalities and all(self._done[m] for m in modalities):
            logger.debug("stream %s: %s already done, chunk ignored",
                         self.message_id, "/".join(sorted(modalities)))
            return False

        for flag, modality in ((chunk.text_done, TEXT), (chunk.image_done, IMAGE), (chunk.audio_done, AUDIO)):
            if flag:
                self._done[modality] = True

        if len(self._buffer) >= self.buffer_size and not self._make_room(chunk, modalities):
            self._wakeup.set()
            return True

        self._buffer.append(chunk)
        self._wakeup.set()

        if self.all_done:
            self.close()
        return True

    def _make_room(self, chunk: Chunk, modalities: set[str]) -> bool:
        """Buffer is full. Returns False if ``chunk`` was merged away."""
        self.coalesced += 1

        # A partial folds into the latest queued partial of its modality.
        if not _is_terminal(chunk) and len(modalities) == 1:
            modality = next(iter(modalities))
            for i in range(len(self._buffer) - 1, -1, -1):
                queued = self._buffer[i]
                if not _is_terminal(queued) and _modalities(queued) == modalities:
                    self._buffer[i] = _merge(queued, chunk, modality)
                    return False

        # Otherwise free a slot by merging two adjacent partials of one modality.
        for i in range(len(self._buffer) - 1):
            a, b = self._buffer[i], self._buffer[i + 1]
            mods = _modalities(a)
            if (not _is_terminal(a) and not _is_terminal(b)
                    and len(mods) == 1 and mods == _modalities(b)):
                self._buffer[i] = _merge(a, b, next(iter(mods)))
                del self._buffer[i + 1]
                return True

        # Last resort: drop the oldest image/audio partial (later ones supersede it).
        for i, queued in enumerate(self._buffer):
            if not _is_terminal(queued) and _modalities(queued) & {IMAGE, AUDIO}:
                del self._buffer[i]
                return True

        # Only terminal chunks queued; they are never dropped.
        return True

    def send_text(self, text: str, done: bool = False) -> bool:
        return self.send(Chunk(text=text, text_done=done))

    def send_image(self, data: bytes | None, done: bool = False) -> bool:
        return self.send(Chunk(image_data=data, image_done=done))

    def send_audio(self, data: bytes | None, done: bool = False) -> bool:
        return self.send(Chunk(audio_data=data, audio_done=done))

    def send_error(self, code: str, message: str, **done_flags: bool) -> bool:
        """Send an error chunk, optionally finishing modalities with it."""
        return self.send(Chunk(error=message, error_code=code, **done_flags))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._wakeup.set()

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def pending(self) -> int:
        return len(self._buffer)

    async def get(self) -> Chunk | None:
        """Next chunk, or None once the stream is closed and drained."""
        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self._closed:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()

    async def __aiter__(self) -> AsyncIterator[Chunk]:
        while (chunk := await self.get()) is not None:
            yield chunk


class StreamRegistry:
    """Map of message id to active Stream."""

    def __init__(self, buffer_size: int = 100, timeout: float | None = 300.0) -> None:
        self.buffer_size = buffer_size
        self.timeout = timeout
        self._streams: dict[str, Stream] = {}
        self._expiry: dict[str, asyncio.TimerHandle] = {}

    def register(self, message_id: str) -> Stream:
        """Create and store a stream. An existing one for the id is replaced."""
        if message_id in self._streams:
            self.remove(message_id)
        stream = Stream(message_id, self.buffer_size)
        self._streams[message_id] = stream

        if self.timeout:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                self._expiry[message_id] = loop.call_later(
                    self.timeout, self._expire, message_id, stream
                )
        logger.debug("stream %s: registered", message_id)
        return stream

    def lookup(self, message_id: str) -> Stream | None:
        return self._streams.get(message_id)

    def remove(self, message_id: str) -> bool:
        """Close and forget a stream. Returns False if it was already gone."""
        stream = self._streams.pop(message_id, None)
        handle = self._expiry.pop(message_id, None)
        if handle is not None:
            handle.cancel()
        if stream is None:
            return False
        stream.close()
        logger.debug("stream %s: removed", message_id)
        return True

    def _expire(self, message_id: str, stream: Stream) -> None:
        if self._streams.get(message_id) is stream:
            logger.info("stream %s: expired after %ss", message_id, self.timeout)
            self.remove(message_id)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    async def aclose(self) -> None:
        for message_id in list(self._streams):
            self.remove(message_id)
