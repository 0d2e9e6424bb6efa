"""In-memory cache of images while they are being generated.

Clients that missed the SSE stream (or reload the page) poll the message
status endpoint; it answers from here until the final image is persisted.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAX_ENTRY_AGE = 300.0  # seconds

ImageSaver = Callable[[str, bytes], None]


def compute_hash(data: bytes | None) -> str:
    """First 8 bytes of the md5 as hex; enough for change detection."""
    if not data:
        return ""
    return hashlib.md5(data).hexdigest()[:16]


@dataclass
class CacheEntry:
    message_id: str
    image: bytes | None = None
    hash: str = ""
    complete: bool = False
    error_code: str = ""
    error: str = ""
    saver: ImageSaver | None = None
    created_at: float = field(default_factory=time.monotonic)
    updated_at: float = field(default_factory=time.monotonic)


class ImageStatus(BaseModel):
    exists: bool = False
    hash: str = ""
    complete: bool = False
    has_error: bool = False
    error_code: str = ""
    error: str = ""


class ImageCache:
    def __init__(self, max_age: float = MAX_ENTRY_AGE, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_age = max_age
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def create(self, message_id: str, saver: ImageSaver | None = None) -> None:
        now = self._clock()
        self._entries[message_id] = CacheEntry(
            message_id=message_id, saver=saver, created_at=now, updated_at=now,
        )

    def _entry(self, message_id: str) -> CacheEntry:
        entry = self._entries.get(message_id)
        if entry is None:
            now = self._clock()
            entry = CacheEntry(message_id=message_id, created_at=now, updated_at=now)
            self._entries[message_id] = entry
        return entry

    def update(self, message_id: str, image: bytes, complete: bool = False) -> str:
        """Store the latest image bytes and return their hash.

        A complete image is handed to the entry's saver and then evicted.
        """
        entry = self._entry(message_id)
        entry.image = image
        entry.hash = compute_hash(image)
        entry.complete = complete
        entry.updated_at = self._clock()

        if complete and entry.saver is not None:
            entry.saver(message_id, image)
            self.remove(message_id)
        return entry.hash

    def set_error(self, message_id: str, code: str, message: str) -> None:
        entry = self._entry(message_id)
        entry.error_code = code
        entry.error = message
        entry.updated_at = self._clock()

    def status(self, message_id: str) -> ImageStatus:
        entry = self._entries.get(message_id)
        if entry is None:
            return ImageStatus()
        return ImageStatus(
            exists=True,
            hash=entry.hash,
            complete=entry.complete,
            has_error=bool(entry.error_code),
            error_code=entry.error_code,
            error=entry.error,
        )

    def image(self, message_id: str) -> bytes | None:
        entry = self._entries.get(message_id)
        if entry is None or not entry.image:
            return None
        return entry.image

    def remove(self, message_id: str) -> None:
        self._entries.pop(message_id, None)

    def cleanup(self) -> int:
        """Drop entries older than ``max_age``. Returns how many were dropped."""
        now = self._clock()
        stale = [mid for mid, e in self._entries.items() if now - e.created_at > self.max_age]
        for mid in stale:
            del self._entries[mid]
        if stale:
            logger.debug("image cache: dropped %d stale entries", len(stale))
        return len(stale)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._entries
