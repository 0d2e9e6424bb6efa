"""Request-scoped accessors for the engine objects created in ``create_app``."""

from fastapi import Request

from gamelab.imagecache import ImageCache
from gamelab.models import GameSessionMessage
from gamelab.orchestrator import TurnOrchestrator
from gamelab.storage import Storage
from gamelab.stream import StreamRegistry


def get_orchestrator(request: Request) -> TurnOrchestrator:
    return request.app.state.orchestrator


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_streams(request: Request) -> StreamRegistry:
    return request.app.state.streams


def get_image_cache(request: Request) -> ImageCache:
    return request.app.state.image_cache


def message_json(message: GameSessionMessage) -> dict:
    """Wire form of a message; media bytes travel over the stream instead."""
    return message.model_dump(mode="json", by_alias=True, exclude={"image", "audio"})
