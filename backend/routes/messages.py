"""Message stream (SSE) and image status endpoints."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response, StreamingResponse

from gamelab.imagecache import ImageCache
from gamelab.orchestrator import TurnOrchestrator
from gamelab.stream import StreamRegistry

from .deps import get_image_cache, get_orchestrator, get_streams

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/messages/{message_id}/stream")
async def stream_message(
    message_id: str,
    streams: StreamRegistry = Depends(get_streams),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    """Server-sent events for a game message: text, image and audio chunks.

    A client that disconnects before every modality finished cancels the
    background work for the message; what was already persisted stays.
    """
    stream = streams.lookup(message_id)
    if stream is None:
        raise HTTPException(404, "Stream not found")

    async def event_stream():
        try:
            async for chunk in stream:
                yield f"data: {json.dumps(chunk.to_event())}\n\n"
        finally:
            streams.remove(message_id)
            if not stream.all_done and orchestrator.cancel_turn(message_id):
                logger.info("stream %s: client went away, turn cancelled", message_id)
            logger.debug("stream %s: consumer finished", message_id)

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/messages/{message_id}/status")
async def message_status(message_id: str, cache: ImageCache = Depends(get_image_cache)):
    """Image generation progress for clients that poll instead of streaming."""
    status = cache.status(message_id)
    return {
        "exists": status.exists,
        "hash": status.hash,
        "complete": status.complete,
        "error": status.error,
        "errorCode": status.error_code,
    }


@router.get("/messages/{message_id}/image")
async def message_image(message_id: str, cache: ImageCache = Depends(get_image_cache)):
    """The latest (possibly partial) image while it is being generated."""
    image = cache.image(message_id)
    if image is None:
        raise HTTPException(404, "Image not found")
    return Response(content=image, media_type="image/png")
