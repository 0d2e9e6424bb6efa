"""Session creation, lookup and turn submission endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends, Header, HTTPException

from gamelab.errors import NotFound
from gamelab.models import GameSessionMessage
from gamelab.orchestrator import TurnOrchestrator
from gamelab.storage import Storage

from .deps import get_orchestrator, get_storage, message_json
from .models import CreateSessionBody, SessionActionBody

router = APIRouter()


@router.post("/games/{game_id}/sessions")
async def create_session(
    game_id: str,
    body: CreateSessionBody | None = None,
    user_id: str = Header(alias="X-User-Id"),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    """Start a session of a game. The opening scene comes from a following intro."""
    body = body or CreateSessionBody()
    session = await orchestrator.create_session(
        user_id, game_id, body.private_share_hash, body.language,
    )
    return session.model_dump(mode="json", by_alias=True)


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    messages: Literal["none", "latest", "all"] = "none",
    storage: Storage = Depends(get_storage),
):
    """Get a session, optionally with its latest or all messages."""
    session = storage.get_session(session_id)
    if session is None:
        raise NotFound(f"Session {session_id} not found")
    result = session.model_dump(mode="json", by_alias=True)
    if messages == "all":
        result["messages"] = [message_json(m) for m in storage.get_messages(session_id)]
    elif messages == "latest":
        latest = storage.get_latest_message(session_id)
        result["messages"] = [message_json(latest)] if latest else []
    return result


@router.post("/sessions/{session_id}")
async def submit_action(
    session_id: str,
    body: SessionActionBody,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    """Submit a turn. Returns the game message whose id names the SSE stream."""
    if body.action == "intro":
        action = GameSessionMessage(session_id=session_id, type="system")
    else:
        if not body.message or not body.message.strip():
            raise HTTPException(400, "message is required for player-action")
        action = GameSessionMessage(session_id=session_id, type="player", message=body.message)
    response = await orchestrator.do_session_action(session_id, action)
    return message_json(response)


@router.post("/sessions/{session_id}/messages/{message_id}/image")
async def retry_image(
    session_id: str,
    message_id: str,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    """Regenerate a missing image for a game message."""
    message = await orchestrator.retry_image_generation(session_id, message_id)
    return message_json(message)
