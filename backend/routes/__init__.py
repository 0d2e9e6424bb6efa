"""FastAPI API endpoints under /api.

Endpoint groups: sessions (create, read, turn submission, image retry),
messages (SSE stream, image status), platforms (health, catalog).
"""

from fastapi import APIRouter

from .messages import router as messages_router
from .platforms import router as platforms_router
from .sessions import router as sessions_router

router = APIRouter()
router.include_router(platforms_router)
router.include_router(sessions_router)
router.include_router(messages_router)
