"""Health check and AI platform catalog endpoints."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/platforms")
async def list_platforms(request: Request):
    """List AI platforms and their quality tiers."""
    return [p.model_dump(by_alias=True) for p in request.app.state.platforms.infos()]
