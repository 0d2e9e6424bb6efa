import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.routes import router
from gamelab.ai import PlatformRegistry, default_registry
from gamelab.config import Settings, load_settings
from gamelab.errors import GameLabError
from gamelab.imagecache import ImageCache
from gamelab.locks import SessionLocks
from gamelab.orchestrator import TurnOrchestrator
from gamelab.storage import Storage
from gamelab.stream import StreamRegistry

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = 60.0  # seconds between image cache sweeps


async def _sweep_image_cache(cache: ImageCache) -> None:
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL)
        cache.cleanup()


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = asyncio.create_task(_sweep_image_cache(app.state.image_cache))
    try:
        yield
    finally:
        sweeper.cancel()
        await app.state.orchestrator.aclose()
        await app.state.streams.aclose()
        await app.state.platforms.aclose()


def create_app(
    data_dir: Path | None = None,
    settings: Settings | None = None,
    platforms: PlatformRegistry | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    if data_dir is not None:
        settings = settings.model_copy(update={"data_dir": data_dir})

    storage = Storage(settings.data_dir)
    platforms = platforms or default_registry(settings)
    streams = StreamRegistry(settings.stream_buffer_size, settings.stream_timeout)
    image_cache = ImageCache(settings.image_cache_max_age)

    app = FastAPI(title="Game Lab", lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = storage
    app.state.platforms = platforms
    app.state.streams = streams
    app.state.image_cache = image_cache
    app.state.orchestrator = TurnOrchestrator(
        storage, platforms, streams, SessionLocks(), image_cache, settings,
    )
    app.include_router(router, prefix="/api")

    @app.exception_handler(GameLabError)
    async def gamelab_error(request: Request, exc: GameLabError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc), "errorCode": exc.code.value},
        )

    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
