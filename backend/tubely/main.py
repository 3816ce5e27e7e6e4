from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from tubely.core.config import get_settings
from tubely.services.media import FFmpegToolkit
from tubely.services.storage import get_asset_storage, get_storage_service
from tubely.services.upload import ThumbnailUploadPipeline, VideoUploadPipeline
from tubely.api.routers import auth as auth_router
from tubely.api.routers import uploads as uploads_router
from tubely.api.routers import videos as videos_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    storage = get_storage_service()
    assets = get_asset_storage()
    app.state.storage = storage
    app.state.assets = assets
    app.state.video_pipeline = VideoUploadPipeline(storage, FFmpegToolkit(settings), settings)
    app.state.thumbnail_pipeline = ThumbnailUploadPipeline(assets, settings)
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        debug=settings.debug,
        title="Tubely API",
        lifespan=lifespan,
    )

    app.include_router(auth_router.router)
    app.include_router(videos_router.router)
    app.include_router(uploads_router.router)

    assets_dir = Path(settings.assets_dir)
    assets_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/assets", StaticFiles(directory=assets_dir), name="assets")

    return app


app = create_app()
