from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from tubely.api.deps import (
    get_current_user,
    get_db,
    get_storage,
    get_thumbnail_pipeline,
    get_video_pipeline,
)
from tubely.api.routers.videos import present_video
from tubely.models import User
from tubely.schemas import VideoRead
from tubely.services.storage import StorageService
from tubely.services.upload import ThumbnailUploadPipeline, UploadError, VideoUploadPipeline

router = APIRouter(prefix="/api", tags=["uploads"])


def _content_length(request: Request) -> int | None:
    value = request.headers.get("content-length")
    if not value or not value.isdigit():
        return None
    return int(value)


def _require_file(upload: UploadFile | None) -> UploadFile:
    if upload is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Couldn't parse form")
    return upload


@router.post("/video_upload/{video_id}", response_model=VideoRead)
async def upload_video(
    video_id: str,
    request: Request,
    video: UploadFile | None = File(default=None),
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    pipeline: VideoUploadPipeline = Depends(get_video_pipeline),
    storage: StorageService = Depends(get_storage),
) -> VideoRead:
    upload = _require_file(video)
    try:
        record = await pipeline.run(
            session,
            user.id,
            video_id,
            upload,
            upload.content_type,
            _content_length(request),
        )
    except UploadError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    finally:
        await upload.close()
    return present_video(storage, record)


@router.post("/thumbnail_upload/{video_id}", response_model=VideoRead)
async def upload_thumbnail(
    video_id: str,
    request: Request,
    thumbnail: UploadFile | None = File(default=None),
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    pipeline: ThumbnailUploadPipeline = Depends(get_thumbnail_pipeline),
    storage: StorageService = Depends(get_storage),
) -> VideoRead:
    upload = _require_file(thumbnail)
    try:
        record = await pipeline.run(
            session,
            user.id,
            video_id,
            upload,
            upload.content_type,
            _content_length(request),
        )
    except UploadError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    finally:
        await upload.close()
    return present_video(storage, record)
