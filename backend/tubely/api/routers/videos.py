import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from tubely.api.deps import get_assets, get_current_user, get_db, get_storage
from tubely.core.config import get_settings
from tubely.models import User, Video
from tubely.schemas import VideoCreate, VideoRead
from tubely.services import videos as video_service
from tubely.services.storage import LocalAssetStorage, SignError, StorageService
from tubely.services.upload import BadRequestError, parse_video_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/videos", tags=["videos"])


def present_video(storage: StorageService, video: Video) -> VideoRead:
    settings = get_settings()
    try:
        return video_service.sign_video(storage, video, settings.signed_url_ttl_seconds)
    except SignError as exc:
        logger.exception("Couldn't sign URL for video %s", video.id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Couldn't convert video to signed URL",
        ) from exc


async def _get_owned_video(session: AsyncSession, user: User, video_id: str) -> Video:
    try:
        video_id = parse_video_id(video_id)
    except BadRequestError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc

    video = await video_service.get_video(session, video_id)
    if not video:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    if video.owner_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You don't have permission to access this video",
        )
    return video


@router.post("", response_model=VideoRead, status_code=status.HTTP_201_CREATED)
async def create_video(
    payload: VideoCreate,
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> VideoRead:
    video = await video_service.create_video(
        session, user.id, payload.title, payload.description
    )
    return VideoRead.model_validate(video)


@router.get("", response_model=list[VideoRead])
async def list_videos(
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    storage: StorageService = Depends(get_storage),
) -> list[VideoRead]:
    videos = await video_service.list_videos_for_user(session, user.id)
    return [present_video(storage, video) for video in videos]


@router.get("/{video_id}", response_model=VideoRead)
async def get_video(
    video_id: str,
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    storage: StorageService = Depends(get_storage),
) -> VideoRead:
    video = await _get_owned_video(session, user, video_id)
    return present_video(storage, video)


@router.delete("/{video_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_video(
    video_id: str,
    session: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    assets: LocalAssetStorage = Depends(get_assets),
) -> Response:
    video = await _get_owned_video(session, user, video_id)
    thumbnail_key = assets.key_for_url(video.thumbnail_url)
    await video_service.delete_video(session, video)
    if thumbnail_key:
        assets.delete(thumbnail_key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
