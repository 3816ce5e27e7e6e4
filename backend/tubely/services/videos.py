from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tubely.models import Video
from tubely.schemas import VideoRead
from tubely.services.storage import StorageService


async def create_video(
    session: AsyncSession,
    owner_id: str,
    title: str,
    description: str | None = None,
) -> Video:
    video = Video(owner_id=owner_id, title=title, description=description)
    session.add(video)
    await session.commit()
    await session.refresh(video)
    return video


async def get_video(
    session: AsyncSession,
    video_id: str,
    refresh: bool = False,
) -> Video | None:
    return await session.get(Video, video_id, populate_existing=refresh)


async def list_videos_for_user(session: AsyncSession, owner_id: str) -> list[Video]:
    stmt = (
        select(Video)
        .where(Video.owner_id == owner_id)
        .order_by(Video.created_at.desc())
    )
    result = await session.execute(stmt)
    return result.scalars().all()


async def update_video(session: AsyncSession, video: Video) -> Video:
    video.updated_at = datetime.now(timezone.utc)
    session.add(video)
    await session.commit()
    return video


async def delete_video(session: AsyncSession, video: Video) -> None:
    await session.delete(video)
    await session.commit()


def sign_video(storage: StorageService, video: Video, expires_in: int) -> VideoRead:
    """Return the API view of ``video`` with its stored reference signed."""
    read = VideoRead.model_validate(video)
    if video.video_url:
        read.video_url = storage.resolve_reference(video.video_url, expires_in=expires_in)
    return read
