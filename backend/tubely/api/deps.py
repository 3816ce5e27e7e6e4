from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from tubely.core.security import TokenError, decode_access_token
from tubely.db.session import get_session_factory
from tubely.models import User
from tubely.services.storage import LocalAssetStorage, StorageService
from tubely.services.upload import ThumbnailUploadPipeline, VideoUploadPipeline

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    session_factory = get_session_factory()
    async with session_factory() as session:
        yield session


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    session: AsyncSession = Depends(get_db),
) -> User:
    try:
        payload = decode_access_token(token)
    except TokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Couldn't validate JWT",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await session.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_assets(request: Request) -> LocalAssetStorage:
    return request.app.state.assets


def get_video_pipeline(request: Request) -> VideoUploadPipeline:
    return request.app.state.video_pipeline


def get_thumbnail_pipeline(request: Request) -> ThumbnailUploadPipeline:
    return request.app.state.thumbnail_pipeline
