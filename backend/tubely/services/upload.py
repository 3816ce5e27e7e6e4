from __future__ import annotations

import asyncio
import logging
import os
import secrets
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tubely.core.config import Settings, get_settings
from tubely.models import Video
from tubely.services import videos as video_service
from tubely.services.media import (
    MediaToolkit,
    ProbeError,
    TranscodeError,
    classify_aspect,
)
from tubely.services.storage import (
    LocalAssetStorage,
    StorageService,
    StoreError,
    generate_object_key,
)

logger = logging.getLogger(__name__)

VIDEO_MEDIA_TYPES = frozenset({"video/mp4"})
THUMBNAIL_MEDIA_TYPES = frozenset({"image/jpeg", "image/png"})


class UploadError(Exception):
    """Base class for upload failures; carries an HTTP status and a public message."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequestError(UploadError):
    status_code = 400


class ForbiddenError(UploadError):
    status_code = 403


class NotFoundError(UploadError):
    status_code = 404


class PayloadTooLargeError(UploadError):
    status_code = 413


class InternalUploadError(UploadError):
    status_code = 500


class UploadState(str, Enum):
    RECEIVED = "received"
    STAGED = "staged"
    PROBED = "probed"
    TRANSCODED = "transcoded"
    UPLOADED = "uploaded"
    COMMITTED = "committed"
    ABORTED = "aborted"


class UploadSource(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


def parse_video_id(value: str) -> str:
    try:
        return str(UUID(value))
    except (TypeError, ValueError):
        raise BadRequestError("Invalid ID") from None


def parse_media_type(value: str | None) -> str:
    """Strip parameters from a Content-Type value and lower-case it."""
    if not value:
        raise BadRequestError("Couldn't parse media type")
    media_type = value.split(";", 1)[0].strip().lower()
    maintype, sep, subtype = media_type.partition("/")
    if not sep or not maintype or not subtype or "/" in subtype or " " in media_type:
        raise BadRequestError("Couldn't parse media type")
    return media_type


def check_media_type(value: str | None, allowed: frozenset[str]) -> str:
    media_type = parse_media_type(value)
    if media_type not in allowed:
        raise BadRequestError("Invalid media type")
    return media_type


def check_declared_size(content_length: int | None, max_bytes: int) -> None:
    if content_length is not None and content_length > max_bytes:
        raise PayloadTooLargeError("Upload exceeds the maximum allowed size")


async def load_owned_video(
    session: AsyncSession,
    video_id: str,
    user_id: str,
    *,
    refresh: bool = False,
    target: str = "video",
) -> Video:
    video = await video_service.get_video(session, video_id, refresh=refresh)
    if video is None:
        raise NotFoundError("Video not found")
    if video.owner_id != user_id:
        raise ForbiddenError(f"You don't have permission to upload this {target}")
    return video


async def copy_upload(
    source: UploadSource,
    destination: Path,
    max_bytes: int,
    chunk_size: int,
) -> int:
    """Stream ``source`` into ``destination`` without buffering it whole."""
    written = 0
    with destination.open("wb") as f:
        while True:
            chunk = await source.read(chunk_size)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                raise PayloadTooLargeError("Upload exceeds the maximum allowed size")
            await asyncio.to_thread(f.write, chunk)
    return written


async def commit_video(session: AsyncSession, video: Video) -> Video:
    # rollback expires the instance, so its id cannot be read afterwards
    video_id = video.id
    try:
        return await video_service.update_video(session, video)
    except SQLAlchemyError as exc:
        logger.exception("Failed to update video %s", video_id)
        await session.rollback()
        raise InternalUploadError("Couldn't update video") from exc


@dataclass
class _VideoUpload:
    video_id: str
    media_type: str
    state: UploadState = UploadState.RECEIVED
    staged_path: Path | None = None
    processed_path: Path | None = None

    def advance(self, state: UploadState) -> None:
        logger.debug("Video %s upload: %s -> %s", self.video_id, self.state.value, state.value)
        self.state = state

    def cleanup(self) -> None:
        for path in (self.processed_path, self.staged_path):
            if path is not None:
                path.unlink(missing_ok=True)


class VideoUploadPipeline:
    """Stages, probes, remuxes and stores an uploaded video, then records it."""

    allowed_media_types = VIDEO_MEDIA_TYPES

    def __init__(
        self,
        storage: StorageService,
        media: MediaToolkit,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.storage = storage
        self.media = media
        self.max_bytes = self.settings.max_video_upload_bytes
        self.chunk_size = self.settings.upload_chunk_size
        self.tmp_dir = self.settings.upload_tmp_dir

    async def run(
        self,
        session: AsyncSession,
        user_id: str,
        video_id: str,
        source: UploadSource,
        content_type: str | None,
        content_length: int | None = None,
    ) -> Video:
        video_id = parse_video_id(video_id)
        media_type = check_media_type(content_type, self.allowed_media_types)
        check_declared_size(content_length, self.max_bytes)
        await load_owned_video(session, video_id, user_id)

        logger.info("Uploading video %s by user %s", video_id, user_id)
        upload = _VideoUpload(video_id=video_id, media_type=media_type)
        try:
            await self._stage(upload, source)
            partition = await self._probe(upload)
            await self._transcode(upload)
            reference = await self._store(upload, partition)

            video = await load_owned_video(session, video_id, user_id, refresh=True)
            video.video_url = reference
            video = await commit_video(session, video)
            upload.advance(UploadState.COMMITTED)
        except BaseException:
            upload.advance(UploadState.ABORTED)
            raise
        finally:
            upload.cleanup()

        logger.info("Video %s stored as %s", video_id, reference)
        return video

    async def _stage(self, upload: _VideoUpload, source: UploadSource) -> None:
        try:
            fd, name = tempfile.mkstemp(prefix="tubely-upload-", suffix=".mp4", dir=self.tmp_dir)
        except OSError as exc:
            logger.exception("Couldn't create temp file for video %s", upload.video_id)
            raise InternalUploadError("Couldn't create temp file") from exc
        os.close(fd)
        upload.staged_path = Path(name)

        try:
            size = await copy_upload(source, upload.staged_path, self.max_bytes, self.chunk_size)
        except OSError as exc:
            logger.exception("Couldn't stage upload for video %s", upload.video_id)
            raise InternalUploadError("Couldn't copy file") from exc
        logger.debug("Staged %d bytes for video %s", size, upload.video_id)
        upload.advance(UploadState.STAGED)

    async def _probe(self, upload: _VideoUpload) -> str:
        try:
            dimensions = await asyncio.to_thread(self.media.probe, upload.staged_path)
        except ProbeError as exc:
            logger.error(
                "Probe failed for video %s: %s; stderr: %s",
                upload.video_id,
                exc,
                exc.stderr.strip(),
            )
            raise InternalUploadError("Couldn't get video aspect ratio") from exc
        upload.advance(UploadState.PROBED)
        return classify_aspect(dimensions.width, dimensions.height)

    async def _transcode(self, upload: _VideoUpload) -> None:
        try:
            upload.processed_path = await asyncio.to_thread(
                self.media.remux_faststart, upload.staged_path
            )
        except TranscodeError as exc:
            logger.error(
                "Fast-start remux failed for video %s: %s; stderr: %s",
                upload.video_id,
                exc,
                exc.stderr.strip(),
            )
            raise InternalUploadError("Couldn't process video") from exc
        upload.advance(UploadState.TRANSCODED)

    async def _store(self, upload: _VideoUpload, partition: str) -> str:
        extension = upload.media_type.split("/", 1)[1]
        key = generate_object_key(partition, extension)
        try:
            await self.storage.put_file(key, upload.processed_path, upload.media_type)
        except (StoreError, OSError) as exc:
            logger.exception("Couldn't upload video %s to %s", upload.video_id, key)
            raise InternalUploadError("Couldn't upload file") from exc
        upload.advance(UploadState.UPLOADED)
        return self.storage.make_reference(key)


class ThumbnailUploadPipeline:
    """Writes an uploaded image into the asset directory and records its URL."""

    allowed_media_types = THUMBNAIL_MEDIA_TYPES

    def __init__(self, assets: LocalAssetStorage, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.assets = assets
        self.max_bytes = self.settings.max_thumbnail_upload_bytes
        self.chunk_size = self.settings.upload_chunk_size

    async def run(
        self,
        session: AsyncSession,
        user_id: str,
        video_id: str,
        source: UploadSource,
        content_type: str | None,
        content_length: int | None = None,
    ) -> Video:
        video_id = parse_video_id(video_id)
        media_type = check_media_type(content_type, self.allowed_media_types)
        check_declared_size(content_length, self.max_bytes)
        await load_owned_video(session, video_id, user_id, target="thumbnail")

        logger.info("Uploading thumbnail for video %s by user %s", video_id, user_id)
        key = f"{secrets.token_urlsafe(32)}.{media_type.split('/', 1)[1]}"
        try:
            target = self.assets.path_for(key)
            await copy_upload(source, target, self.max_bytes, self.chunk_size)

            video = await load_owned_video(
                session, video_id, user_id, refresh=True, target="thumbnail"
            )
            previous_key = self.assets.key_for_url(video.thumbnail_url)
            video.thumbnail_url = self.assets.public_url(key)
            video = await commit_video(session, video)
        except OSError as exc:
            self.assets.delete(key)
            logger.exception("Couldn't save thumbnail for video %s", video_id)
            raise InternalUploadError("Couldn't save thumbnail") from exc
        except BaseException:
            self.assets.delete(key)
            raise

        if previous_key and previous_key != key:
            self.assets.delete(previous_key)
        return video
