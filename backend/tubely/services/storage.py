import asyncio
import logging
import secrets
from pathlib import Path

import boto3
from boto3.exceptions import Boto3Error
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from tubely.core.config import get_settings

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when an object cannot be written to the object store."""


class SignError(Exception):
    """Raised when a stored reference cannot be turned into a signed URL."""


def generate_object_key(prefix: str, extension: str) -> str:
    ext = extension.lstrip(".")
    return f"{prefix}/{secrets.token_urlsafe(32)}.{ext}"


def parse_reference(reference: str) -> tuple[str, str]:
    bucket, sep, key = reference.partition(",")
    if not sep or not bucket or not key:
        raise SignError(f"Invalid video reference: {reference!r}")
    return bucket, key


class StorageService:
    """S3-compatible object store holding processed videos."""

    def __init__(self) -> None:
        self.settings = get_settings()
        session = boto3.session.Session()
        self.client = session.client(
            "s3",
            endpoint_url=str(self.settings.s3_endpoint) if self.settings.s3_endpoint else None,
            aws_access_key_id=self.settings.s3_access_key,
            aws_secret_access_key=self.settings.s3_secret_key,
            region_name=self.settings.s3_region,
            config=Config(signature_version="s3v4"),
        )
        self.bucket = self.settings.s3_bucket

    def make_reference(self, key: str) -> str:
        return f"{self.bucket},{key}"

    def create_presigned_get(
        self,
        key: str,
        expires_in: int = 900,
        bucket: str | None = None,
    ) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket or self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise SignError(f"Failed to presign {key}: {exc}") from exc

    def resolve_reference(self, reference: str, expires_in: int = 900) -> str:
        bucket, key = parse_reference(reference)
        return self.create_presigned_get(key, expires_in=expires_in, bucket=bucket)

    async def put_file(self, key: str, path: Path, content_type: str) -> None:
        def _upload() -> None:
            with path.open("rb") as f:
                self.client.upload_fileobj(
                    f,
                    self.bucket,
                    key,
                    ExtraArgs={"ContentType": content_type},
                )

        try:
            await asyncio.to_thread(_upload)
        except (BotoCoreError, ClientError, Boto3Error) as exc:
            raise StoreError(f"Failed to upload {key}: {exc}") from exc
        logger.info("Uploaded %s to bucket %s", key, self.bucket)


class LocalAssetStorage:
    """Filesystem directory served under /assets, used for thumbnails."""

    def __init__(self) -> None:
        self.settings = get_settings()
        self.base_path = Path(self.settings.assets_dir).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _key_path(self, key: str) -> Path:
        # Prevent directory traversal by resolving inside base path
        candidate = self.base_path.joinpath(*Path(key).parts).resolve()
        if not candidate.is_relative_to(self.base_path):
            raise ValueError("Invalid asset key")
        return candidate

    def path_for(self, key: str) -> Path:
        target = self._key_path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        return target

    def delete(self, key: str) -> None:
        self._key_path(key).unlink(missing_ok=True)

    def public_url(self, key: str) -> str:
        base = self.settings.public_base_url.rstrip("/")
        return f"{base}/assets/{key}"

    def key_for_url(self, url: str | None) -> str | None:
        """Return the asset key behind a URL produced by ``public_url``."""
        prefix = self.public_url("")
        if not url or not url.startswith(prefix):
            return None
        return url.removeprefix(prefix) or None


_storage_service: StorageService | None = None
_asset_storage: LocalAssetStorage | None = None


def get_storage_service() -> StorageService:
    global _storage_service
    if _storage_service is None:
        _storage_service = StorageService()
    return _storage_service


def get_asset_storage() -> LocalAssetStorage:
    global _asset_storage
    if _asset_storage is None:
        _asset_storage = LocalAssetStorage()
    return _asset_storage


def reset_storage_service() -> None:
    global _storage_service, _asset_storage
    _storage_service = None
    _asset_storage = None
