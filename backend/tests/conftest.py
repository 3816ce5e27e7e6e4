import importlib
import os
import shutil
import sys
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tubely.core.config import get_settings
from tubely.db.base import Base
from tubely.db import session as db_session
from tubely.services import storage as storage_service
from tubely.services.media import Dimensions, processed_path_for
from tubely.services.upload import ThumbnailUploadPipeline, VideoUploadPipeline


class DummyStorage(storage_service.StorageService):
    def __init__(self) -> None:  # type: ignore[super-init-not-called]
        self.settings = get_settings()
        self.bucket = "dummy"
        self.objects: dict[str, tuple[str, bytes]] = {}
        self.fail_uploads = False

    def create_presigned_get(self, key: str, expires_in: int = 900, bucket: str | None = None) -> str:  # type: ignore[override]
        return f"https://example.com/get/{bucket or self.bucket}/{key}?expires={expires_in}"

    async def put_file(self, key, path, content_type):  # type: ignore[override]
        if self.fail_uploads:
            raise storage_service.StoreError("upload refused")
        self.objects[key] = (content_type, Path(path).read_bytes())


class FakeMediaToolkit:
    """Stands in for ffprobe/ffmpeg; records the files it was handed."""

    def __init__(self) -> None:
        self.dimensions = Dimensions(1920, 1080)
        self.probe_error: Exception | None = None
        self.remux_error: Exception | None = None
        self.probed: list[Path] = []
        self.remuxed: list[Path] = []

    def probe(self, path: Path) -> Dimensions:
        self.probed.append(path)
        if self.probe_error:
            raise self.probe_error
        return self.dimensions

    def remux_faststart(self, path: Path) -> Path:
        self.remuxed.append(path)
        if self.remux_error:
            raise self.remux_error
        output = processed_path_for(path)
        shutil.copyfile(path, output)
        return output


@pytest.fixture(scope="session", autouse=True)
def configure_environment(tmp_path_factory):
    base = tmp_path_factory.mktemp("tubely")
    (base / "uploads").mkdir()
    os.environ["ENV"] = "test"
    os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{base / 'test.db'}"
    os.environ["JWT_SECRET_KEY"] = "test-secret"
    os.environ["S3_ACCESS_KEY"] = "test"
    os.environ["S3_SECRET_KEY"] = "test"
    os.environ["S3_BUCKET"] = "test-bucket"
    os.environ["S3_REGION"] = "us-east-1"
    os.environ["UPLOAD_TMP_DIR"] = str(base / "uploads")
    os.environ["ASSETS_DIR"] = str(base / "assets")
    os.environ["PUBLIC_BASE_URL"] = "http://testserver"
    get_settings.cache_clear()
    db_session.reset_session_factory()
    storage_service.reset_storage_service()


@pytest.fixture(scope="session")
def app_instance(configure_environment):
    from tubely import main as app_module

    importlib.reload(app_module)
    return app_module.app


@pytest.fixture(autouse=True)
def collaborators(app_instance):
    # Setup state for tests, mimicking lifespan events
    settings = get_settings()
    storage = DummyStorage()
    media = FakeMediaToolkit()
    assets = storage_service.get_asset_storage()
    app_instance.state.storage = storage
    app_instance.state.assets = assets
    app_instance.state.video_pipeline = VideoUploadPipeline(storage, media, settings)
    app_instance.state.thumbnail_pipeline = ThumbnailUploadPipeline(assets, settings)
    return storage, media


@pytest.fixture
def storage(collaborators) -> DummyStorage:
    return collaborators[0]


@pytest.fixture
def media(collaborators) -> FakeMediaToolkit:
    return collaborators[1]


@pytest.fixture
def upload_tmp_dir() -> Path:
    return Path(get_settings().upload_tmp_dir)


@pytest_asyncio.fixture(scope="session", autouse=True)
async def prepare_database(app_instance):
    engine = db_session.get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client(app_instance):
    transport = ASGITransport(app=app_instance)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def register_user(client):
    """Register and log in a fresh user, returning (user_id, auth headers)."""

    async def _register() -> tuple[str, dict[str, str]]:
        email = f"user-{uuid4().hex[:12]}@example.com"
        register_resp = await client.post(
            "/auth/register",
            json={"email": email, "password": "Password123"},
        )
        assert register_resp.status_code == 201
        login_resp = await client.post(
            "/auth/login",
            data={"username": email, "password": "Password123"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert login_resp.status_code == 200
        token = login_resp.json()["access_token"]
        return register_resp.json()["id"], {"Authorization": f"Bearer {token}"}

    return _register


@pytest.fixture
def create_video(client):
    async def _create(headers: dict[str, str], title: str = "Boots demo") -> dict:
        resp = await client.post(
            "/api/videos",
            json={"title": title, "description": "A short clip"},
            headers=headers,
        )
        assert resp.status_code == 201
        return resp.json()

    return _create
