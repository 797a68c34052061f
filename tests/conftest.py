import io
import os
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Callable, Tuple

# Settings are read at import time: pin direct mode and scratch directories first
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="photobooth-tests-"))
os.environ["REDIS_URL"] = ""
os.environ["GEMINI_API_KEY"] = ""
os.environ["UPLOADS_DIR"] = str(_TEST_ROOT / "uploads")
os.environ["ASSETS_DIR"] = str(_TEST_ROOT / "assets")
os.environ["LOG_FORMAT_JSON"] = "false"
os.environ["ENVIRONMENT"] = "test"

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from photobooth.api.dependencies import get_dispatcher
from photobooth.core.storage import LocalStorage, get_storage
from photobooth.main import app
from photobooth.modules.jobs.backends import DirectExecutionBackend
from photobooth.modules.jobs.dispatcher import JobDispatcher
from photobooth.modules.jobs.models import JobMode
from photobooth.modules.jobs.store import InMemoryJobStatusStore
from photobooth.pipeline.runner import PhotoJobRunner
from photobooth.pipeline.stages import ImageCompositor

GREEN = (0, 200, 0)
SUBJECT = (200, 40, 40)


def image_bytes(size: Tuple[int, int], color, fmt: str = "JPEG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def write_green_screen_photo(path: Path, size: Tuple[int, int] = (40, 60)) -> Path:
    """Green backdrop with a solid red block in the middle, saved losslessly."""
    image = Image.new("RGB", size, GREEN)
    width, height = size
    image.paste(SUBJECT, (width // 4, height // 4, 3 * width // 4, 3 * height // 4))
    path.parent.mkdir(parents=True, exist_ok=True)
    image.save(path, format="PNG")
    return path


def write_backdrop(storage: LocalStorage, mode: JobMode, background_id: str,
                   ext: str = ".jpg", size: Tuple[int, int] = (200, 150), color=(30, 30, 120)) -> Path:
    path = storage.backgrounds_dir(mode) / f"{background_id}{ext}"
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path)
    return path


class FakeEnhancer:
    """Stands in for the Gemini client: returns a fixed image or raises."""

    def __init__(self, error: Exception = None, output_size: Tuple[int, int] = (64, 48)):
        self.error = error
        self.output = image_bytes(output_size, (10, 120, 200), fmt="PNG")
        self.calls = []

    def enhance(self, composited_image_path, mode):
        self.calls.append((Path(composited_image_path), mode))
        if self.error:
            raise self.error
        return self.output


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    storage = LocalStorage(tmp_path / "uploads", tmp_path / "assets")
    storage.ensure_directories()
    return storage


@pytest.fixture
def backdrop_factory(storage) -> Callable[..., Path]:
    def factory(mode: JobMode = JobMode.STADIUM, background_id: str = "wankhede", **kwargs) -> Path:
        return write_backdrop(storage, mode, background_id, **kwargs)
    return factory


@pytest.fixture
def enhancer() -> FakeEnhancer:
    return FakeEnhancer()


@pytest.fixture
def runner(storage, enhancer) -> PhotoJobRunner:
    return PhotoJobRunner(storage, ImageCompositor(storage), enhancer)


@pytest.fixture
def app_storage() -> LocalStorage:
    """The storage the running app serves from."""
    storage = get_storage()
    storage.ensure_directories()
    return storage


@pytest.fixture
def app_enhancer() -> FakeEnhancer:
    return FakeEnhancer()


@pytest.fixture
def app_dispatcher(app_storage, app_enhancer) -> JobDispatcher:
    runner = PhotoJobRunner(app_storage, ImageCompositor(app_storage), app_enhancer)
    return JobDispatcher(DirectExecutionBackend(InMemoryJobStatusStore(app_storage), runner))


@pytest.fixture
async def client(app_dispatcher) -> AsyncGenerator[AsyncClient, None]:
    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        app.dependency_overrides[get_dispatcher] = lambda: app_dispatcher
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                yield ac
        finally:
            app.dependency_overrides.clear()
