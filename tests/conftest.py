import itertools
import pytest
from pathlib import Path
from typing import AsyncGenerator, Callable

from httpx import AsyncClient, ASGITransport

from src.core.config import settings
from src.core.storage import LocalStorage, StorageFactory
from src.main import app
from tests.utils import FakeCompositor, encode_image


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(
        upload_dir=str(tmp_path / "uploads"),
        output_dir=str(tmp_path / "sessions")
    )


@pytest.fixture
def make_upload(storage) -> Callable[..., Path]:
    """Write an image straight into the upload area."""
    counter = itertools.count()

    def _make(name: str = None, size=(40, 30), fmt="PNG", data: bytes = None) -> Path:
        name = name or f"image-{next(counter):03d}.png"
        path = storage.upload_dir / name
        path.write_bytes(data if data is not None else encode_image(size, fmt))
        return path

    return _make


@pytest.fixture
async def client(tmp_path, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    monkeypatch.setattr(settings, "COMPOSITING_API_KEY", "test-key")
    monkeypatch.setattr(settings, "RETRY_BASE_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "DOWNLOAD_CLEANUP_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(
        StorageFactory,
        "_instance",
        LocalStorage(str(tmp_path / "uploads"), str(tmp_path / "sessions"))
    )

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        await app.state.dispatcher.client.aclose()
        app.state.dispatcher.client = FakeCompositor()
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
