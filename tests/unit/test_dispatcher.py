import asyncio
import pytest
from pathlib import Path
from unittest.mock import AsyncMock

from src.core.exceptions import PermanentRemoteError, TransientRemoteError
from src.engines.compositing.background import load_background
from src.engines.compositing.retry import RetryExecutor
from src.engines.compositing.schemas import BackgroundSpec, FileTask
from src.engines.compositing.sessions import SessionStore
from src.pipeline.dispatcher import BatchDispatcher, chunked, output_name
from tests.utils import FakeCompositor, encode_image


class RecordingCompositor(FakeCompositor):
    """Records concurrency and progress seen at each call."""

    def __init__(self, store: SessionStore, index_by_bytes: dict):
        super().__init__()
        self.store = store
        self.index_by_bytes = index_by_bytes
        self.session_id = None
        self.active = 0
        self.max_active = 0
        self.max_in_flight = 0
        self.progress_at_call = []

    async def composite(self, foreground: bytes, background: bytes) -> bytes:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        view = await self.store.get(self.session_id)
        self.max_in_flight = max(self.max_in_flight, len(view.in_flight))
        self.progress_at_call.append((self.index_by_bytes[foreground], view.processed_images))
        await asyncio.sleep(0.005)
        self.active -= 1
        return await super().composite(foreground, background)


@pytest.fixture
def store(storage) -> SessionStore:
    return SessionStore(storage)


@pytest.fixture
def make_dispatcher(store, storage):
    created = []

    def _make(client, **kwargs) -> BatchDispatcher:
        retry = RetryExecutor(max_attempts=3, base_delay=2.0, sleep=AsyncMock())
        dispatcher = BatchDispatcher(store, storage, client, retry, **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield _make

    for dispatcher in created:
        dispatcher.close()


@pytest.fixture
def background(make_upload) -> BackgroundSpec:
    path = make_upload(name="background.png", size=(200, 150))
    return BackgroundSpec(path=str(path), width=200, height=150)


def make_tasks(make_upload, count: int):
    """Distinct tasks whose bytes map back to their index."""
    tasks, index_by_bytes = [], {}
    for i in range(count):
        data = encode_image((40 + i, 30))
        path = make_upload(name=f"image-{i:03d}.png", data=data)
        tasks.append(FileTask(original_name=path.name, filename=path.name, path=str(path)))
        index_by_bytes[data] = i
    return tasks, index_by_bytes


def test_chunked_keeps_order_and_remainder():
    assert chunked(list(range(25)), 10) == [list(range(10)), list(range(10, 20)), list(range(20, 25))]
    with pytest.raises(ValueError):
        chunked([1], 0)


@pytest.mark.asyncio
async def test_batch_respects_width_and_chunk_order(store, storage, make_dispatcher, make_upload, background):
    # Arrange
    tasks, index_by_bytes = make_tasks(make_upload, 25)
    client = RecordingCompositor(store, index_by_bytes)
    dispatcher = make_dispatcher(client)
    session_id = await store.create(len(tasks))
    client.session_id = session_id

    # Act
    await dispatcher.run(tasks, background, session_id, chunk_size=10, worker_width=3)

    # Assert
    assert client.calls == 25
    assert client.max_active <= 3
    assert client.max_in_flight <= 3
    for index, processed in client.progress_at_call:
        assert processed >= 10 * (index // 10)

    view = await store.get(session_id)
    assert view.processed_images == view.total_images == 25
    assert view.is_processing is False
    assert view.in_flight == []
    assert all(result.success for result in view.results)

    outputs = await storage.list_outputs(session_id)
    assert len(outputs) == 25
    assert {p.name for p in outputs} == {output_name(t.original_name) for t in tasks}
    assert not any(Path(t.path).exists() for t in tasks)
    assert not Path(background.path).exists()


@pytest.mark.asyncio
async def test_one_permanent_failure_does_not_stop_siblings(store, make_dispatcher, make_upload, background):
    tasks, index_by_bytes = make_tasks(make_upload, 10)
    client = FakeCompositor()
    failing = next(data for data, index in index_by_bytes.items() if index == 4)

    async def composite(foreground, background_bytes):
        client.calls += 1
        if foreground == failing:
            raise PermanentRemoteError("Compositing API: image_file is not a product photo", http_status=400)
        return client.result

    client.composite = composite
    dispatcher = make_dispatcher(client)
    session_id = await store.create(len(tasks))

    await dispatcher.run(tasks, background, session_id, chunk_size=10, worker_width=3)

    view = await store.get(session_id)
    failures = [r for r in view.results if not r.success]
    assert view.processed_images == 10
    assert sum(1 for r in view.results if r.success) == 9
    assert [r.file for r in failures] == ["image-004.png"]
    assert failures[0].error == "Compositing API: image_file is not a product photo"
    assert client.calls == 10


@pytest.mark.asyncio
async def test_transient_error_is_retried_then_succeeds(store, make_dispatcher, make_upload, background):
    tasks, _ = make_tasks(make_upload, 3)
    client = FakeCompositor()
    attempts = []

    async def composite(foreground, background_bytes):
        attempts.append(foreground)
        if len(attempts) == 1:
            raise TransientRemoteError("HTTP 429", http_status=429)
        return client.result

    client.composite = composite
    dispatcher = make_dispatcher(client)
    session_id = await store.create(len(tasks))

    await dispatcher.run(tasks, background, session_id, chunk_size=10, worker_width=1)

    view = await store.get(session_id)
    assert all(r.success for r in view.results)
    assert len(attempts) == 4
    dispatcher.retry._sleep.assert_awaited_once_with(4.0)


@pytest.mark.asyncio
async def test_background_failure_fails_only_its_chunk(store, make_dispatcher, make_upload, background):
    # Arrange
    tasks, _ = make_tasks(make_upload, 15)
    client = FakeCompositor()
    loads = []

    def flaky_loader(spec, pixel_budget):
        loads.append(spec.path)
        if len(loads) == 1:
            raise OSError("disk unavailable")
        return load_background(spec, pixel_budget)

    dispatcher = make_dispatcher(client, background_loader=flaky_loader)
    session_id = await store.create(len(tasks))

    # Act
    await dispatcher.run(tasks, background, session_id, chunk_size=10, worker_width=3)

    # Assert
    view = await store.get(session_id)
    failed = [r for r in view.results if not r.success]
    assert view.processed_images == 15
    assert len(failed) == 10
    assert {r.error for r in failed} == {"Failed to load background image: disk unavailable"}
    assert {r.file for r in failed} == {t.original_name for t in tasks[:10]}
    assert client.calls == 5
    assert len(loads) == 2


@pytest.mark.asyncio
async def test_unreadable_foreground_fails_before_taking_a_slot(store, make_dispatcher, make_upload, background):
    path = make_upload(name="broken.png", data=b"not really a png")
    tasks = [FileTask(original_name="broken.png", path=str(path))]
    client = FakeCompositor()
    dispatcher = make_dispatcher(client)
    session_id = await store.create(1)

    await dispatcher.run(tasks, background, session_id)

    view = await store.get(session_id)
    assert view.results[0].success is False
    assert view.results[0].error.startswith("Failed to prepare image")
    assert view.in_flight == []
    assert client.calls == 0


@pytest.mark.asyncio
async def test_each_source_is_deleted_once(store, storage, make_dispatcher, make_upload, background, monkeypatch):
    path = make_upload(name="shared.png")
    tasks = [
        FileTask(original_name="shared.png", path=str(path)),
        FileTask(original_name="shared.png", path=str(path)),
    ]
    delete_file = AsyncMock(wraps=storage.delete_file)
    monkeypatch.setattr(storage, "delete_file", delete_file)
    dispatcher = make_dispatcher(FakeCompositor())
    session_id = await store.create(len(tasks))

    await dispatcher.run(tasks, background, session_id)

    deleted = [call.args[0] for call in delete_file.await_args_list]
    assert sorted(deleted) == sorted([str(path), background.path])
    assert (await store.get(session_id)).processed_images == 2


@pytest.mark.asyncio
async def test_submit_returns_before_processing(store, make_dispatcher, make_upload, background):
    # Arrange
    tasks, _ = make_tasks(make_upload, 4)
    release = asyncio.Event()
    client = FakeCompositor()

    async def composite(foreground, background_bytes):
        await release.wait()
        client.calls += 1
        return client.result

    client.composite = composite
    dispatcher = make_dispatcher(client)

    # Act
    session_id = await dispatcher.submit(tasks, background, chunk_size=10, worker_width=2)
    early = await store.get(session_id)
    release.set()
    await dispatcher.wait_idle()

    # Assert
    assert early.is_processing is True
    assert early.processed_images == 0
    assert early.total_images == 4
    final = await store.get(session_id)
    assert final.processed_images == 4
    assert final.is_processing is False


@pytest.mark.asyncio
async def test_submit_rejects_zero_width(store, make_dispatcher, background):
    dispatcher = make_dispatcher(FakeCompositor())

    with pytest.raises(ValueError):
        await dispatcher.submit([], background, worker_width=0)

    assert len(store) == 0


@pytest.mark.asyncio
async def test_session_expired_mid_task_leaves_no_output(store, storage, make_dispatcher, make_upload, background):
    # Arrange
    tasks, _ = make_tasks(make_upload, 1)
    started, release = asyncio.Event(), asyncio.Event()
    client = FakeCompositor()

    async def composite(foreground, background_bytes):
        client.calls += 1
        started.set()
        await release.wait()
        return client.result

    client.composite = composite
    dispatcher = make_dispatcher(client)
    session_id = await dispatcher.submit(tasks, background)
    await started.wait()

    # Act
    await store.expire(session_id)
    release.set()
    await dispatcher.wait_idle()

    # Assert
    assert client.calls == 1
    assert session_id not in store
    assert await storage.list_outputs(session_id) is None
    assert not Path(tasks[0].path).exists()
