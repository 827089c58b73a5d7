"""
Batch Dispatcher

Runs one submitted batch to completion:
- Chunks are processed strictly in order
- Tasks within a chunk run concurrently, bounded by a worker semaphore
- Resizing runs on a separate thread pool, outside the worker slots
- Every task ends with exactly one outcome, success or failure
"""

import asyncio
import contextvars
import functools
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Set

from src.core.exceptions import CompositorBaseException, LocalIOError, ResourceMissingError
from src.core.logging import get_logger, LogContext
from src.core.metrics import (
    active_batches_gauge,
    batch_duration_seconds,
    record_image_outcome,
    track_chunk_latency
)
from src.core.storage import IStorage
from src.engines.compositing.background import load_background
from src.engines.compositing.client import CompositingClient
from src.engines.compositing.fitting import fit_image
from src.engines.compositing.retry import RetryExecutor
from src.engines.compositing.schemas import BackgroundSpec, FileTask, FittedBackground, Outcome
from src.engines.compositing.sessions import SessionStore

logger = get_logger(__name__)


def output_name(original_name: str) -> str:
    return f"composited-{original_name}"


def describe_error(error: BaseException) -> str:
    """Human-readable cause recorded on a failed outcome."""
    if isinstance(error, CompositorBaseException):
        return error.message
    return str(error) or type(error).__name__


def chunked(items: Sequence, size: int) -> List[Sequence]:
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchDispatcher:
    """
    Drives background loading, fitting, remote calls and session updates.

    One dispatcher serves every batch of the process; each run() gets its
    own worker semaphore.
    """

    def __init__(
        self,
        store: SessionStore,
        sink: IStorage,
        client: CompositingClient,
        retry: RetryExecutor,
        resize_workers: int = 2,
        background_loader: Callable[[BackgroundSpec, int], FittedBackground] = load_background
    ):
        self.store = store
        self.sink = sink
        self.client = client
        self.retry = retry
        self._load_background = background_loader
        self._resize_pool = ThreadPoolExecutor(
            max_workers=resize_workers,
            thread_name_prefix="resize"
        )
        self._batches: Set[asyncio.Task] = set()

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(
        self,
        tasks: List[FileTask],
        background: BackgroundSpec,
        chunk_size: int = 10,
        worker_width: int = 3,
        pixel_budget: int = 4_500_000
    ) -> str:
        """
        Create a session and schedule the batch; returns before processing.

        Progress is only observable through the session store.
        """
        if chunk_size < 1 or worker_width < 1:
            raise ValueError("chunk_size and worker_width must be at least 1")

        session_id = await self.store.create(len(tasks))
        batch = asyncio.create_task(
            self.run(
                tasks,
                background,
                session_id,
                chunk_size=chunk_size,
                worker_width=worker_width,
                pixel_budget=pixel_budget
            ),
            name=f"batch-{session_id}"
        )
        self._batches.add(batch)
        batch.add_done_callback(self._batches.discard)
        return session_id

    async def wait_idle(self):
        """Wait for every scheduled batch to finish."""
        while self._batches:
            await asyncio.gather(*list(self._batches), return_exceptions=True)

    def close(self):
        self._resize_pool.shutdown(wait=False, cancel_futures=True)

    # =========================================================================
    # Batch
    # =========================================================================

    async def run(
        self,
        tasks: List[FileTask],
        background: BackgroundSpec,
        session_id: str,
        chunk_size: int = 10,
        worker_width: int = 3,
        pixel_budget: int = 4_500_000
    ):
        with LogContext(session_id=session_id, stage="dispatch"):
            chunks = chunked(tasks, chunk_size)
            limiter = asyncio.Semaphore(worker_width)
            start_time = time.time()
            active_batches_gauge.inc()

            logger.info(
                "batch_started",
                total_images=len(tasks),
                concurrency=worker_width,
                chunk_size=chunk_size,
                max_attempts=self.retry.max_attempts
            )

            try:
                for index, chunk in enumerate(chunks, start=1):
                    await self._run_chunk(chunk, index, len(chunks), background, session_id, limiter, pixel_budget)
            except Exception as e:
                logger.error("batch_aborted", error=str(e), error_type=type(e).__name__)
                raise
            finally:
                await self.store.finish(session_id)
                await self._cleanup_sources(tasks, background)
                active_batches_gauge.dec()
                batch_duration_seconds.observe(time.time() - start_time)

            view = await self.store.get(session_id)
            succeeded = sum(1 for r in view.results if r.success)
            logger.info(
                "batch_completed",
                successful=succeeded,
                failed=len(view.results) - succeeded,
                duration_seconds=round(time.time() - start_time, 2)
            )

    async def _run_chunk(
        self,
        chunk: Sequence[FileTask],
        index: int,
        total_chunks: int,
        background: BackgroundSpec,
        session_id: str,
        limiter: asyncio.Semaphore,
        pixel_budget: int
    ):
        logger.info("chunk_started", chunk=index, total_chunks=total_chunks, images=len(chunk))

        try:
            fitted: Optional[FittedBackground] = await self._in_pool(
                self._load_background, background, pixel_budget
            )
        except Exception as e:
            cause = describe_error(e)
            if not isinstance(e, LocalIOError):
                cause = f"Failed to load background image: {cause}"
            logger.error("chunk_background_failed", chunk=index, error=cause)
            for task in chunk:
                await self._record(session_id, task.original_name, Outcome(
                    file=task.original_name, success=False, error=cause
                ), in_flight=False)
            return

        with track_chunk_latency():
            await asyncio.gather(*(
                self._process_task(task, fitted, session_id, limiter) for task in chunk
            ))

        # Release the chunk's background buffer before the next load
        fitted = None

        view = await self.store.get(session_id)
        logger.info(
            "chunk_completed",
            chunk=index,
            total_chunks=total_chunks,
            processed_images=view.processed_images,
            total_images=view.total_images
        )

    # =========================================================================
    # Task
    # =========================================================================

    async def _process_task(
        self,
        task: FileTask,
        fitted: FittedBackground,
        session_id: str,
        limiter: asyncio.Semaphore
    ):
        name = task.original_name

        try:
            foreground = await self._in_pool(
                fit_image, task.path, fitted.pixel_budget, fitted.final_width, fitted.final_height
            )
        except Exception as e:
            cause = f"Failed to prepare image: {describe_error(e)}"
            await self._record(session_id, name, Outcome(file=name, success=False, error=cause), in_flight=False)
            return

        async with limiter:
            await self.store.mark_in_flight(session_id, name)
            outcome = Outcome(file=name, success=False, error="Processing interrupted")
            try:
                composited = await self.retry.execute(
                    functools.partial(self.client.composite, foreground, fitted.buffer),
                    context=f"Processing {name}"
                )
                if session_id not in self.store:
                    raise ResourceMissingError("Session expired before output was saved", stage="write")
                try:
                    saved_to = await self.sink.write_output(session_id, output_name(name), composited)
                except OSError as e:
                    raise LocalIOError(f"Failed to save output: {e}", stage="write") from e
                outcome = Outcome(file=name, success=True, saved_to=saved_to)
            except Exception as e:
                outcome = Outcome(file=name, success=False, error=describe_error(e))
            finally:
                await self._record(session_id, name, outcome, in_flight=True)

    async def _record(self, session_id: str, name: str, outcome: Outcome, in_flight: bool):
        if in_flight:
            await self.store.complete_task(session_id, name, outcome)
        else:
            await self.store.append_result(session_id, outcome)

        record_image_outcome(outcome.success)
        if outcome.success:
            logger.info("image_processed", file=name)
        else:
            logger.warning("image_failed", file=name, error=outcome.error)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _in_pool(self, fn, *args):
        """Run blocking work on the resize pool, keeping the log context."""
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        return await loop.run_in_executor(self._resize_pool, functools.partial(ctx.run, fn, *args))

    async def _cleanup_sources(self, tasks: Sequence[FileTask], background: BackgroundSpec):
        """Delete every uploaded source once, whatever its outcome."""
        paths = dict.fromkeys([task.path for task in tasks] + [background.path])
        for path in paths:
            try:
                await self.sink.delete_file(path)
            except OSError as e:
                logger.error("source_cleanup_failed", path=path, error=str(e))
