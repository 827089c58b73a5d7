"""
Download Endpoint

GET /api/v1/download/{session_id} - Zip of every composited image

Once the bundle is sent the session is expired after a short grace delay.
"""

import asyncio
import tempfile
import zipfile
from datetime import date
from pathlib import Path
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import StreamingResponse

from src.api.dependencies import get_session_store
from src.core.config import settings
from src.core.exceptions import ResourceMissingError
from src.core.logging import get_logger, LogContext
from src.core.storage import IStorage, get_storage
from src.engines.compositing.sessions import SessionStore

logger = get_logger(__name__)
router = APIRouter()


# Archives larger than this spill from memory to a temp file
SPOOL_MAX_BYTES = 8 * 1024 * 1024
STREAM_CHUNK_BYTES = 1024 * 1024


def build_zip(paths: List[Path]) -> tempfile.SpooledTemporaryFile:
    """Write the archive to a spooled file, rewound for reading."""
    spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES)
    try:
        with zipfile.ZipFile(spool, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as archive:
            for path in paths:
                archive.write(path, arcname=path.name)
        spool.seek(0)
    except BaseException:
        spool.close()
        raise
    return spool


async def iter_archive(spool, chunk_size: int = STREAM_CHUNK_BYTES):
    """Stream the archive in chunks; the spool is closed when done."""
    try:
        while True:
            chunk = await asyncio.to_thread(spool.read, chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        spool.close()


async def schedule_cleanup(store: SessionStore, session_id: str, delay: float):
    """Runs after the response body is sent."""
    store.schedule_expire(session_id, delay)


@router.get("/{session_id}")
async def download_results(
    session_id: str,
    background_tasks: BackgroundTasks,
    storage: IStorage = Depends(get_storage),
    store: SessionStore = Depends(get_session_store)
):
    """Bundle the session's outputs into a zip download."""
    with LogContext(session_id=session_id, stage="download"):
        outputs = await storage.list_outputs(session_id)
        if outputs is None:
            raise ResourceMissingError("Session not found or expired", session_id=session_id)
        if not outputs:
            raise ResourceMissingError("No files found in session", session_id=session_id)

        archive = await asyncio.to_thread(build_zip, outputs)
        logger.info("zip_download_ready", files=len(outputs))

    background_tasks.add_task(
        schedule_cleanup, store, session_id, settings.DOWNLOAD_CLEANUP_DELAY_SECONDS
    )

    filename = f"processed-images-{date.today().isoformat()}.zip"
    return StreamingResponse(
        iter_archive(archive),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )
