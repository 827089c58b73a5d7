"""
Process Endpoint - Batch Dispatch

POST /api/v1/process - Submit uploaded images for compositing:
1. Validate the submission (no session is created on failure)
2. Create a session and schedule the batch in the background
3. Return the session id for status polling
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from src.api.dependencies import get_dispatcher, require_api_key
from src.core.config import settings
from src.core.exceptions import ValidationError
from src.core.logging import get_logger, LogContext
from src.core.storage import IStorage, get_storage
from src.engines.compositing.schemas import BackgroundSpec, CamelModel, Dimensions, FileTask
from src.pipeline.dispatcher import BatchDispatcher

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class ProcessRequest(CamelModel):
    """Batch submission, as returned by the upload endpoint."""
    files: List[FileTask] = Field(default_factory=list)
    background_file: Optional[FileTask] = None
    background_dimensions: Optional[Dimensions] = None


class ProcessResponse(CamelModel):
    success: bool = True
    message: str
    total_images: int
    session_id: str


def validate_submission(request: ProcessRequest, storage: IStorage) -> BackgroundSpec:
    """Reject malformed submissions; return the background spec."""
    if not request.files:
        raise ValidationError("No files to process")
    if request.background_file is None:
        raise ValidationError("No background image specified")
    if len(request.files) > settings.MAX_FOREGROUND_FILES:
        raise ValidationError(
            f"Too many images: {len(request.files)} (max {settings.MAX_FOREGROUND_FILES})"
        )

    for item in [*request.files, request.background_file]:
        if not storage.is_upload_path(item.path):
            raise ValidationError(
                f"File {item.original_name} is not an uploaded file",
                details={"path": item.path}
            )

    dimensions = request.background_dimensions
    return BackgroundSpec(
        path=request.background_file.path,
        original_name=request.background_file.original_name,
        width=dimensions.width if dimensions else None,
        height=dimensions.height if dimensions else None
    )


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=ProcessResponse)
async def process_batch(
    request: ProcessRequest,
    storage: IStorage = Depends(get_storage),
    dispatcher: BatchDispatcher = Depends(get_dispatcher)
):
    """
    Start compositing a batch; returns before processing completes.

    Poll /api/v1/status with the returned session id for progress.
    """
    background = validate_submission(request, storage)
    require_api_key()

    session_id = await dispatcher.submit(
        request.files,
        background,
        chunk_size=settings.CHUNK_SIZE,
        worker_width=settings.CONCURRENCY_LIMIT,
        pixel_budget=settings.pixel_budget
    )

    with LogContext(session_id=session_id, stage="submit"):
        logger.info(
            "batch_submitted",
            total_images=len(request.files),
            background=background.original_name
        )

    return ProcessResponse(
        message=f"Started processing {len(request.files)} images",
        total_images=len(request.files),
        session_id=session_id
    )
