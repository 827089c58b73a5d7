"""
Upload Endpoint

POST /api/v1/upload - Store foreground images and one background
"""

from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import Field

from src.core.config import settings
from src.core.exceptions import ValidationError
from src.core.logging import get_logger
from src.core.storage import IStorage, get_storage
from src.engines.compositing.schemas import CamelModel, FileTask

logger = get_logger(__name__)
router = APIRouter()

# Formats the compositing API accepts
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp"}


class UploadResponse(CamelModel):
    success: bool = True
    message: str
    files: List[FileTask] = Field(default_factory=list)
    background_file: FileTask


async def _read_checked(upload: UploadFile) -> bytes:
    if upload.content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationError(
            "Invalid file type. Only JPEG, PNG, and WebP images are allowed.",
            details={"file": upload.filename, "content_type": upload.content_type}
        )

    data = await upload.read()
    if len(data) > settings.MAX_UPLOAD_SIZE_BYTES:
        raise ValidationError(
            f"File {upload.filename} exceeds the "
            f"{settings.MAX_UPLOAD_SIZE_BYTES // (1024 * 1024)}MB limit",
            details={"file": upload.filename, "size": len(data)}
        )
    return data


async def _store(storage: IStorage, upload: UploadFile, data: bytes) -> FileTask:
    original_name = Path(upload.filename or "image").name
    path = await storage.save_upload(data, original_name)
    return FileTask(
        id=Path(path).stem,
        original_name=original_name,
        filename=Path(path).name,
        path=path,
        size=len(data),
        mimetype=upload.content_type
    )


@router.post("", response_model=UploadResponse, response_model_by_alias=True)
async def upload_images(
    images: List[UploadFile] = File(default=[]),
    background: Optional[UploadFile] = File(default=None),
    storage: IStorage = Depends(get_storage)
):
    """
    Store uploaded foreground images and the shared background.

    Every file is checked before any is written, so a rejected upload
    leaves nothing behind.
    """
    if not images:
        raise ValidationError("No foreground images uploaded")
    if background is None:
        raise ValidationError("No background image uploaded")
    if len(images) > settings.MAX_FOREGROUND_FILES:
        raise ValidationError(
            f"Too many images: {len(images)} (max {settings.MAX_FOREGROUND_FILES})"
        )

    foreground_data = [await _read_checked(image) for image in images]
    background_data = await _read_checked(background)

    files = [
        await _store(storage, image, data)
        for image, data in zip(images, foreground_data)
    ]
    background_file = await _store(storage, background, background_data)

    logger.info("images_uploaded", foreground=len(files), background=background_file.original_name)

    return UploadResponse(
        message=f"{len(files)} foreground image(s) and 1 background uploaded successfully",
        files=files,
        background_file=background_file
    )
