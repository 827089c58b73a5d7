"""
Dimension fitting.

Computes the largest aspect-preserving size that fits both a pixel budget
and an optional bounding box. Only ever downscales.
"""

import io
import math
from pathlib import Path
from typing import Optional

from PIL import Image, ImageOps

from src.core.logging import get_logger
from src.engines.compositing.schemas import FittedSize

logger = get_logger(__name__)


def fit_dimensions(
    width: int,
    height: int,
    max_pixels: int,
    max_width: Optional[int] = None,
    max_height: Optional[int] = None,
) -> FittedSize:
    """
    Fit (width, height) into a pixel budget and optional bounding box.

    The scale is the smallest of the box scale, the pixel scale and 1.0,
    so the result is never larger than the input in either dimension.
    Target dimensions are floored, never below 1px.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")
    if max_pixels <= 0:
        raise ValueError(f"Pixel budget must be positive, got {max_pixels}")

    box_scale = 1.0
    if max_width and max_height:
        box_scale = min(max_width / width, max_height / height)

    pixel_scale = 1.0
    current_pixels = width * height
    if current_pixels > max_pixels:
        pixel_scale = math.sqrt(max_pixels / current_pixels)

    scale = min(box_scale, pixel_scale, 1.0)
    if scale >= 1.0:
        return FittedSize(width=width, height=height, scale=1.0)

    return FittedSize(
        width=max(1, math.floor(width * scale)),
        height=max(1, math.floor(height * scale)),
        scale=scale,
    )


def read_dimensions(path: str) -> tuple:
    """Read (width, height) from an image header without decoding pixels."""
    with Image.open(path) as img:
        return img.size


def fit_image(
    path: str,
    max_pixels: int,
    max_width: Optional[int] = None,
    max_height: Optional[int] = None,
) -> bytes:
    """
    Load an image and downscale it to fit, re-encoding only when needed.

    Returns the file's original bytes untouched when no downscale is
    required. Blocking; run it on the resize pool.
    """
    with Image.open(path) as img:
        width, height = img.size
        source_format = img.format or "PNG"
        target = fit_dimensions(width, height, max_pixels, max_width, max_height)

        if not target.needs_resize:
            return Path(path).read_bytes()

        logger.info(
            "image_downscaling",
            file=Path(path).name,
            original=f"{width}x{height}",
            original_mp=round(width * height / 1_000_000, 2),
            target=f"{target.width}x{target.height}",
            target_mp=round(target.pixels / 1_000_000, 2),
        )

        # Honour EXIF orientation, then shrink inside the target box
        oriented = ImageOps.exif_transpose(img)
        oriented.thumbnail((target.width, target.height), Image.Resampling.LANCZOS)

        if source_format == "JPEG" and oriented.mode not in ("RGB", "L"):
            oriented = oriented.convert("RGB")

        output_buffer = io.BytesIO()
        oriented.save(output_buffer, format=source_format)
        return output_buffer.getvalue()
