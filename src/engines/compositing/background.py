"""
Shared background loading.

The dispatcher loads the background once per chunk: a failed load only
degrades that chunk, and the buffer is released when the chunk finishes.
"""

from PIL import Image

from src.core.exceptions import LocalIOError
from src.core.logging import get_logger, with_logging
from src.engines.compositing.fitting import fit_dimensions, fit_image, read_dimensions
from src.engines.compositing.schemas import BackgroundSpec, FittedBackground

logger = get_logger(__name__)


@with_logging("background_load")
def load_background(spec: BackgroundSpec, pixel_budget: int) -> FittedBackground:
    """
    Compute the shared output box and fit the background into it.

    The box is the background's native size fitted to the pixel budget with
    no bounding box; every foreground of the chunk is later fitted into the
    same box. Blocking; run it on the resize pool.

    Raises:
        LocalIOError: if the background cannot be read or re-encoded
    """
    try:
        if spec.width and spec.height:
            native_width, native_height = spec.width, spec.height
        else:
            native_width, native_height = read_dimensions(spec.path)

        box = fit_dimensions(native_width, native_height, pixel_budget)
        buffer = fit_image(spec.path, pixel_budget, box.width, box.height)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise LocalIOError(
            f"Failed to load background image: {e}",
            path=spec.path,
            stage="background_load"
        ) from e

    logger.info(
        "background_loaded",
        output_box=f"{box.width}x{box.height}",
        buffer_size=len(buffer),
        pixel_budget=pixel_budget
    )

    return FittedBackground(
        buffer=buffer,
        final_width=box.width,
        final_height=box.height,
        pixel_budget=pixel_budget
    )
