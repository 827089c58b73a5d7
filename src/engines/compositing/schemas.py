from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel
from typing import List, Optional


class CamelModel(BaseModel):
    """Serialized with camelCase keys to match the browser client."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileTask(CamelModel):
    """One uploaded foreground image. Immutable once a batch starts."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = ""
    original_name: str = Field(..., min_length=1)
    filename: str = ""
    path: str = Field(..., min_length=1)
    size: int = Field(default=0, ge=0)
    mimetype: Optional[str] = None


class Dimensions(CamelModel):
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)


class BackgroundSpec(CamelModel):
    """Shared background source plus its native pixel size."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    path: str = Field(..., min_length=1)
    original_name: str = "background"
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)


class FittedSize(BaseModel):
    """Target size produced by the dimension fitter."""
    width: int
    height: int
    scale: float

    @property
    def pixels(self) -> int:
        return self.width * self.height

    @property
    def needs_resize(self) -> bool:
        return self.scale < 1.0


class FittedBackground(BaseModel):
    """
    Background buffer shared read-only by every task of one chunk.

    final_width/final_height is the output box every foreground is fitted into.
    """
    model_config = ConfigDict(frozen=True)

    buffer: bytes
    final_width: int
    final_height: int
    pixel_budget: int


class Outcome(CamelModel):
    """Terminal result for one task."""
    file: str
    success: bool
    saved_to: Optional[str] = None
    error: Optional[str] = None


class SessionView(CamelModel):
    """Snapshot of a session as returned by status queries."""
    is_processing: bool = False
    total_images: int = 0
    processed_images: int = 0
    in_flight: List[str] = Field(default_factory=list)
    results: List[Outcome] = Field(default_factory=list)

    @computed_field(alias="currentImage")
    @property
    def current_image(self) -> str:
        return ", ".join(self.in_flight)
