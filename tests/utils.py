import io
import itertools
from typing import Tuple

from PIL import Image

_colors = itertools.cycle([(200, 30, 30), (30, 200, 30), (30, 30, 200), (220, 220, 40)])


def encode_image(size: Tuple[int, int] = (40, 30), fmt: str = "PNG", color=None) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color or next(_colors)).save(buffer, format=fmt)
    return buffer.getvalue()


class FakeCompositor:
    """Stands in for the remote API; returns a fixed JPEG."""

    def __init__(self):
        self.calls = 0
        self.result = encode_image((20, 20), fmt="JPEG")

    async def composite(self, foreground: bytes, background: bytes) -> bytes:
        self.calls += 1
        return self.result

    async def aclose(self):
        pass
