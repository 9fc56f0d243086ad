"""
Face thumbnail extraction.

Each person is shown with a square JPEG crop of its representative face.
The face box is padded on every side, clamped to the image bounds and
resized to a fixed side length.
"""

from __future__ import annotations

import io
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from .errors import MissingThumbnailSource
from .models import Box


def extract_face_thumbnail(src: Path, box: Box, padding: float = 0.3, size: int = 128) -> bytes:
    """Crop ``box`` out of the image at ``src`` and return it as JPEG bytes.

    Parameters
    ----------
    src: Path
        Source photo.
    box: Box
        Face box in source pixel space.
    padding: float
        Fraction of the box width/height added on each side.
    size: int
        Side length of the square output.

    Raises
    ------
    MissingThumbnailSource
        If the source image does not exist, cannot be decoded (including
        images Pillow refuses as decompression bombs), or the box lies
        outside the image.
    """
    src = Path(src)
    if not src.is_file():
        raise MissingThumbnailSource(f"Photo file not found: {src}")
    try:
        with Image.open(src) as im:
            im = im.convert("RGB")
            pad_x = box.width * padding
            pad_y = box.height * padding
            left = int(max(0.0, box.x - pad_x))
            top = int(max(0.0, box.y - pad_y))
            right = int(round(min(float(im.width), box.x + box.width + pad_x)))
            bottom = int(round(min(float(im.height), box.y + box.height + pad_y)))
            if right <= left or bottom <= top:
                raise MissingThumbnailSource(f"Face box {box} lies outside {src}")
            crop = im.crop((left, top, right, bottom))
            crop = crop.resize((size, size), Image.LANCZOS)
            buf = io.BytesIO()
            crop.save(buf, format="JPEG", quality=90)
            return buf.getvalue()
    except (OSError, UnidentifiedImageError, Image.DecompressionBombError, ValueError) as exc:
        raise MissingThumbnailSource(f"Cannot read {src}: {exc}") from exc
