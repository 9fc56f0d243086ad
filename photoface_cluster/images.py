"""
Photo scanning and metadata extraction.

This module provides utility functions to iterate over all image files in a
directory tree and turn them into :class:`~photoface_cluster.models.Photo`
records: dimensions, EXIF capture time and a content-derived id, so that
re-scanning the same folder updates existing photos instead of duplicating
them.  It is intentionally kept decoupled from the detection logic.
"""

from __future__ import annotations

import hashlib
import os
import time
from pathlib import Path
from typing import Iterator, Optional

from PIL import Image, ExifTags

from .models import Photo

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".webp")

# Map EXIF tag names to their numerical IDs
_DATETIME_TAG = None
for k, v in ExifTags.TAGS.items():
    if v == "DateTimeOriginal":
        _DATETIME_TAG = k
        break


def iter_image_paths(root: Path) -> Iterator[Path]:
    """Yield all files under ``root`` that have an image-like extension, sorted per folder."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fn in sorted(filenames):
            if fn.lower().endswith(IMAGE_EXTENSIONS):
                yield Path(dirpath) / fn


def photo_id_for(path: Path) -> str:
    """Stable photo id: the first 16 hex digits of the SHA-1 of the file content."""
    digest = hashlib.sha1()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()[:16]


def read_photo(path: Path) -> Optional[Photo]:
    """Read metadata for an image and return a face-less :class:`Photo`.

    The capture time is taken from the EXIF ``DateTimeOriginal`` tag if
    available, otherwise from the file's modification time.  Returns
    ``None`` if the file cannot be opened as an image.
    """
    try:
        with Image.open(path) as im:
            width, height = im.size
            exif_datetime = None
            exif = im.getexif()
            if _DATETIME_TAG is not None:
                # DateTimeOriginal lives in the Exif sub-IFD
                exif_datetime = exif.get_ifd(0x8769).get(_DATETIME_TAG) or exif.get(_DATETIME_TAG)
    except (OSError, ValueError):
        return None
    timestamp = path.stat().st_mtime
    if exif_datetime:
        try:
            timestamp = time.mktime(time.strptime(str(exif_datetime), "%Y:%m:%d %H:%M:%S"))
        except (ValueError, OverflowError):
            pass
    return Photo(
        id=photo_id_for(path),
        path=path,
        width=width,
        height=height,
        taken_at=float(timestamp),
    )


def scan_photos(root: Path) -> Iterator[Photo]:
    """Iterate over image files under ``root`` and yield :class:`Photo` records.

    Files that cannot be opened as images are silently skipped, as are
    byte-identical duplicates.
    """
    seen = set()
    for path in iter_image_paths(root):
        photo = read_photo(path)
        if photo is None or photo.id in seen:
            continue
        seen.add(photo.id)
        yield photo
