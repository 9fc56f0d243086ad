"""Exceptions raised by the photoface package."""

from __future__ import annotations


class PhotofaceError(Exception):
    """Base class for all photoface errors."""


class DetectionFailure(PhotofaceError):
    """Face detection could not be run on a photo."""

    def __init__(self, photo_id: str, reason: str) -> None:
        super().__init__(f"Face detection failed for photo {photo_id}: {reason}")
        self.photo_id = photo_id
        self.reason = reason


class MissingThumbnailSource(PhotofaceError):
    """The source image of a representative face cannot be read."""


class DescriptorDimensionError(PhotofaceError, ValueError):
    """Faces with different descriptor lengths were fed into one run."""


class ClusterInvariantError(PhotofaceError, RuntimeError):
    """A clustering invariant was violated."""
