"""Dataclasses shared across the photoface package.

Faces are produced once by a detector and never mutated afterwards; photos
own their faces; clusters are the raw output of one clustering run and
persons are clusters enriched with a display name and a thumbnail.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class Box:
    """Face bounding box in source-image pixel space."""

    x: float
    y: float
    width: float
    height: float

    @property
    def aspect_ratio(self) -> Optional[float]:
        """Height over width, or ``None`` for a degenerate box."""
        if self.width <= 0 or self.height <= 0:
            return None
        return self.height / self.width

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.x, self.y, self.x + self.width, self.y + self.height


@dataclass(frozen=True)
class SkinTone:
    r: float
    g: float
    b: float

    def as_array(self) -> np.ndarray:
        return np.array([self.r, self.g, self.b], dtype=np.float64)


@dataclass(frozen=True, eq=False)
class Face:
    """A detected face.

    Attributes
    ----------
    id: str
        Opaque identifier, unique across the collection.
    box: Box
        Bounding box in pixels.
    descriptor: ndarray, shape (dim,)
        Identity embedding.  All faces clustered together must share ``dim``.
    landmarks: ndarray, shape (n_points, 2), optional
        68-point landmarks when the detector provides them.
    score: float
        Detector confidence in [0, 1].
    quality: float, optional
        Composite quality in [0, 1] (sharpness, brightness, frontality,
        resolution, symmetry).
    skin_tone: SkinTone, optional
        Mean colour of a central facial patch.
    """

    id: str
    box: Box
    descriptor: np.ndarray
    landmarks: Optional[np.ndarray] = None
    score: float = 0.0
    quality: Optional[float] = None
    skin_tone: Optional[SkinTone] = None

    @property
    def rank_quality(self) -> float:
        """Quality used for ranking members, falling back to detector score."""
        return float(self.quality) if self.quality is not None else float(self.score)


@dataclass
class Photo:
    """A photo and the faces detected in it (in detector order)."""

    id: str
    path: Path
    width: Optional[int] = None
    height: Optional[int] = None
    taken_at: Optional[float] = None
    faces: List[Face] = field(default_factory=list)


@dataclass
class Cluster:
    """One identity cluster produced by a single clustering run.

    ``id`` is regenerated on every run; ``photo_ids`` is parallel to
    ``face_ids``.
    """

    id: str
    face_ids: List[str]
    photo_ids: List[str]
    anchors: List[np.ndarray]
    skin_tone: Optional[SkinTone]
    representative_face_id: str
    photo_count: int
    quality_score: float


@dataclass
class Person:
    """A persisted cluster with a display name and face thumbnail."""

    id: str
    name: str
    face_ids: List[str]
    anchors: List[np.ndarray]
    skin_tone: Optional[SkinTone]
    representative_face_id: str
    photo_count: int
    quality_score: float
    thumbnail: bytes = b""
    name_assigned: bool = False
    created_at: _dt.datetime = field(default_factory=_dt.datetime.utcnow)
