from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pytest
from PIL import Image

from photoface_cluster.models import Box, Face, Photo, SkinTone

DEFAULT_TONE = SkinTone(180.0, 140.0, 120.0)


def make_face(face_id: str, descriptor: Sequence[float], *, box: Optional[Box] = None,
              tone: Optional[SkinTone] = DEFAULT_TONE, score: float = 0.9,
              quality: Optional[float] = 0.5, landmarks=None) -> Face:
    return Face(
        id=face_id,
        box=box or Box(40.0, 40.0, 80.0, 100.0),
        descriptor=np.asarray(descriptor, dtype=np.float32),
        landmarks=landmarks,
        score=score,
        quality=quality,
        skin_tone=tone,
    )


def make_landmarks(left_eye, right_eye, nose, mouth) -> np.ndarray:
    pts = np.zeros((68, 2), dtype=np.float32)
    pts[36] = left_eye
    pts[45] = right_eye
    pts[30] = nose
    pts[62] = mouth
    return pts


def write_image(path: Path, size=(200, 200), color=(200, 150, 120)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, format="JPEG")
    return path


@pytest.fixture
def photo_dir(tmp_path: Path) -> Path:
    d = tmp_path / "photos"
    d.mkdir()
    return d


@pytest.fixture
def make_photo(photo_dir: Path):
    """Build a photo backed by a real JPEG so thumbnails can be extracted."""
    def _make(photo_id: str, faces=(), taken_at: Optional[float] = None) -> Photo:
        path = write_image(photo_dir / f"{photo_id}.jpg")
        return Photo(id=photo_id, path=path, width=200, height=200,
                     taken_at=taken_at, faces=list(faces))
    return _make
