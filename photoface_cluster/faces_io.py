"""
Parquet input/output for detected faces.

Detection can run outside this service (on another machine, with another
model); the results travel as a single Parquet file with one row per face.
Photo columns are repeated on each of its face rows, descriptors are stored
as lists of floats in a ``descriptor`` column and landmarks as a flattened
``landmarks`` list (``x0, y0, x1, y1, ...``) that may be null.

We use PyArrow's Parquet support to write and read these files.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Dict, Iterable, List

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .models import Box, Face, Photo, SkinTone

COLUMNS = [
    "photo_id", "photo_path", "photo_width", "photo_height", "taken_at",
    "face_id", "box_x", "box_y", "box_width", "box_height",
    "score", "quality", "skin_r", "skin_g", "skin_b",
    "descriptor", "landmarks",
]


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _optional_float(value: Any):
    return None if _is_missing(value) else float(value)


def _optional_int(value: Any):
    return None if _is_missing(value) else int(value)


def write_faces_parquet(path: Path, photos: Iterable[Photo]) -> int:
    """Write every face of ``photos`` to ``path`` and return the row count.

    Photos without faces are not represented.
    """
    records: List[Dict[str, Any]] = []
    for photo in photos:
        for face in photo.faces:
            tone = face.skin_tone
            landmarks = None
            if face.landmarks is not None:
                landmarks = np.asarray(face.landmarks, dtype=np.float64)[:, :2].ravel().tolist()
            records.append({
                "photo_id": photo.id,
                "photo_path": str(photo.path),
                "photo_width": photo.width,
                "photo_height": photo.height,
                "taken_at": photo.taken_at,
                "face_id": face.id,
                "box_x": float(face.box.x),
                "box_y": float(face.box.y),
                "box_width": float(face.box.width),
                "box_height": float(face.box.height),
                "score": float(face.score),
                "quality": face.quality,
                "skin_r": None if tone is None else tone.r,
                "skin_g": None if tone is None else tone.g,
                "skin_b": None if tone is None else tone.b,
                "descriptor": np.asarray(face.descriptor, dtype=np.float64).ravel().tolist(),
                "landmarks": landmarks,
            })
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(records, columns=COLUMNS)
    table = pa.Table.from_pandas(df, preserve_index=False)
    pq.write_table(table, path)
    return len(records)


def read_faces_parquet(path: Path) -> List[Photo]:
    """Read a face file and group its rows back into photos.

    Photos keep the order of their first row; faces keep row order.
    """
    df = pq.read_table(path).to_pandas()
    photos: Dict[str, Photo] = {}
    for row in df.itertuples(index=False):
        photo = photos.get(row.photo_id)
        if photo is None:
            photo = Photo(
                id=row.photo_id,
                path=Path(row.photo_path),
                width=_optional_int(row.photo_width),
                height=_optional_int(row.photo_height),
                taken_at=_optional_float(row.taken_at),
            )
            photos[row.photo_id] = photo
        tone = None
        if not _is_missing(row.skin_r):
            tone = SkinTone(float(row.skin_r), float(row.skin_g), float(row.skin_b))
        landmarks = None
        if row.landmarks is not None:
            landmarks = np.asarray(row.landmarks, dtype=np.float32).reshape(-1, 2)
        photo.faces.append(Face(
            id=row.face_id,
            box=Box(float(row.box_x), float(row.box_y), float(row.box_width), float(row.box_height)),
            descriptor=np.asarray(row.descriptor, dtype=np.float32),
            landmarks=landmarks,
            score=float(row.score),
            quality=_optional_float(row.quality),
            skin_tone=tone,
        ))
    return list(photos.values())
