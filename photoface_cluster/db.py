"""
Database layer for the photoface service.

We maintain a SQLite database with three tables: ``photos``, the ``faces``
detected in them and the ``people`` produced by the latest clustering run.
Photos and faces are written as detections complete; people are replaced as
a whole after every re-cluster, in a single transaction, so readers never
observe a half-written person set.

The tables are created automatically if they do not exist when connecting.
All interactions are implemented using SQLAlchemy Core.  Functions take an
open :class:`~sqlalchemy.engine.Connection` and commit their own work.
"""

from __future__ import annotations

import datetime as _dt
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
from sqlalchemy import (
    Table, Column, Integer, String, Float, DateTime, Boolean, JSON, LargeBinary,
    MetaData, ForeignKey, create_engine, select, insert, update, delete
)
from sqlalchemy.engine import Engine, Connection
from sqlalchemy.exc import SQLAlchemyError

from .models import Box, Face, Person, Photo, SkinTone


def _make_metadata() -> MetaData:
    """Define and return SQLAlchemy metadata with our table definitions."""
    metadata = MetaData()
    Table(
        "photos", metadata,
        Column("id", String, primary_key=True),
        Column("path", String, nullable=False),
        Column("width", Integer, nullable=True),
        Column("height", Integer, nullable=True),
        Column("taken_at", Float, nullable=True),  # seconds since epoch
        Column("created_at", DateTime, nullable=False),
    )
    Table(
        "faces", metadata,
        Column("id", String, primary_key=True),
        Column("photo_id", String, ForeignKey("photos.id"), nullable=False, index=True),
        Column("position", Integer, nullable=False),  # detector order within the photo
        Column("box_x", Float, nullable=False),
        Column("box_y", Float, nullable=False),
        Column("box_width", Float, nullable=False),
        Column("box_height", Float, nullable=False),
        Column("descriptor", JSON, nullable=False),  # list of floats
        Column("landmarks", JSON, nullable=True),  # list of [x, y]
        Column("score", Float, nullable=False),
        Column("quality", Float, nullable=True),
        Column("skin_r", Float, nullable=True),
        Column("skin_g", Float, nullable=True),
        Column("skin_b", Float, nullable=True),
    )
    Table(
        "people", metadata,
        Column("id", String, primary_key=True),
        Column("rank", Integer, nullable=False),  # position in the clustering output
        Column("name", String, nullable=False),
        Column("name_assigned", Boolean, nullable=False, default=False),
        Column("face_ids", JSON, nullable=False),
        Column("anchors", JSON, nullable=False),  # list of descriptors
        Column("skin_tone", JSON, nullable=True),
        Column("representative_face_id", String, nullable=False),
        Column("photo_count", Integer, nullable=False),
        Column("quality_score", Float, nullable=False),
        Column("thumbnail", LargeBinary, nullable=False),
        Column("created_at", DateTime, nullable=False),
    )
    return metadata


_METADATA = _make_metadata()
PHOTOS = _METADATA.tables["photos"]
FACES = _METADATA.tables["faces"]
PEOPLE = _METADATA.tables["people"]


def init_db(db_path: Path) -> Engine:
    """Initialize the database and create tables if they do not exist.

    Parameters
    ----------
    db_path: Path
        Location of the SQLite database file.

    Returns
    -------
    sqlalchemy.Engine
        Engine usable from several threads.
    """
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    _METADATA.create_all(engine)
    return engine


def _face_to_row(face: Face, photo_id: str, position: int) -> Dict[str, Any]:
    landmarks = None
    if face.landmarks is not None:
        landmarks = np.asarray(face.landmarks, dtype=np.float64).tolist()
    tone = face.skin_tone
    return {
        "id": face.id,
        "photo_id": photo_id,
        "position": position,
        "box_x": float(face.box.x),
        "box_y": float(face.box.y),
        "box_width": float(face.box.width),
        "box_height": float(face.box.height),
        "descriptor": np.asarray(face.descriptor, dtype=np.float64).ravel().tolist(),
        "landmarks": landmarks,
        "score": float(face.score),
        "quality": None if face.quality is None else float(face.quality),
        "skin_r": None if tone is None else float(tone.r),
        "skin_g": None if tone is None else float(tone.g),
        "skin_b": None if tone is None else float(tone.b),
    }


def _row_to_face(row: Any) -> Face:
    tone = None
    if row["skin_r"] is not None:
        tone = SkinTone(row["skin_r"], row["skin_g"], row["skin_b"])
    landmarks = None
    if row["landmarks"] is not None:
        landmarks = np.asarray(row["landmarks"], dtype=np.float32)
    return Face(
        id=row["id"],
        box=Box(row["box_x"], row["box_y"], row["box_width"], row["box_height"]),
        descriptor=np.asarray(row["descriptor"], dtype=np.float32),
        landmarks=landmarks,
        score=row["score"],
        quality=row["quality"],
        skin_tone=tone,
    )


def _row_to_photo(row: Any, faces: Optional[List[Face]] = None) -> Photo:
    return Photo(
        id=row["id"],
        path=Path(row["path"]),
        width=row["width"],
        height=row["height"],
        taken_at=row["taken_at"],
        faces=faces or [],
    )


def _person_to_row(person: Person, rank: int) -> Dict[str, Any]:
    tone = person.skin_tone
    return {
        "id": person.id,
        "rank": rank,
        "name": person.name,
        "name_assigned": bool(person.name_assigned),
        "face_ids": list(person.face_ids),
        "anchors": [np.asarray(a, dtype=np.float64).ravel().tolist() for a in person.anchors],
        "skin_tone": None if tone is None else {"r": tone.r, "g": tone.g, "b": tone.b},
        "representative_face_id": person.representative_face_id,
        "photo_count": int(person.photo_count),
        "quality_score": float(person.quality_score),
        "thumbnail": person.thumbnail,
        "created_at": person.created_at,
    }


def _row_to_person(row: Any) -> Person:
    tone = row["skin_tone"]
    return Person(
        id=row["id"],
        name=row["name"],
        face_ids=list(row["face_ids"]),
        anchors=[np.asarray(a, dtype=np.float32) for a in row["anchors"]],
        skin_tone=SkinTone(tone["r"], tone["g"], tone["b"]) if tone else None,
        representative_face_id=row["representative_face_id"],
        photo_count=row["photo_count"],
        quality_score=row["quality_score"],
        thumbnail=row["thumbnail"],
        name_assigned=bool(row["name_assigned"]),
        created_at=row["created_at"],
    )


def _load_faces(conn: Connection, photo_ids: Optional[Sequence[str]] = None) -> Dict[str, List[Face]]:
    query = select(FACES)
    if photo_ids is not None:
        query = query.where(FACES.c.photo_id.in_(list(photo_ids)))
    rows = conn.execute(query.order_by(FACES.c.photo_id, FACES.c.position)).mappings().all()
    faces: Dict[str, List[Face]] = {}
    for row in rows:
        faces.setdefault(row["photo_id"], []).append(_row_to_face(row))
    return faces


def save_photo(conn: Connection, photo: Photo) -> None:
    """Insert or replace a photo together with its faces.

    Faces previously stored for the photo are replaced by ``photo.faces``.
    """
    photo_row = {
        "id": photo.id,
        "path": str(photo.path),
        "width": photo.width,
        "height": photo.height,
        "taken_at": photo.taken_at,
        "created_at": _dt.datetime.utcnow(),
    }
    face_rows = [_face_to_row(face, photo.id, pos) for pos, face in enumerate(photo.faces)]
    try:
        conn.execute(delete(FACES).where(FACES.c.photo_id == photo.id))
        conn.execute(delete(PHOTOS).where(PHOTOS.c.id == photo.id))
        conn.execute(insert(PHOTOS).values(**photo_row))
        if face_rows:
            conn.execute(insert(FACES), face_rows)
        conn.commit()
    except SQLAlchemyError:
        if conn.in_transaction():
            conn.rollback()
        raise


def get_photo(conn: Connection, photo_id: str) -> Optional[Photo]:
    """Retrieve a single photo with its faces, or ``None`` if not found."""
    row = conn.execute(select(PHOTOS).where(PHOTOS.c.id == photo_id)).mappings().first()
    if row is None:
        return None
    return _row_to_photo(row, _load_faces(conn, [photo_id]).get(photo_id, []))


def get_all_photos_with_faces(conn: Connection) -> List[Photo]:
    """Return every photo with its faces, ordered by capture time then id."""
    rows = conn.execute(select(PHOTOS).order_by(PHOTOS.c.taken_at, PHOTOS.c.id)).mappings().all()
    faces = _load_faces(conn)
    return [_row_to_photo(row, faces.get(row["id"], [])) for row in rows]


def delete_photo(conn: Connection, photo_id: str) -> bool:
    """Remove a photo and its faces.  Returns ``False`` if it did not exist."""
    try:
        conn.execute(delete(FACES).where(FACES.c.photo_id == photo_id))
        result = conn.execute(delete(PHOTOS).where(PHOTOS.c.id == photo_id))
        conn.commit()
    except SQLAlchemyError:
        if conn.in_transaction():
            conn.rollback()
        raise
    return result.rowcount > 0


def clear_all_photos(conn: Connection) -> None:
    """Remove all photos, faces and people in one transaction."""
    try:
        conn.execute(delete(PEOPLE))
        conn.execute(delete(FACES))
        conn.execute(delete(PHOTOS))
        conn.commit()
    except SQLAlchemyError:
        if conn.in_transaction():
            conn.rollback()
        raise


def get_all_persons(conn: Connection) -> List[Person]:
    """Return the persisted people, most photographed first."""
    rows = conn.execute(select(PEOPLE).order_by(PEOPLE.c.rank)).mappings().all()
    return [_row_to_person(row) for row in rows]


def get_person(conn: Connection, person_id: str) -> Optional[Person]:
    row = conn.execute(select(PEOPLE).where(PEOPLE.c.id == person_id)).mappings().first()
    return _row_to_person(row) if row else None


def replace_all_persons(conn: Connection, persons: Iterable[Person]) -> None:
    """Atomically replace the whole person set.

    The delete and the bulk insert share one transaction; on failure it is
    rolled back and the previous person set stays in place.
    """
    rows = [_person_to_row(person, rank) for rank, person in enumerate(persons)]
    try:
        conn.execute(delete(PEOPLE))
        if rows:
            conn.execute(insert(PEOPLE), rows)
        conn.commit()
    except SQLAlchemyError:
        if conn.in_transaction():
            conn.rollback()
        raise


def update_person_name(conn: Connection, person_id: str, name: str) -> bool:
    """Set a user-chosen name.  Returns ``False`` if the person does not exist."""
    result = conn.execute(
        update(PEOPLE)
        .where(PEOPLE.c.id == person_id)
        .values(name=name, name_assigned=True)
    )
    conn.commit()
    return result.rowcount > 0


def get_photos_by_people(conn: Connection, person_ids: Sequence[str]) -> List[Photo]:
    """Return photos containing a face of any of the given people."""
    if not person_ids:
        return []
    rows = conn.execute(
        select(PEOPLE.c.face_ids).where(PEOPLE.c.id.in_(list(person_ids)))
    ).all()
    face_ids = {face_id for row in rows for face_id in row[0]}
    if not face_ids:
        return []
    photo_ids = conn.execute(
        select(FACES.c.photo_id).where(FACES.c.id.in_(sorted(face_ids))).distinct()
    ).scalars().all()
    if not photo_ids:
        return []
    photo_rows = conn.execute(
        select(PHOTOS).where(PHOTOS.c.id.in_(photo_ids)).order_by(PHOTOS.c.taken_at, PHOTOS.c.id)
    ).mappings().all()
    faces = _load_faces(conn, photo_ids)
    return [_row_to_photo(row, faces.get(row["id"], [])) for row in photo_rows]


def get_photos_by_person(conn: Connection, person_id: str) -> List[Photo]:
    """Return photos containing a face of the given person."""
    return get_photos_by_people(conn, [person_id])
