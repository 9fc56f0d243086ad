"""
High-level orchestration of incremental re-clustering.

:class:`ReclusterOrchestrator` ties together the lower-level components:
face detection, storage, clustering, thumbnail extraction and name
preservation.  Every completed detection schedules a debounced re-cluster,
so a burst of uploads produces a single clustering run once it settles.
A re-cluster always reads the full current photo set, clusters it from
scratch, carries user-assigned names forward by majority vote over face ids
and swaps the persisted person set in one transaction.

Only one re-cluster runs at a time.  A request arriving while a run is in
flight is dropped rather than queued; the debounce timer of any later
detection triggers the next run.

One orchestrator is created per process and shared by reference; it owns
its lock, its timer and its detection thread pool.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.engine import Engine

from . import db
from .clustering import assign_face_to_cluster, cluster_faces
from .config import AppConfig
from .detectors import Detector
from .errors import DetectionFailure, MissingThumbnailSource
from .models import Face, Person, Photo
from .naming import build_name_map, resolve_names
from .thumbnails import extract_face_thumbnail

LOGGER = logging.getLogger("photoface.orchestrator")

StateCallback = Callable[["ClusteringState"], None]


class ClusteringState(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    CLUSTERING = "clustering"


class ReclusterOrchestrator:
    """Coordinate detection, debounced re-clustering and persistence.

    Parameters
    ----------
    engine: Engine
        Database engine created by :func:`photoface_cluster.db.init_db`.
    detector: Detector, optional
        Face detector used by :meth:`process_faces_in_photo`.  Not needed
        when faces arrive pre-detected (see :meth:`add_photos`).
    config: AppConfig, optional
        Clustering, debounce and detection settings.
    thumbnailer: callable, optional
        ``(path, box, padding, size) -> bytes``; defaults to
        :func:`~photoface_cluster.thumbnails.extract_face_thumbnail`.
    """

    def __init__(self, engine: Engine, detector: Optional[Detector] = None,
                 config: Optional[AppConfig] = None,
                 thumbnailer: Callable[..., bytes] = extract_face_thumbnail) -> None:
        self.engine = engine
        self.detector = detector
        self.config = config or AppConfig()
        self.thumbnailer = thumbnailer

        self._recluster_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._subscribers: List[StateCallback] = []
        self._detecting = 0
        self._clustering = False
        self._state = ClusteringState.IDLE
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, self.config.detection_workers),
            thread_name_prefix="photoface-detect",
        )

    # ------------------------------------------------------------------
    # State observation

    @property
    def state(self) -> ClusteringState:
        return self._state

    def subscribe_to_state(self, callback: StateCallback) -> Callable[[], None]:
        """Call ``callback(state)`` on every state change; returns an unsubscribe function."""
        with self._state_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._state_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _refresh_state(self) -> None:
        with self._state_lock:
            if self._clustering:
                new_state = ClusteringState.CLUSTERING
            elif self._detecting > 0:
                new_state = ClusteringState.DETECTING
            else:
                new_state = ClusteringState.IDLE
            if new_state == self._state:
                return
            self._state = new_state
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(new_state)
            except Exception:
                LOGGER.exception("State subscriber failed")

    def _begin_detection(self) -> None:
        with self._state_lock:
            self._detecting += 1
        self._refresh_state()

    def _end_detection(self) -> None:
        with self._state_lock:
            self._detecting -= 1
        self._refresh_state()

    # ------------------------------------------------------------------
    # Detection

    def _detect(self, photo: Photo) -> concurrent.futures.Future:
        if self.detector is None:
            raise RuntimeError("No detector configured; use add_photos() for pre-detected faces")
        return self._executor.submit(self.detector.detect_photo, photo)

    def _collect(self, photo: Photo, future: concurrent.futures.Future) -> List[Face]:
        """Wait for a detection; any failure or timeout means zero faces."""
        try:
            return list(future.result(timeout=self.config.detection_timeout))
        except concurrent.futures.TimeoutError:
            future.cancel()
            LOGGER.warning("Face detection timed out for photo %s after %.1fs",
                           photo.id, self.config.detection_timeout)
        except DetectionFailure as exc:
            LOGGER.warning("%s", exc)
        except Exception:
            LOGGER.warning("Face detection failed for photo %s", photo.id, exc_info=True)
        return []

    def _store(self, photo: Photo, faces: List[Face]) -> Photo:
        updated = Photo(id=photo.id, path=photo.path, width=photo.width,
                        height=photo.height, taken_at=photo.taken_at, faces=faces)
        with self.engine.connect() as conn:
            db.save_photo(conn, updated)
        if faces:
            LOGGER.info("Detected %d faces in photo %s", len(faces), photo.id)
        else:
            LOGGER.info("No faces detected in photo %s", photo.id)
        return updated

    def process_faces_in_photo(self, photo: Photo) -> Photo:
        """Detect faces in ``photo``, persist them and schedule a re-cluster.

        Returns the photo with its detected faces.  A photo whose detection
        fails or times out is stored with no faces.
        """
        self._begin_detection()
        try:
            faces = self._collect(photo, self._detect(photo))
            updated = self._store(photo, faces)
        finally:
            self._end_detection()
        self.schedule_recluster()
        return updated

    def process_photos(self, photos: Sequence[Photo]) -> List[Photo]:
        """Detect faces in many photos concurrently, then schedule one re-cluster."""
        if not photos:
            return []
        self._begin_detection()
        try:
            futures = [(photo, self._detect(photo)) for photo in photos]
            results = [self._store(photo, self._collect(photo, future)) for photo, future in futures]
        finally:
            self._end_detection()
        self.schedule_recluster()
        return results

    def add_photos(self, photos: Sequence[Photo]) -> None:
        """Persist photos whose faces were detected elsewhere and schedule a re-cluster."""
        with self.engine.connect() as conn:
            for photo in photos:
                db.save_photo(conn, photo)
        if photos:
            self.schedule_recluster()

    def delete_photo(self, photo_id: str) -> bool:
        """Remove a photo and its faces; re-clusters if the photo existed."""
        with self.engine.connect() as conn:
            removed = db.delete_photo(conn, photo_id)
        if removed:
            self.schedule_recluster()
        return removed

    # ------------------------------------------------------------------
    # Re-clustering

    def schedule_recluster(self) -> None:
        """(Re)start the debounce timer; the re-cluster runs once it expires."""
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                LOGGER.debug("Re-cluster rescheduled")
            timer = threading.Timer(self.config.debounce_seconds, self._on_timer)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel_pending(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _on_timer(self) -> None:
        with self._timer_lock:
            # a timer that was cancelled or replaced after its wait ended
            if self._timer is not threading.current_thread():
                LOGGER.debug("Superseded re-cluster timer fired; ignoring")
                return
            self._timer = None
        self.update_people_clusters()

    def trigger_recluster(self) -> bool:
        """Run a re-cluster now, cancelling any pending debounced one.

        Returns ``False`` if a run was already in flight.
        """
        self.cancel_pending()
        return self.update_people_clusters() is not None

    def update_people_clusters(self) -> Optional[List[Person]]:
        """Re-cluster every persisted face and replace the person set.

        Returns the persisted people, or ``None`` if another run was in
        flight or this run failed.  Failures are logged and leave the
        previous person set untouched.
        """
        if not self._recluster_lock.acquire(blocking=False):
            LOGGER.debug("Re-cluster already in progress; skipping")
            return None
        try:
            with self._state_lock:
                self._clustering = True
            self._refresh_state()
            return self._recluster()
        except Exception:
            LOGGER.exception("Re-clustering failed; keeping previous people")
            return None
        finally:
            with self._state_lock:
                self._clustering = False
            self._refresh_state()
            self._recluster_lock.release()

    def _recluster(self) -> List[Person]:
        with self.engine.connect() as conn:
            photos = db.get_all_photos_with_faces(conn)

        faces_by_photo = {photo.id: photo.faces for photo in photos if photo.faces}
        if not faces_by_photo:
            with self.engine.connect() as conn:
                db.replace_all_persons(conn, [])
            LOGGER.info("No faces in any photo; cleared people")
            return []

        cluster_cfg = self.config.cluster
        clusters = cluster_faces(
            faces_by_photo,
            threshold=cluster_cfg.threshold,
            weights=cluster_cfg.weights,
            max_anchors=cluster_cfg.max_anchors,
        )

        face_index: Dict[str, Any] = {}
        for photo in photos:
            for face in photo.faces:
                face_index[face.id] = (face, photo)

        thumbnails: Dict[str, bytes] = {}
        for cluster in clusters:
            face, photo = face_index[cluster.representative_face_id]
            try:
                thumbnails[cluster.id] = self.thumbnailer(photo.path, face.box,
                                                          padding=self.config.thumb_padding,
                                                          size=self.config.thumb_size)
            except MissingThumbnailSource as exc:
                LOGGER.warning("No thumbnail for face %s, skipping its person: %s",
                               cluster.representative_face_id, exc)

        with self.engine.connect() as conn:
            # names assigned while this run was busy must still win the vote
            names = resolve_names(clusters, build_name_map(db.get_all_persons(conn)))
            persons = [
                Person(
                    id=cluster.id,
                    name=name,
                    face_ids=cluster.face_ids,
                    anchors=cluster.anchors,
                    skin_tone=cluster.skin_tone,
                    representative_face_id=cluster.representative_face_id,
                    photo_count=cluster.photo_count,
                    quality_score=cluster.quality_score,
                    thumbnail=thumbnails[cluster.id],
                    name_assigned=assigned,
                )
                for cluster, (name, assigned) in zip(clusters, names)
                if cluster.id in thumbnails
            ]
            db.replace_all_persons(conn, persons)
        LOGGER.info("Saved %d people from %d faces in %d photos",
                    len(persons), sum(len(f) for f in faces_by_photo.values()), len(faces_by_photo))
        return persons

    # ------------------------------------------------------------------
    # Queries

    def get_people_with_thumbnails(self) -> List[Dict[str, Any]]:
        """Return ``{id, name, photo_count, thumbnail}`` per person, most photographed first."""
        with self.engine.connect() as conn:
            people = db.get_all_persons(conn)
        return [
            {"id": p.id, "name": p.name, "photo_count": p.photo_count, "thumbnail": p.thumbnail}
            for p in people
        ]

    def assign_person_name(self, person_id: str, name: str) -> bool:
        """Name a person; the name survives later re-clusters.  ``False`` if unknown."""
        name = name.strip()
        if not name:
            raise ValueError("Person name cannot be empty")
        with self.engine.connect() as conn:
            return db.update_person_name(conn, person_id, name)

    def get_photos_by_person(self, person_id: str) -> List[Photo]:
        with self.engine.connect() as conn:
            return db.get_photos_by_person(conn, person_id)

    def get_photos_by_people(self, person_ids: Sequence[str]) -> List[Photo]:
        with self.engine.connect() as conn:
            return db.get_photos_by_people(conn, person_ids)

    def match_face(self, face: Face) -> Optional[str]:
        """Id of the persisted person whose anchors best match ``face``, if any.

        The merge threshold is converted to a raw descriptor distance by
        dividing out the embedding weight.
        """
        cluster_cfg = self.config.cluster
        if cluster_cfg.weights.embedding <= 0:
            return None
        with self.engine.connect() as conn:
            people = db.get_all_persons(conn)
        return assign_face_to_cluster(face, people, cluster_cfg.threshold / cluster_cfg.weights.embedding)

    def close(self) -> None:
        """Cancel any pending re-cluster and stop the detection pool."""
        self.cancel_pending()
        self._executor.shutdown(wait=False)
