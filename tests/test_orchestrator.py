import threading
import time

import pytest

from photoface_cluster import db
from photoface_cluster import orchestrator as orchestrator_module
from photoface_cluster.config import AppConfig
from photoface_cluster.detectors import Detector
from photoface_cluster.errors import DetectionFailure
from photoface_cluster.models import Photo
from photoface_cluster.orchestrator import ClusteringState, ReclusterOrchestrator

from conftest import make_face


def alice(face_id, offset=0.0):
    return make_face(face_id, [0.0 + offset, 0.0])


def bob(face_id, offset=0.0):
    return make_face(face_id, [3.0 + offset, 3.0])


class FakeDetector(Detector):
    """Returns canned faces per photo id; ``fail`` ids raise, ``slow`` ids stall."""

    def __init__(self, faces=None, fail=(), slow=(), delay=1.0):
        self.faces = faces or {}
        self.fail = set(fail)
        self.slow = set(slow)
        self.delay = delay

    def extract_faces(self, img, photo_id):
        if photo_id in self.fail:
            raise DetectionFailure(photo_id, "model crashed")
        if photo_id in self.slow:
            time.sleep(self.delay)
        return list(self.faces.get(photo_id, []))


@pytest.fixture
def engine(tmp_path):
    engine = db.init_db(tmp_path / "people.db")
    yield engine
    engine.dispose()


@pytest.fixture
def make_orchestrator(engine, tmp_path):
    created = []

    def _make(detector=None, debounce=60.0, thumbnailer=None, **kwargs):
        cfg = AppConfig(db_path=tmp_path / "people.db", debounce_seconds=debounce, **kwargs)
        if thumbnailer is None:
            orch = ReclusterOrchestrator(engine, detector=detector, config=cfg)
        else:
            orch = ReclusterOrchestrator(engine, detector=detector, config=cfg, thumbnailer=thumbnailer)
        created.append(orch)
        return orch

    yield _make
    for orch in created:
        orch.close()


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_name_survives_photo_churn(make_orchestrator, make_photo):
    orch = make_orchestrator()
    orch.add_photos([make_photo(f"p{i}", [alice(f"p{i}:0", 0.01 * i)], taken_at=float(i))
                     for i in (1, 2, 3)])
    people = orch.update_people_clusters()
    assert [(p.name, p.photo_count) for p in people] == [("Person 1", 3)]

    assert orch.assign_person_name(people[0].id, "Alice") is True
    assert orch.delete_photo("p3") is True
    orch.add_photos([make_photo("p4", [alice("p4:0", 0.04)], taken_at=4.0)])
    people = orch.update_people_clusters()

    assert [(p.name, p.name_assigned) for p in people] == [("Alice", True)]
    assert sorted(people[0].face_ids) == ["p1:0", "p2:0", "p4:0"]


def test_people_listing_and_queries(make_orchestrator, make_photo):
    orch = make_orchestrator()
    orch.add_photos([
        make_photo("p1", [alice("p1:0"), bob("p1:1")], taken_at=1.0),
        make_photo("p2", [alice("p2:0", 0.05)], taken_at=2.0),
        make_photo("p3", [alice("p3:0", 0.02), bob("p3:1", 0.03)], taken_at=3.0),
    ])
    assert orch.trigger_recluster() is True

    people = orch.get_people_with_thumbnails()
    assert [(p["name"], p["photo_count"]) for p in people] == [("Person 1", 3), ("Person 2", 2)]
    assert all(p["thumbnail"].startswith(b"\xff\xd8") for p in people)

    bob_id = people[1]["id"]
    assert [p.id for p in orch.get_photos_by_person(bob_id)] == ["p1", "p3"]
    assert [p.id for p in orch.get_photos_by_people([p["id"] for p in people])] == ["p1", "p2", "p3"]
    assert orch.match_face(bob("query", 0.01)) == bob_id
    assert orch.match_face(make_face("stranger", [-5.0, 8.0])) is None


def test_assign_name_validation(make_orchestrator):
    orch = make_orchestrator()
    with pytest.raises(ValueError):
        orch.assign_person_name("anyone", "   ")
    assert orch.assign_person_name("nobody", "Alice") is False


def test_empty_collection_clears_people(make_orchestrator, make_photo):
    orch = make_orchestrator()
    orch.add_photos([make_photo("p1", [alice("p1:0")]), make_photo("p2", [])])
    assert len(orch.update_people_clusters()) == 1

    orch.delete_photo("p1")
    assert orch.update_people_clusters() == []
    assert orch.get_people_with_thumbnails() == []


def test_missing_thumbnail_skips_person(make_orchestrator, make_photo, tmp_path):
    orch = make_orchestrator()
    lost = Photo(id="lost", path=tmp_path / "moved-away.jpg", faces=[bob("lost:0")])
    orch.add_photos([make_photo("p1", [alice("p1:0")]), make_photo("p2", [alice("p2:0", 0.02)]), lost])

    people = orch.update_people_clusters()
    assert [sorted(p.face_ids) for p in people] == [["p1:0", "p2:0"]]


def test_failed_run_keeps_previous_people(make_orchestrator, make_photo):
    orch = make_orchestrator()
    orch.add_photos([make_photo("p1", [alice("p1:0")])])
    before = orch.update_people_clusters()
    # a descriptor from another embedding space cannot be clustered with the rest
    orch.add_photos([make_photo("p2", [make_face("p2:0", [0.0, 0.0, 0.0])])])

    assert orch.update_people_clusters() is None
    assert [p["id"] for p in orch.get_people_with_thumbnails()] == [p.id for p in before]
    assert orch.state == ClusteringState.IDLE


def test_detection_failure_counts_as_no_faces(make_orchestrator, make_photo, engine):
    detector = FakeDetector(faces={"good": [alice("good:0")]}, fail={"bad"})
    orch = make_orchestrator(detector=detector)
    results = orch.process_photos([make_photo("good"), make_photo("bad")])

    assert [len(p.faces) for p in results] == [1, 0]
    with engine.connect() as conn:
        stored = db.get_photo(conn, "bad")
    assert stored is not None and stored.faces == []


def test_detection_timeout_counts_as_no_faces(make_orchestrator, make_photo):
    detector = FakeDetector(faces={"slow": [alice("slow:0")]}, slow={"slow"}, delay=1.0)
    orch = make_orchestrator(detector=detector, detection_timeout=0.1)
    assert orch.process_faces_in_photo(make_photo("slow")).faces == []


def test_processing_without_detector_fails(make_orchestrator, make_photo):
    orch = make_orchestrator()
    with pytest.raises(RuntimeError):
        orch.process_faces_in_photo(make_photo("p1"))
    assert orch.state == ClusteringState.IDLE


def test_burst_of_detections_triggers_one_recluster(make_orchestrator, make_photo):
    photos = [make_photo(f"p{i}") for i in range(10)]
    detector = FakeDetector(faces={p.id: [alice(f"{p.id}:0", 0.005 * i)] for i, p in enumerate(photos)})
    orch = make_orchestrator(detector=detector, debounce=0.5)

    calls = []
    run = orch.update_people_clusters

    def counting_run():
        calls.append(time.monotonic())
        return run()

    orch.update_people_clusters = counting_run
    for photo in photos:
        orch.process_faces_in_photo(photo)

    assert _wait_for(lambda: len(calls) == 1)
    time.sleep(1.0)
    assert len(calls) == 1
    assert _wait_for(lambda: len(orch.get_people_with_thumbnails()) == 1)
    assert orch.get_people_with_thumbnails()[0]["photo_count"] == 10


def test_concurrent_recluster_is_rejected(make_orchestrator, make_photo, monkeypatch):
    entered = threading.Event()
    release = threading.Event()

    def held_thumbnailer(path, box, padding, size):
        entered.set()
        release.wait(5.0)
        return b"thumb"

    runs = []
    real_cluster_faces = orchestrator_module.cluster_faces

    def counting_cluster_faces(*args, **kwargs):
        runs.append(1)
        return real_cluster_faces(*args, **kwargs)

    monkeypatch.setattr(orchestrator_module, "cluster_faces", counting_cluster_faces)
    orch = make_orchestrator(thumbnailer=held_thumbnailer)
    orch.add_photos([make_photo("p1", [alice("p1:0")]), make_photo("p2", [alice("p2:0", 0.01)])])

    results = []
    worker = threading.Thread(target=lambda: results.append(orch.update_people_clusters()))
    worker.start()
    try:
        assert entered.wait(5.0)
        assert orch.state == ClusteringState.CLUSTERING
        assert orch.update_people_clusters() is None
        assert orch.trigger_recluster() is False
    finally:
        release.set()
        worker.join(5.0)

    assert len(runs) == 1
    assert len(results) == 1 and [p.thumbnail for p in results[0]] == [b"thumb"]
    assert orch.state == ClusteringState.IDLE


def test_state_changes_are_published(make_orchestrator, make_photo):
    detector = FakeDetector(faces={"p1": [alice("p1:0")]})
    orch = make_orchestrator(detector=detector)
    seen = []
    unsubscribe = orch.subscribe_to_state(seen.append)

    orch.process_faces_in_photo(make_photo("p1"))
    orch.update_people_clusters()
    assert seen == [ClusteringState.DETECTING, ClusteringState.IDLE,
                    ClusteringState.CLUSTERING, ClusteringState.IDLE]

    unsubscribe()
    orch.update_people_clusters()
    assert len(seen) == 4


def test_name_assigned_during_run_is_kept(make_orchestrator, make_photo):
    hold = threading.Event()
    entered = threading.Event()
    release = threading.Event()

    def thumbnailer(path, box, padding, size):
        if hold.is_set():
            entered.set()
            release.wait(5.0)
        return b"thumb"

    orch = make_orchestrator(thumbnailer=thumbnailer)
    orch.add_photos([make_photo("p1", [alice("p1:0")]), make_photo("p2", [alice("p2:0", 0.01)])])
    person_id = orch.update_people_clusters()[0].id

    hold.set()
    results = []
    worker = threading.Thread(target=lambda: results.append(orch.update_people_clusters()))
    worker.start()
    try:
        assert entered.wait(5.0)
        assert orch.assign_person_name(person_id, "Alice") is True
    finally:
        release.set()
        worker.join(5.0)

    assert [(p.name, p.name_assigned) for p in results[0]] == [("Alice", True)]
    assert [p["name"] for p in orch.get_people_with_thumbnails()] == ["Alice"]


def test_superseded_timer_does_not_recluster(make_orchestrator):
    orch = make_orchestrator()
    calls = []
    orch.update_people_clusters = lambda: calls.append(1)

    orch.schedule_recluster()
    stale = threading.Timer(0.0, orch._on_timer)
    stale.start()
    stale.join(5.0)
    assert calls == []

    orch.cancel_pending()
    orch._on_timer()
    assert calls == []
