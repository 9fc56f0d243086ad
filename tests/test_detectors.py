import numpy as np
import pytest

from photoface_cluster.detectors import (
    Detector,
    brightness_score,
    estimate_quality,
    frontality_score,
    sharpness_score,
    skin_tone_from_image,
    symmetry_score,
)
from photoface_cluster.errors import DetectionFailure
from photoface_cluster.models import Box, Photo, SkinTone

from conftest import make_face, write_image


def test_frontality():
    assert frontality_score(None) == 0.5
    assert frontality_score((0.0, 0.0, 0.0)) == 1.0
    assert frontality_score((10.0, -90.0, 0.0)) == 0.0
    assert frontality_score((45.0, 0.0)) == pytest.approx(0.5)


def test_brightness_and_sharpness():
    grey = np.full((50, 50), 128, dtype=np.uint8)
    assert brightness_score(grey) == 1.0
    assert brightness_score(np.zeros((50, 50), dtype=np.uint8)) == 0.0
    assert sharpness_score(grey) == 0.0
    checker = (np.indices((50, 50)).sum(axis=0) % 2 * 255).astype(np.uint8)
    assert sharpness_score(checker) == 1.0


def test_symmetry():
    sym = np.tile(np.array([0, 100, 200, 100, 0], dtype=np.uint8), (4, 1))
    assert symmetry_score(sym) == 1.0
    lopsided = np.tile(np.array([0, 0, 255, 255], dtype=np.uint8), (4, 1))
    assert symmetry_score(lopsided) == 0.0


def test_estimate_quality_of_flat_frontal_face():
    img = np.full((200, 200, 3), 128, dtype=np.uint8)
    # sharpness 0, every other component 1
    assert estimate_quality(img, Box(10, 10, 120, 120), (0.0, 0.0, 0.0)) == pytest.approx(0.8)
    assert estimate_quality(img, Box(500, 500, 10, 10)) is None


def test_skin_tone_converts_bgr_to_rgb():
    img = np.zeros((100, 100, 3), dtype=np.uint8)
    img[:] = (30, 60, 90)
    assert skin_tone_from_image(img, Box(20, 20, 60, 60)) == SkinTone(90.0, 60.0, 30.0)
    assert skin_tone_from_image(img, Box(500, 500, 10, 10)) is None


class _RecordingDetector(Detector):
    def __init__(self):
        self.shapes = []

    def extract_faces(self, img, photo_id):
        self.shapes.append(img.shape)
        return [make_face(f"{photo_id}:0", [0.0])]


def test_detect_photo_reads_image(tmp_path):
    path = write_image(tmp_path / "p.jpg", size=(40, 30))
    detector = _RecordingDetector()
    faces = detector.detect_photo(Photo(id="p", path=path))
    assert [f.id for f in faces] == ["p:0"]
    assert detector.shapes == [(30, 40, 3)]


def test_unreadable_photo_raises_detection_failure(tmp_path):
    with pytest.raises(DetectionFailure) as excinfo:
        _RecordingDetector().detect_photo(Photo(id="gone", path=tmp_path / "gone.jpg"))
    assert excinfo.value.photo_id == "gone"


def test_base_detector_is_abstract():
    with pytest.raises(NotImplementedError):
        Detector().extract_faces(np.zeros((2, 2, 3), dtype=np.uint8), "p")
