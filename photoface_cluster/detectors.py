"""
Face detector wrappers.

This module abstracts away the details of running a face detection and
embedding model.  The :class:`Detector` interface exposes
:meth:`Detector.detect_photo`, which reads a photo and returns
:class:`~photoface_cluster.models.Face` records with boxes, descriptors,
landmarks, detection scores and the derived quality and skin tone signals.

The bundled implementation wraps InsightFace ``FaceAnalysis``; any other
model can be plugged in by subclassing :class:`Detector`.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import cv2
import numpy as np

from .errors import DetectionFailure
from .models import Box, Face, Photo, SkinTone

LOGGER = logging.getLogger("photoface.detectors")

# Recognition models consume 112x112 crops; larger faces add no detail.
_FULL_RESOLUTION = 112.0
# Laplacian variance treated as perfectly sharp
_SHARP_LAPLACIAN_VAR = 500.0


def _crop(img: np.ndarray, box: Box) -> Optional[np.ndarray]:
    h, w = img.shape[:2]
    x1, y1, x2, y2 = box.as_xyxy()
    x1, y1 = max(0, int(x1)), max(0, int(y1))
    x2, y2 = min(w, int(round(x2))), min(h, int(round(y2)))
    if x2 <= x1 or y2 <= y1:
        return None
    return img[y1:y2, x1:x2]


def sharpness_score(gray: np.ndarray) -> float:
    """Variance of the Laplacian, scaled to [0, 1]."""
    var = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    return min(var / _SHARP_LAPLACIAN_VAR, 1.0)


def brightness_score(gray: np.ndarray) -> float:
    """1.0 for mid-grey exposure, falling to 0.0 at black or white."""
    return max(0.0, 1.0 - abs(float(gray.mean()) - 128.0) / 128.0)


def frontality_score(pose: Optional[Sequence[float]]) -> float:
    """Score a ``(pitch, yaw, ...)`` head pose in degrees; unknown pose scores 0.5."""
    if pose is None or len(pose) < 2:
        return 0.5
    pitch, yaw = float(pose[0]), float(pose[1])
    return max(0.0, 1.0 - max(abs(pitch), abs(yaw)) / 90.0)


def resolution_score(box: Box) -> float:
    return max(0.0, min(min(box.width, box.height) / _FULL_RESOLUTION, 1.0))


def symmetry_score(gray: np.ndarray) -> float:
    """Compare the left half of the face with the mirrored right half."""
    half = gray.shape[1] // 2
    if half == 0:
        return 0.0
    left = gray[:, :half].astype(np.float64)
    right = np.fliplr(gray[:, -half:]).astype(np.float64)
    return max(0.0, 1.0 - float(np.abs(left - right).mean()) / 255.0)


def estimate_quality(img: np.ndarray, box: Box, pose: Optional[Sequence[float]] = None) -> Optional[float]:
    """Composite quality in [0, 1]: mean of sharpness, brightness,
    frontality, resolution and symmetry.  ``None`` if the box is empty."""
    crop = _crop(img, box)
    if crop is None:
        return None
    gray = cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY) if crop.ndim == 3 else crop
    scores = [
        sharpness_score(gray),
        brightness_score(gray),
        frontality_score(pose),
        resolution_score(box),
        symmetry_score(gray),
    ]
    return float(np.mean(scores))


def skin_tone_from_image(img: np.ndarray, box: Box, fraction: float = 0.3) -> Optional[SkinTone]:
    """Mean RGB colour of the central ``fraction`` of a face box in a BGR image."""
    cx = box.x + box.width / 2.0
    cy = box.y + box.height / 2.0
    half_w = box.width * fraction / 2.0
    half_h = box.height * fraction / 2.0
    patch = _crop(img, Box(cx - half_w, cy - half_h, 2 * half_w, 2 * half_h))
    if patch is None or patch.ndim != 3:
        return None
    b, g, r = patch.reshape(-1, patch.shape[2])[:, :3].mean(axis=0)
    return SkinTone(float(r), float(g), float(b))


class Detector:
    """Base class for all face detectors."""

    def detect_photo(self, photo: Photo) -> List[Face]:
        """Read ``photo`` from disk and detect its faces.

        Raises
        ------
        DetectionFailure
            If the image cannot be decoded.
        """
        img = cv2.imread(str(photo.path))
        if img is None:
            raise DetectionFailure(photo.id, f"cannot read image {photo.path}")
        return self.extract_faces(img, photo.id)

    def extract_faces(self, img: np.ndarray, photo_id: str) -> List[Face]:
        """Detect faces in a BGR image.

        Subclasses must implement this method and return faces whose ids are
        unique across the collection.
        """
        raise NotImplementedError


class InsightFaceDetector(Detector):
    """Wrapper around InsightFace ``FaceAnalysis`` API.

    Parameters
    ----------
    model_name: str
        InsightFace model package, ``"buffalo_l"`` by default.  The package
        must include the 68-point landmark model for the landmark cue.
    min_face_size: int
        Minimum side length (in pixels) of detected faces.  Smaller faces
        are filtered out.
    use_gpu: bool
        Whether to use CUDA if available; falls back to CPU otherwise.
    """
    def __init__(self, model_name: str = "buffalo_l", min_face_size: int = 40, use_gpu: bool = True) -> None:
        from insightface.app import FaceAnalysis
        providers = ["CPUExecutionProvider"]
        if use_gpu:
            try:
                import onnxruntime
                if "CUDAExecutionProvider" in onnxruntime.get_available_providers():
                    providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
            except ImportError:
                LOGGER.warning("onnxruntime is not importable; InsightFace will run on CPU")
        self.app = FaceAnalysis(name=model_name, providers=providers)
        self.app.prepare(ctx_id=0 if len(providers) > 1 else -1, det_size=(640, 640))
        self.min_face_size = min_face_size

    def extract_faces(self, img: np.ndarray, photo_id: str) -> List[Face]:
        results: List[Face] = []
        for idx, f in enumerate(self.app.get(img)):
            x1, y1, x2, y2 = (float(v) for v in f.bbox)
            box = Box(x1, y1, x2 - x1, y2 - y1)
            # Filter by face size
            if min(box.width, box.height) < self.min_face_size:
                continue
            landmarks = getattr(f, "landmark_3d_68", None)
            if landmarks is not None:
                landmarks = np.asarray(landmarks, dtype=np.float32)[:, :2]
            pose = getattr(f, "pose", None)
            results.append(Face(
                id=f"{photo_id}:{idx}",
                box=box,
                descriptor=np.asarray(f.embedding, dtype=np.float32),
                landmarks=landmarks,
                score=float(getattr(f, "det_score", 0.0)),
                quality=estimate_quality(img, box, pose),
                skin_tone=skin_tone_from_image(img, box),
            ))
        LOGGER.debug("Photo %s: %d faces kept", photo_id, len(results))
        return results


def get_detector(model_name: str = "buffalo_l", min_face_size: int = 40, use_gpu: bool = True) -> Detector:
    """Factory function returning a detector instance given a model name."""
    return InsightFaceDetector(model_name=model_name, min_face_size=min_face_size, use_gpu=use_gpu)
