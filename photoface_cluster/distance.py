"""
Distance metric between detected faces.

The distance fuses four cues into one scalar:

- the raw Euclidean distance between identity descriptors,
- the difference of two scale-invariant landmark proportions,
- the normalised distance between sampled skin tones,
- the difference of bounding box aspect ratios.

All terms except the descriptor distance are clamped to [0, 1] before
weighting.  Missing landmarks degrade their term to 0, while a missing skin
tone or degenerate box counts as maximally dissimilar.

:func:`face_distance` compares two faces; :func:`pairwise_distances`
computes the full matrix used by the clustering engine with the same
arithmetic, vectorised over one axis.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence, Tuple

import numpy as np

from .config import DistanceWeights
from .errors import DescriptorDimensionError
from .models import Face, SkinTone

# 68-point landmark indices
LEFT_EYE_OUTER = 36
RIGHT_EYE_OUTER = 45
NOSE_TIP = 30
MOUTH_CENTER = 62

MAX_RGB_DISTANCE = math.sqrt(255.0 ** 2 * 3)

DEFAULT_WEIGHTS = DistanceWeights()


def landmark_ratios(landmarks: Optional[np.ndarray]) -> Optional[Tuple[float, float]]:
    """Return ``(eye_to_nose, nose_to_mouth)`` divided by the inter-eye distance.

    The eye-to-nose length is measured from the midpoint of the outer eye
    corners.  Returns ``None`` when the landmarks are absent, too short,
    non-finite or collapse the eyes onto one point.
    """
    if landmarks is None:
        return None
    try:
        pts = np.asarray(landmarks, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if pts.ndim != 2 or pts.shape[1] < 2 or pts.shape[0] <= max(MOUTH_CENTER, RIGHT_EYE_OUTER):
        return None
    left = pts[LEFT_EYE_OUTER, :2]
    right = pts[RIGHT_EYE_OUTER, :2]
    nose = pts[NOSE_TIP, :2]
    mouth = pts[MOUTH_CENTER, :2]
    if not np.all(np.isfinite([left, right, nose, mouth])):
        return None
    eye_dist = float(np.linalg.norm(left - right))
    if eye_dist < 1e-9:
        return None
    eye_mid = (left + right) / 2.0
    return (
        float(np.linalg.norm(eye_mid - nose)) / eye_dist,
        float(np.linalg.norm(nose - mouth)) / eye_dist,
    )


def _clamp01(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def embedding_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Euclidean distance between two descriptors of equal length."""
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise DescriptorDimensionError(
            f"Descriptor length mismatch: {a.shape[0]} vs {b.shape[0]}"
        )
    return float(np.linalg.norm(a - b))


def landmark_distance(face_a: Face, face_b: Face) -> float:
    ra = landmark_ratios(face_a.landmarks)
    rb = landmark_ratios(face_b.landmarks)
    if ra is None or rb is None:
        return 0.0
    diff = (abs(ra[0] - rb[0]) + abs(ra[1] - rb[1])) / 2.0
    return _clamp01(diff)


def skin_tone_distance(tone_a: Optional[SkinTone], tone_b: Optional[SkinTone]) -> float:
    if tone_a is None or tone_b is None:
        return 1.0
    dist = float(np.linalg.norm(tone_a.as_array() - tone_b.as_array()))
    return _clamp01(dist / MAX_RGB_DISTANCE)


def shape_distance(face_a: Face, face_b: Face) -> float:
    ra = face_a.box.aspect_ratio
    rb = face_b.box.aspect_ratio
    if ra is None or rb is None:
        return 1.0
    return _clamp01(abs(ra - rb))


def face_distance(face_a: Face, face_b: Face, weights: DistanceWeights = DEFAULT_WEIGHTS) -> float:
    """Weighted distance between two faces (lower means more alike)."""
    return (
        weights.embedding * embedding_distance(face_a.descriptor, face_b.descriptor)
        + weights.landmarks * landmark_distance(face_a, face_b)
        + weights.skin_tone * skin_tone_distance(face_a.skin_tone, face_b.skin_tone)
        + weights.shape * shape_distance(face_a, face_b)
    )


def stack_descriptors(faces: Sequence[Face]) -> np.ndarray:
    """Stack face descriptors into an ``(n, dim)`` float64 matrix.

    Raises
    ------
    DescriptorDimensionError
        If the faces do not all share one descriptor length.
    """
    vectors = [np.asarray(f.descriptor, dtype=np.float64).ravel() for f in faces]
    lengths = {v.shape[0] for v in vectors}
    if len(lengths) > 1:
        raise DescriptorDimensionError(
            f"Faces mix descriptor lengths {sorted(lengths)}; one embedding space per run"
        )
    return np.stack(vectors)


def pairwise_distances(faces: Sequence[Face], weights: DistanceWeights = DEFAULT_WEIGHTS) -> np.ndarray:
    """Compute the symmetric ``(n, n)`` matrix of :func:`face_distance` values.

    The diagonal is set to zero.
    """
    n = len(faces)
    if n == 0:
        return np.zeros((0, 0), dtype=np.float64)
    descriptors = stack_descriptors(faces)

    emb = np.empty((n, n), dtype=np.float64)
    for i in range(n):
        emb[i] = np.linalg.norm(descriptors - descriptors[i], axis=1)

    ratios = np.full((n, 2), np.nan)
    tones = np.full((n, 3), np.nan)
    aspects = np.full(n, np.nan)
    for i, face in enumerate(faces):
        r = landmark_ratios(face.landmarks)
        if r is not None:
            ratios[i] = r
        if face.skin_tone is not None:
            tones[i] = face.skin_tone.as_array()
        if face.box.aspect_ratio is not None:
            aspects[i] = face.box.aspect_ratio

    lm = np.abs(ratios[:, None, :] - ratios[None, :, :]).mean(axis=2)
    lm = np.clip(np.nan_to_num(lm, nan=0.0), 0.0, 1.0)

    skin = np.linalg.norm(tones[:, None, :] - tones[None, :, :], axis=2) / MAX_RGB_DISTANCE
    skin = np.clip(np.nan_to_num(skin, nan=1.0), 0.0, 1.0)

    shape = np.abs(aspects[:, None] - aspects[None, :])
    shape = np.clip(np.nan_to_num(shape, nan=1.0), 0.0, 1.0)

    total = (
        weights.embedding * emb
        + weights.landmarks * lm
        + weights.skin_tone * skin
        + weights.shape * shape
    )
    np.fill_diagonal(total, 0.0)
    return total
