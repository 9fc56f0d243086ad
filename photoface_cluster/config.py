"""
Configuration structures for the photoface clustering service.

We use :class:`dataclasses.dataclass` to describe the tunable parameters of
the distance metric, the clustering run and the surrounding application
(database location, debounce interval, detection pool).  The distance weights
and the merge threshold are calibration starting points rather than fixed
constants, so every one of them is exposed here and on the command line.

The :func:`parse_args` function converts command line arguments into an
:class:`AppConfig` instance whose ``command`` field selects the sub-command
run by :mod:`photoface_cluster.cli`.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class DistanceWeights:
    """Weights of the four terms of the face distance metric.

    Attributes
    ----------
    embedding: float
        Weight of the raw Euclidean descriptor distance.
    landmarks: float
        Weight of the landmark proportion term.
    skin_tone: float
        Weight of the normalised skin tone distance.
    shape: float
        Weight of the bounding box aspect ratio term.

    The weights must be non-negative and sum to 1.0.
    """
    embedding: float = 0.60
    landmarks: float = 0.20
    skin_tone: float = 0.15
    shape: float = 0.05

    def __post_init__(self) -> None:
        values = (self.embedding, self.landmarks, self.skin_tone, self.shape)
        if any(v < 0 for v in values):
            raise ValueError(f"Distance weights must be non-negative: {values}")
        if abs(sum(values) - 1.0) > 1e-6:
            raise ValueError(f"Distance weights must sum to 1.0, got {sum(values):.6f}")


@dataclass(frozen=True)
class ClusterConfig:
    """Parameters of a single clustering run.

    Attributes
    ----------
    threshold: float
        Maximum average-linkage distance at which two clusters may still be
        merged.  Zero yields one cluster per face.
    weights: DistanceWeights
        Weights of the distance metric.
    max_anchors: int
        Number of representative descriptors retained per cluster.
    """
    threshold: float = 0.45
    weights: DistanceWeights = field(default_factory=DistanceWeights)
    max_anchors: int = 5

    def __post_init__(self) -> None:
        if self.threshold < 0:
            raise ValueError(f"threshold must be >= 0, got {self.threshold}")
        if self.max_anchors < 1:
            raise ValueError(f"max_anchors must be >= 1, got {self.max_anchors}")


@dataclass
class AppConfig:
    """Parameters of the application around the clustering engine.

    Attributes
    ----------
    db_path: Path
        SQLite database holding photos, faces and people.  Created on first use.
    cluster: ClusterConfig
        Clustering parameters used by every re-cluster.
    debounce_seconds: float
        Quiet period after the last detection before a re-cluster runs.
    detection_workers: int
        Size of the thread pool running the detector.
    detection_timeout: float
        Seconds to wait for one photo's detection before treating it as a
        zero-face photo.
    thumb_size: int
        Side length of the square person thumbnails.
    thumb_padding: float
        Fraction of the face box added on each side before cropping.
    model_name: str
        InsightFace model package used by the ``scan`` command.
    min_face_size: int
        Faces whose smaller box side is below this many pixels are dropped.
    command: str, optional
        Sub-command selected on the command line.
    extra: dict
        Positional arguments of the sub-command.
    """
    db_path: Path = Path("photoface.sqlite")
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    debounce_seconds: float = 0.5
    detection_workers: int = 4
    detection_timeout: float = 30.0
    thumb_size: int = 128
    thumb_padding: float = 0.3
    model_name: str = "buffalo_l"
    min_face_size: int = 40
    command: Optional[str] = None
    verbose: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="photoface",
        description="Group the faces of a photo collection into people",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--db", dest="db_path", type=Path, default=Path("photoface.sqlite"),
                        help="Path to SQLite database file")
    parser.add_argument("--threshold", dest="threshold", type=float, default=0.45,
                        help="Maximum average-linkage distance for merging clusters")
    parser.add_argument("--w-embedding", dest="w_embedding", type=float, default=0.60,
                        help="Weight of the descriptor distance")
    parser.add_argument("--w-landmarks", dest="w_landmarks", type=float, default=0.20,
                        help="Weight of the landmark proportion distance")
    parser.add_argument("--w-skin", dest="w_skin", type=float, default=0.15,
                        help="Weight of the skin tone distance")
    parser.add_argument("--w-shape", dest="w_shape", type=float, default=0.05,
                        help="Weight of the box aspect ratio distance")
    parser.add_argument("--max-anchors", dest="max_anchors", type=int, default=5,
                        help="Representative descriptors kept per person")
    parser.add_argument("--debounce", dest="debounce_seconds", type=float, default=0.5,
                        help="Seconds of quiet after the last detection before re-clustering")
    parser.add_argument("--workers", dest="detection_workers", type=int, default=4,
                        help="Number of parallel detection workers")
    parser.add_argument("--detect-timeout", dest="detection_timeout", type=float, default=30.0,
                        help="Seconds before a photo's detection is abandoned")
    parser.add_argument("--model", dest="model_name", type=str, default="buffalo_l",
                        help="InsightFace model package used by 'scan'")
    parser.add_argument("--min-face-size", dest="min_face_size", type=int, default=40,
                        help="Discard faces smaller than this many pixels")
    parser.add_argument("--thumb-size", dest="thumb_size", type=int, default=128,
                        help="Side length of person thumbnails (pixels)")
    parser.add_argument("--thumb-padding", dest="thumb_padding", type=float, default=0.3,
                        help="Padding around the face box as a fraction of its size")
    parser.add_argument("-v", "--verbose", dest="verbose", action="store_true",
                        help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    scan = sub.add_parser("scan", help="Detect faces in a folder of photos and re-cluster")
    scan.add_argument("input_dir", type=Path, help="Folder containing photos")
    imp = sub.add_parser("import-faces", help="Import detected faces from a Parquet file")
    imp.add_argument("faces_path", type=Path, help="Parquet file written by export-faces")
    exp = sub.add_parser("export-faces", help="Export detected faces to a Parquet file")
    exp.add_argument("faces_path", type=Path, help="Destination Parquet file")
    sub.add_parser("recluster", help="Re-cluster all persisted faces now")
    sub.add_parser("people", help="List people, most photographed first")
    name = sub.add_parser("name", help="Assign a display name to a person")
    name.add_argument("person_id", type=str)
    name.add_argument("name", type=str)
    delete = sub.add_parser("delete-photo", help="Remove a photo and re-cluster")
    delete.add_argument("photo_id", type=str)
    return parser


def parse_args(argv: Optional[List[str]] = None) -> AppConfig:
    """Parse command line arguments and return an :class:`AppConfig` instance.

    Parameters
    ----------
    argv: list of str, optional
        List of command line arguments.  If omitted, :mod:`sys.argv` will be
        used.  This parameter facilitates testing.

    Returns
    -------
    AppConfig
        Populated configuration object.  Invalid weights or thresholds are
        reported through the parser.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        cluster = ClusterConfig(
            threshold=args.threshold,
            weights=DistanceWeights(
                embedding=args.w_embedding,
                landmarks=args.w_landmarks,
                skin_tone=args.w_skin,
                shape=args.w_shape,
            ),
            max_anchors=args.max_anchors,
        )
    except ValueError as exc:
        parser.error(str(exc))

    extra: Dict[str, Any] = {}
    for key in ("input_dir", "faces_path", "person_id", "name", "photo_id"):
        if hasattr(args, key):
            extra[key] = getattr(args, key)

    return AppConfig(
        db_path=args.db_path,
        cluster=cluster,
        debounce_seconds=args.debounce_seconds,
        detection_workers=args.detection_workers,
        detection_timeout=args.detection_timeout,
        thumb_size=args.thumb_size,
        thumb_padding=args.thumb_padding,
        model_name=args.model_name,
        min_face_size=args.min_face_size,
        command=args.command,
        verbose=args.verbose,
        extra=extra,
    )
