"""
Top-level package for the photoface person clustering service.

Groups the faces found across a growing photo collection into people, with
at most one face per photo in each person, and keeps user-assigned names as
the collection is re-clustered.

The functionality is organised into smaller modules:

- :mod:`photoface_cluster.models` – dataclasses for faces, photos, clusters and people.
- :mod:`photoface_cluster.config` – dataclasses for metric, clustering and application settings.
- :mod:`photoface_cluster.distance` – the weighted face distance metric.
- :mod:`photoface_cluster.clustering` – constrained agglomerative clustering, co-occurrence repair and cluster summaries.
- :mod:`photoface_cluster.naming` – carrying person names across runs by majority vote.
- :mod:`photoface_cluster.db` – SQLite schema and helpers for photos, faces and people.
- :mod:`photoface_cluster.thumbnails` – cropping face thumbnails for people.
- :mod:`photoface_cluster.detectors` – detector interface and the InsightFace wrapper.
- :mod:`photoface_cluster.images` – scanning folders for photos and reading EXIF dates.
- :mod:`photoface_cluster.faces_io` – reading/writing detected faces as Parquet.
- :mod:`photoface_cluster.orchestrator` – debounced, mutually exclusive re-clustering.

You can run the service from the command line using the ``photoface`` script
installed by this package.
"""

__all__ = [
    "models",
    "config",
    "distance",
    "clustering",
    "naming",
    "db",
    "thumbnails",
    "detectors",
    "images",
    "faces_io",
    "orchestrator",
    "cli",
]
