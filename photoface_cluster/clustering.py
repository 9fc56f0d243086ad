"""
Clustering of detected faces into person identities.

This module groups faces with average-linkage agglomerative clustering under
a cannot-link constraint: two faces from the same photo never end up in one
cluster.  Each merged cluster is then re-validated by a co-occurrence repair
step that splits it along the connected components of a compatibility graph,
and finally summarised into a :class:`~photoface_cluster.models.Cluster`
(representative face, anchors, quality score, photo count).

Merging works on the full face distance matrix.  Cluster-to-cluster
distances are kept up to date with the Lance-Williams update for average
linkage, which equals the mean face-pair distance between the two clusters.
Only pairs below the threshold ever enter the merge queue.  Memory is
quadratic in the number of faces, which suits a personal photo collection
but not web-scale input.
"""

from __future__ import annotations

import heapq
import logging
import uuid
from collections import deque
from typing import Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from .config import DistanceWeights
from .distance import DEFAULT_WEIGHTS, embedding_distance, pairwise_distances
from .errors import ClusterInvariantError
from .models import Cluster, Face

LOGGER = logging.getLogger("photoface.clustering")

# A face together with the id of the photo it was detected in.
Member = Tuple[Face, str]


def constrained_hac(photo_ids: Sequence[str], distances: np.ndarray,
                    threshold: float) -> List[List[int]]:
    """Agglomerate faces with average linkage, never joining faces of one photo.

    Parameters
    ----------
    photo_ids: sequence of str
        Photo id of each face; position ``i`` matches row ``i`` of ``distances``.
    distances: ndarray, shape (n, n)
        Symmetric face distance matrix.
    threshold: float
        Merging stops once the smallest valid cluster distance is ``>= threshold``.

    Returns
    -------
    list of list of int
        Face indices per cluster, each sorted ascending, clusters ordered by
        their smallest index.

    Ties between equal distances are broken by the lower ``(i, j)`` index
    pair, so the result is deterministic for a given input order.
    """
    n = len(photo_ids)
    members: List[List[int]] = [[i] for i in range(n)]
    photos: List[Set[str]] = [{p} for p in photo_ids]
    active = np.ones(n, dtype=bool)
    linkage = np.array(distances, dtype=np.float64, copy=True)

    queue: List[Tuple[float, int, int]] = []
    for i in range(n):
        for j in range(i + 1, n):
            # same-photo pairs never enter the queue
            if photo_ids[i] == photo_ids[j]:
                continue
            d = float(linkage[i, j])
            if d < threshold:
                queue.append((d, i, j))
    heapq.heapify(queue)

    merges = 0
    while queue:
        d, i, j = heapq.heappop(queue)
        if not (active[i] and active[j]) or linkage[i, j] != d:
            continue
        # photo sets grow with every merge, so re-check at merge time
        if not photos[i].isdisjoint(photos[j]):
            continue

        ni, nj = len(members[i]), len(members[j])
        members[i].extend(members[j])
        members[j] = []
        photos[i] |= photos[j]
        active[j] = False
        merges += 1

        others = np.flatnonzero(active)
        others = others[others != i]
        if others.size == 0:
            continue
        updated = (ni * linkage[i, others] + nj * linkage[j, others]) / (ni + nj)
        linkage[i, others] = updated
        linkage[others, i] = updated
        for k, dk in zip(others.tolist(), updated.tolist()):
            if dk < threshold and photos[i].isdisjoint(photos[k]):
                a, b = (i, k) if i < k else (k, i)
                heapq.heappush(queue, (dk, a, b))

    LOGGER.debug("HAC: %d faces, %d merges, threshold %.3f", n, merges, threshold)
    return [sorted(members[i]) for i in range(n) if active[i]]


def repair_cluster(members: Sequence[Member]) -> List[List[Member]]:
    """Split a cluster so that no part holds two faces of the same photo.

    Faces are linked when they come from different photos; every connected
    component of that graph becomes a sub-cluster.  A component that still
    contains a repeated photo id is broken into singletons.  Valid clusters
    come back unchanged, in their original order.
    """
    n = len(members)
    if n == 0:
        return []
    if n == 1:
        return [list(members)]

    adjacency: List[List[int]] = [
        [j for j in range(n) if j != i and members[j][1] != members[i][1]]
        for i in range(n)
    ]
    seen = [False] * n
    parts: List[List[Member]] = []
    for start in range(n):
        if seen[start]:
            continue
        seen[start] = True
        component: List[int] = []
        pending = deque([start])
        while pending:
            node = pending.popleft()
            component.append(node)
            for neighbour in adjacency[node]:
                if not seen[neighbour]:
                    seen[neighbour] = True
                    pending.append(neighbour)
        component.sort()
        component_photos = [members[k][1] for k in component]
        if len(set(component_photos)) != len(component_photos):
            LOGGER.warning("Co-occurrence repair split a %d-face component into singletons",
                           len(component))
            parts.extend([members[k]] for k in component)
        else:
            parts.append([members[k] for k in component])
    return parts


def summarize_cluster(members: Sequence[Member], max_anchors: int = 5) -> Cluster:
    """Build the :class:`Cluster` record for one validated group of faces.

    Members are ranked by quality (detector score when quality is missing);
    the best one is the representative face and supplies the skin tone, and
    the top ``max_anchors`` descriptors become the anchors.
    """
    if not members:
        raise ValueError("Cannot summarise an empty cluster")
    ranked = sorted(members, key=lambda m: m[0].rank_quality, reverse=True)
    photo_ids = [photo_id for _, photo_id in ranked]
    photo_count = len(set(photo_ids))
    if photo_count != len(ranked):
        raise ClusterInvariantError(
            f"Cluster has {len(ranked)} faces but only {photo_count} distinct photos"
        )
    representative = ranked[0][0]
    return Cluster(
        id=f"person-{uuid.uuid4().hex[:12]}",
        face_ids=[face.id for face, _ in ranked],
        photo_ids=photo_ids,
        anchors=[np.asarray(face.descriptor, dtype=np.float32).copy()
                 for face, _ in ranked[:max_anchors]],
        skin_tone=representative.skin_tone,
        representative_face_id=representative.id,
        photo_count=photo_count,
        quality_score=float(np.mean([face.rank_quality for face, _ in ranked])),
    )


def summarize_clusters(groups: Iterable[Sequence[Member]], max_anchors: int = 5) -> List[Cluster]:
    """Summarise groups and order them by photo count, largest first."""
    clusters = [summarize_cluster(g, max_anchors=max_anchors) for g in groups if g]
    clusters.sort(key=lambda c: c.photo_count, reverse=True)
    return clusters


def flatten_faces(faces_by_photo: Mapping[str, Sequence[Face]]) -> List[Member]:
    """Flatten a photo-to-faces mapping, preserving mapping and detector order."""
    members: List[Member] = []
    seen: Set[str] = set()
    for photo_id, faces in faces_by_photo.items():
        for face in faces:
            if face.id in seen:
                raise ValueError(f"Face id {face.id!r} appears more than once")
            seen.add(face.id)
            members.append((face, photo_id))
    return members


def cluster_faces(faces_by_photo: Mapping[str, Sequence[Face]], threshold: float = 0.45,
                  weights: DistanceWeights = DEFAULT_WEIGHTS,
                  max_anchors: int = 5) -> List[Cluster]:
    """Cluster every face of a collection into person identities.

    Parameters
    ----------
    faces_by_photo: mapping of photo id to faces
        Complete face set of the collection.  Photos without faces may be
        present and are ignored.
    threshold: float
        Maximum average-linkage distance for a merge.  ``0`` yields one
        cluster per face.
    weights: DistanceWeights
        Weights of the distance metric.
    max_anchors: int
        Descriptors kept per cluster.

    Returns
    -------
    list of Cluster
        Clusters sorted by photo count, largest first.

    Raises
    ------
    DescriptorDimensionError
        If the faces mix descriptor lengths.
    """
    members = flatten_faces(faces_by_photo)
    if not members:
        return []
    distances = pairwise_distances([face for face, _ in members], weights)
    groups = constrained_hac([photo_id for _, photo_id in members], distances, threshold)
    validated: List[List[Member]] = []
    for group in groups:
        validated.extend(repair_cluster([members[k] for k in group]))
    clusters = summarize_clusters(validated, max_anchors=max_anchors)
    LOGGER.info("Clustered %d faces from %d photos into %d clusters",
                len(members), len({p for _, p in members}), len(clusters))
    return clusters


def assign_face_to_cluster(face: Face, clusters: Sequence, threshold: float) -> Optional[str]:
    """Return the id of the cluster whose nearest anchor is closest to ``face``.

    ``clusters`` may hold :class:`Cluster` or :class:`Person` records; only
    anchor distances strictly below ``threshold`` qualify and ties keep the
    earlier cluster.  Returns ``None`` when nothing qualifies.
    """
    best_id: Optional[str] = None
    best_distance = float("inf")
    for cluster in clusters:
        if not cluster.anchors:
            continue
        distance = min(embedding_distance(face.descriptor, anchor) for anchor in cluster.anchors)
        if distance < threshold and distance < best_distance:
            best_id = cluster.id
            best_distance = distance
    return best_id
