"""
Carrying user-assigned person names across re-clustering runs.

Cluster ids are regenerated on every run, so names travel with faces
instead: every face of a previously named person votes for that name, and
each new cluster takes the name with the most votes among its faces.
Clusters without votes receive an automatic ``Person N`` name, where ``N``
is the cluster's 1-based rank in the sorted output.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import Cluster, Person


def auto_name(rank: int) -> str:
    return f"Person {rank}"


def build_name_map(persons: Iterable[Person]) -> Dict[str, str]:
    """Map face id to the user-assigned name of the person holding it.

    Persons still carrying an automatic name do not contribute.
    """
    name_map: Dict[str, str] = {}
    for person in persons:
        if not person.name_assigned or not person.name.strip():
            continue
        for face_id in person.face_ids:
            name_map[face_id] = person.name
    return name_map


def vote_name(face_ids: Sequence[str], name_map: Dict[str, str]) -> Optional[str]:
    """Return the majority name among ``face_ids``, or ``None`` without votes.

    Ties go to the name seen first while walking ``face_ids``.
    """
    votes: Dict[str, int] = {}
    for face_id in face_ids:
        name = name_map.get(face_id)
        if name is not None:
            votes[name] = votes.get(name, 0) + 1
    if not votes:
        return None
    # dicts keep insertion order, and max() returns the first maximal entry
    return max(votes, key=votes.__getitem__)


def resolve_names(clusters: Sequence[Cluster], name_map: Dict[str, str]) -> List[Tuple[str, bool]]:
    """Return ``(name, name_assigned)`` for each cluster, in order."""
    resolved: List[Tuple[str, bool]] = []
    for rank, cluster in enumerate(clusters, start=1):
        voted = vote_name(cluster.face_ids, name_map)
        if voted is None:
            resolved.append((auto_name(rank), False))
        else:
            resolved.append((voted, True))
    return resolved
