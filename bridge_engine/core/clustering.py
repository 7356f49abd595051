"""Similarity clustering: single-link agglomerative grouping of tasks.

Two tasks land in the same cluster when a chain of pairwise cosine
similarities >= threshold links them. Every input id appears in exactly one
cluster; tasks with no close neighbour form singleton clusters.

The partition is deterministic: clusters are ordered by size (descending) and
then by the input position of their first member, and members keep their
input order. Zero LLM cost, pure vector math.

Usage:
    from bridge_engine.core.clustering import cluster_by_similarity

    result = cluster_by_similarity(["t1", "t2", "t3"], threshold=0.8)
    result = cluster_by_similarity({"a": [1, 0], "b": [0.9, 0.1]}, threshold=0.5)
"""

from collections.abc import Mapping, Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from bridge_engine.core.config import get_settings
from bridge_engine.core.errors import ClusteringError
from bridge_engine.core.logging import get_logger
from bridge_engine.core.schemas_tasks import ClusteringResult, TaskCluster
from bridge_engine.db.task_embeddings import get_task_vectors

logger = get_logger(__name__)

# Slack for float error so identical vectors still clear a threshold of 1.0
_SIMILARITY_EPSILON = 1e-9

VectorItems = Sequence[tuple[str, Sequence[float]]]


def _validate_items(items: VectorItems) -> tuple[list[str], np.ndarray]:
    ids = [task_id for task_id, _ in items]
    if len(set(ids)) != len(ids):
        raise ClusteringError("Duplicate task IDs supplied for clustering")

    dims = {len(vector) for _, vector in items}
    if len(dims) > 1:
        raise ClusteringError(f"Embedding dimensions do not match: {sorted(dims)}")
    if 0 in dims:
        raise ClusteringError("Empty embedding supplied for clustering")

    matrix = np.asarray([vector for _, vector in items], dtype=float)
    if not np.all(np.isfinite(matrix)):
        raise ClusteringError("Embeddings contain non-finite values")
    return ids, matrix


def similarity_matrix(matrix: np.ndarray) -> np.ndarray:
    """Pairwise cosine similarity; zero vectors are similar to nothing."""
    sims = cosine_similarity(matrix)
    np.fill_diagonal(sims, 1.0)
    return sims


def _find(parent: list[int], i: int) -> int:
    while parent[i] != i:
        parent[i] = parent[parent[i]]
        i = parent[i]
    return i


def cluster_vectors(items: VectorItems, threshold: float) -> list[TaskCluster]:
    """
    Partition ``(id, vector)`` pairs into single-link clusters.

    Args:
        items: Task ids with their embedding vectors
        threshold: Cosine similarity (0-1) at or above which two tasks link

    Returns:
        Clusters covering every input id exactly once

    Raises:
        ValueError: If threshold is outside [0, 1]
        ClusteringError: On duplicate ids or mismatched dimensions
    """
    if not 0 <= threshold <= 1:
        raise ValueError(f"Threshold must be between 0 and 1, got {threshold}")
    if not items:
        return []

    ids, matrix = _validate_items(items)
    sims = similarity_matrix(matrix)

    parent = list(range(len(ids)))
    rows, cols = np.nonzero(np.triu(sims >= threshold - _SIMILARITY_EPSILON, k=1))
    for i, j in zip(rows.tolist(), cols.tolist()):
        root_i, root_j = _find(parent, i), _find(parent, j)
        if root_i != root_j:
            # Lower index becomes the root so merge order never changes the result
            parent[max(root_i, root_j)] = min(root_i, root_j)

    groups: dict[int, list[int]] = {}
    for i in range(len(ids)):
        groups.setdefault(_find(parent, i), []).append(i)

    ordered = sorted(groups.values(), key=lambda members: (-len(members), members[0]))

    clusters = []
    for cluster_id, members in enumerate(ordered):
        if len(members) > 1:
            block = sims[np.ix_(members, members)]
            upper = block[np.triu_indices(len(members), k=1)]
            average = float(upper.mean())
        else:
            average = 1.0
        clusters.append(
            TaskCluster(
                cluster_id=cluster_id,
                task_ids=[ids[i] for i in members],
                centroid=matrix[members].mean(axis=0).tolist(),
                average_similarity=average,
            )
        )
    return clusters


def _resolve_items(
    task_ids_or_vectors: Sequence[str] | VectorItems | Mapping[str, Sequence[float]],
) -> VectorItems:
    if isinstance(task_ids_or_vectors, Mapping):
        return list(task_ids_or_vectors.items())

    entries = list(task_ids_or_vectors)
    if all(isinstance(entry, str) for entry in entries):
        vectors = get_task_vectors(entries)
        missing = [task_id for task_id in entries if task_id not in vectors]
        if missing:
            logger.warning(
                "Clustering aborted: tasks without embeddings",
                extra={"missing_count": len(missing), "missing_sample": missing[:5]},
            )
            raise ClusteringError("Missing embeddings for one or more task IDs")
        return [(task_id, vectors[task_id]) for task_id in entries]

    return [(str(task_id), vector) for task_id, vector in entries]


def cluster_by_similarity(
    task_ids_or_vectors: Sequence[str] | VectorItems | Mapping[str, Sequence[float]],
    threshold: float | None = None,
) -> ClusteringResult:
    """
    Cluster tasks by embedding similarity.

    Args:
        task_ids_or_vectors: Task ids (embeddings loaded from the task store),
            ``(id, vector)`` pairs, or an ``{id: vector}`` mapping
        threshold: Cosine similarity threshold (defaults to CLUSTER_SIMILARITY_THRESHOLD)

    Returns:
        ClusteringResult; ``ungrouped_task_ids`` lists the singleton members

    Raises:
        ClusteringError: If any requested task has no embedding
    """
    if threshold is None:
        threshold = get_settings().CLUSTER_SIMILARITY_THRESHOLD

    items = _resolve_items(task_ids_or_vectors)
    clusters = cluster_vectors(items, threshold)

    ungrouped = [c.task_ids[0] for c in clusters if len(c.task_ids) == 1]

    logger.info(
        f"Clustered {len(items)} tasks into {len(clusters)} clusters",
        extra={"threshold": threshold, "singletons": len(ungrouped)},
    )

    return ClusteringResult(
        clusters=clusters,
        task_count=len(items),
        cluster_count=len(clusters),
        threshold_used=threshold,
        ungrouped_task_ids=ungrouped,
    )
