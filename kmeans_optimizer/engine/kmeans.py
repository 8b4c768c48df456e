"""
Randomized-Restart K-Means Engine.

One restart = random initialization -> assign/update iterations until the
centroids stop moving -> variance of the final clustering. Workers run an
unbounded stream of restarts and report each one.

Centroid placement:
- Initial centroids are dataset points drawn uniformly at random, redrawn
  while they exactly duplicate an already chosen centroid.
- A cluster left with DEGENERATE_CLUSTER_SIZE points or fewer after an
  assignment step gets a fresh centroid drawn the same way, checked against
  the current K centroids.
"""

from typing import Iterator, Optional

import numpy as np

from kmeans_optimizer.config import CONVERGENCE_THRESHOLD, DEGENERATE_CLUSTER_SIZE
from kmeans_optimizer.models import ClusteringResult

# Points per block when building the point/centroid distance matrix
_ASSIGN_BLOCK = 65536


def _contains(centroids: np.ndarray, candidate: np.ndarray) -> bool:
    """True if candidate exactly matches a row of centroids."""
    if len(centroids) == 0:
        return False
    return bool(np.any(np.all(centroids == candidate, axis=1)))


def draw_centroid(points: np.ndarray, chosen: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """
    Rejection-sample a dataset point that duplicates none of `chosen`.

    The caller guarantees there are more distinct points than rows in
    `chosen`, otherwise this never returns.
    """
    n_points = len(points)
    while True:
        candidate = points[int(rng.integers(n_points))]
        if not _contains(chosen, candidate):
            return candidate.copy()


def init_centroids(points: np.ndarray, n_clusters: int, rng: np.random.Generator) -> np.ndarray:
    """Draw n_clusters pairwise distinct centroids from the dataset."""
    centroids = np.empty((n_clusters, 2), dtype=np.float64)
    for i in range(n_clusters):
        centroids[i] = draw_centroid(points, centroids[:i], rng)
    return centroids


def _distances(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    diff = points[:, np.newaxis, :] - centroids[np.newaxis, :, :]
    return np.sqrt(np.einsum("nkd,nkd->nk", diff, diff))


def assign_clusters(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """
    Index of the nearest centroid (Euclidean) for every point.

    Ties go to the lowest centroid index.
    """
    labels = np.empty(len(points), dtype=np.intp)
    for start in range(0, len(points), _ASSIGN_BLOCK):
        block = points[start:start + _ASSIGN_BLOCK]
        labels[start:start + len(block)] = np.argmin(_distances(block, centroids), axis=1)
    return labels


def update_centroids(
    points: np.ndarray,
    labels: np.ndarray,
    centroids: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Move every centroid to the mean of its cluster.

    Centroids are updated in index order. A degenerate cluster, or a mean
    that lands exactly on another current centroid, gets a redrawn centroid
    instead; the redraw is checked against the partially updated set.
    """
    n_clusters = len(centroids)
    counts = np.bincount(labels, minlength=n_clusters)
    sum_x = np.bincount(labels, weights=points[:, 0], minlength=n_clusters)
    sum_y = np.bincount(labels, weights=points[:, 1], minlength=n_clusters)

    updated = centroids.copy()
    for i in range(n_clusters):
        if counts[i] > DEGENERATE_CLUSTER_SIZE:
            mean = np.array([sum_x[i] / counts[i], sum_y[i] / counts[i]])
            if not _contains(np.delete(updated, i, axis=0), mean):
                updated[i] = mean
                continue
        updated[i] = draw_centroid(points, updated, rng)
    return updated


def centroid_shift(previous: np.ndarray, current: np.ndarray) -> float:
    """Sum of Euclidean displacements between two centroid sets."""
    return float(np.sqrt(((current - previous) ** 2).sum(axis=1)).sum())


def compute_variance(points: np.ndarray, centroids: np.ndarray) -> float:
    """
    Mean squared distance from each point to its nearest centroid.

    This is the optimization objective: lower is better.
    """
    labels = assign_clusters(points, centroids)
    diff = points - centroids[labels]
    return float(np.einsum("nd,nd->n", diff, diff).sum() / len(points))


class KMeansEngine:
    """
    Runs k-means restarts over a fixed, read-only dataset.

    The engine owns one random generator, seeded once by its creator, and
    consumes it across restarts; two engines built with identically seeded
    generators produce identical restart sequences.
    """

    def __init__(
        self,
        points: np.ndarray,
        n_clusters: int,
        rng: Optional[np.random.Generator] = None,
        convergence_threshold: float = CONVERGENCE_THRESHOLD,
    ):
        if not 0 < n_clusters < len(points):
            raise ValueError(
                f"Need 0 < n_clusters < n_points (got {n_clusters} clusters, {len(points)} points)"
            )
        self.points = points
        self.n_clusters = n_clusters
        self.rng = rng if rng is not None else np.random.default_rng()
        self.convergence_threshold = convergence_threshold
        self.restarts_completed = 0
        self.last_iterations = 0

    def run_restart(self) -> ClusteringResult:
        """Run one restart to convergence."""
        centroids = init_centroids(self.points, self.n_clusters, self.rng)

        iterations = 0
        while True:
            iterations += 1
            labels = assign_clusters(self.points, centroids)
            updated = update_centroids(self.points, labels, centroids, self.rng)
            shift = centroid_shift(centroids, updated)
            centroids = updated
            if shift < self.convergence_threshold:
                break

        self.restarts_completed += 1
        self.last_iterations = iterations
        return ClusteringResult.from_array(compute_variance(self.points, centroids), centroids)

    def restarts(self) -> Iterator[ClusteringResult]:
        """Unbounded stream of independent restarts."""
        while True:
            yield self.run_restart()


def run_restart(
    points: np.ndarray,
    n_clusters: int,
    rng: np.random.Generator,
    convergence_threshold: float = CONVERGENCE_THRESHOLD,
) -> ClusteringResult:
    """Single restart without keeping an engine around."""
    return KMeansEngine(points, n_clusters, rng, convergence_threshold).run_restart()


def iter_restarts(
    points: np.ndarray,
    n_clusters: int,
    rng: np.random.Generator,
    convergence_threshold: float = CONVERGENCE_THRESHOLD,
) -> Iterator[ClusteringResult]:
    """Unbounded restart stream over `points`, drawing from `rng`."""
    return KMeansEngine(points, n_clusters, rng, convergence_threshold).restarts()
