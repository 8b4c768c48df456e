"""
Engine module for the K-Means Optimizer.

Provides the randomized-restart k-means search run inside each worker.
"""

from .kmeans import (
    KMeansEngine,
    assign_clusters,
    compute_variance,
    draw_centroid,
    init_centroids,
    iter_restarts,
    run_restart,
    update_centroids,
)

__all__ = [
    "KMeansEngine",
    "assign_clusters",
    "compute_variance",
    "draw_centroid",
    "init_centroids",
    "iter_restarts",
    "run_restart",
    "update_centroids",
]
