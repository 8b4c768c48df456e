"""
Data handling module for the K-Means Optimizer.

Provides dataset loading, the shared read-only dataset store and result output.
"""

from .loader import load_points, load_dataset, write_centroids
from .store import DatasetStore
from .generate import generate_blobs, write_dataset

__all__ = [
    "load_points",
    "load_dataset",
    "write_centroids",
    "DatasetStore",
    "generate_blobs",
    "write_dataset",
]
