"""
Data models for the K-Means Optimizer.

Results travel between processes through a multiprocessing queue, so every
model here is a plain picklable dataclass.
"""

import math
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np


@dataclass(frozen=True)
class Point:
    """Single 2D dataset point."""
    x: float
    y: float

    def as_tuple(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class Centroid:
    """Cluster representative."""
    point: Point

    @property
    def x(self) -> float:
        return self.point.x

    @property
    def y(self) -> float:
        return self.point.y

    @classmethod
    def from_xy(cls, x: float, y: float) -> "Centroid":
        return cls(Point(float(x), float(y)))


@dataclass(frozen=True)
class ClusteringResult:
    """
    Outcome of one completed restart.

    Produced once per restart by a worker and never modified afterwards.
    """
    variance: float
    centroids: Tuple[Centroid, ...]

    @property
    def n_clusters(self) -> int:
        return len(self.centroids)

    @classmethod
    def from_array(cls, variance: float, centroids: np.ndarray) -> "ClusteringResult":
        """Build a result from a (K, 2) centroid array."""
        return cls(
            variance=float(variance),
            centroids=tuple(Centroid.from_xy(x, y) for x, y in centroids),
        )

    def to_array(self) -> np.ndarray:
        """Centroids as a (K, 2) float64 array."""
        return np.array([c.point.as_tuple() for c in self.centroids], dtype=np.float64)

    def has_duplicate_centroids(self) -> bool:
        coords = [c.point.as_tuple() for c in self.centroids]
        return len(set(coords)) != len(coords)


class MessageKind(IntEnum):
    """Message kinds carried by the result channel."""
    RESULT = 1


@dataclass(frozen=True)
class ResultMessage:
    """Envelope for a ClusteringResult on the result channel."""
    worker_id: int
    sequence: int                         # Per-worker emission counter
    result: ClusteringResult
    kind: MessageKind = MessageKind.RESULT


class CoordinatorState(Enum):
    """Coordinator lifecycle."""
    INIT = "init"
    LOADING = "loading"
    SPAWNING = "spawning"
    COLLECTING = "collecting"
    FINALIZING = "finalizing"
    TERMINATED = "terminated"


@dataclass
class BestState:
    """Best clustering seen so far. Owned by the coordinator only."""
    variance: float = math.inf
    centroids: Optional[Tuple[Centroid, ...]] = None
    non_improving_streak: int = 0
    results_received: int = 0
    improvements: int = 0

    @property
    def has_result(self) -> bool:
        return self.centroids is not None


@dataclass
class RunSummary:
    """What a finished (or cancelled) run produced."""
    best_variance: float
    best_centroids: List[Tuple[float, float]]
    results_received: int
    improvements: int
    cancelled: bool
    written: bool
    output_path: str
    elapsed_seconds: float
    results_per_worker: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "best_variance": None if math.isinf(self.best_variance) else self.best_variance,
            "best_centroids": [list(c) for c in self.best_centroids],
            "results_received": self.results_received,
            "improvements": self.improvements,
            "cancelled": self.cancelled,
            "written": self.written,
            "output_path": self.output_path,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "results_per_worker": {str(k): v for k, v in self.results_per_worker.items()},
        }


def centroids_to_list(centroids: Optional[Sequence[Centroid]]) -> List[Tuple[float, float]]:
    if not centroids:
        return []
    return [c.point.as_tuple() for c in centroids]
