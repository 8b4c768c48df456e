"""
Shared Dataset Store.

Holds the dataset in a named shared memory segment so every worker process
reads the same points without a copy. The coordinator creates and owns the
segment; workers attach to it read-only.
"""

import logging
from multiprocessing import shared_memory
from typing import Optional

import numpy as np

from kmeans_optimizer.errors import ResourceError
from kmeans_optimizer.models import Point

logger = logging.getLogger(__name__)

POINT_DIMS = 2
ITEM_SIZE = np.dtype(np.float64).itemsize


class DatasetStore:
    """
    Read-only (N, 2) float64 point array backed by shared memory.

    Populated once by `create`; after that nobody writes to it, so any
    number of processes may read it without locking.
    """

    def __init__(self, shm: shared_memory.SharedMemory, n_points: int, owner: bool):
        self._shm: Optional[shared_memory.SharedMemory] = shm
        self._n_points = n_points
        self._owner = owner

        points = np.ndarray((n_points, POINT_DIMS), dtype=np.float64, buffer=shm.buf)
        points.flags.writeable = False
        self._points: Optional[np.ndarray] = points

    @classmethod
    def create(cls, points: np.ndarray, name: str) -> "DatasetStore":
        """
        Allocate a shared segment and copy points into it.

        Args:
            points: (N, 2) array
            name: Segment name (derived from the run's resource key)

        Raises:
            ResourceError: segment already exists or cannot be allocated
        """
        points = np.ascontiguousarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != POINT_DIMS or len(points) == 0:
            raise ResourceError(f"Expected a non-empty (N, 2) array, got shape {points.shape}")

        size = points.size * ITEM_SIZE
        try:
            shm = shared_memory.SharedMemory(name=name, create=True, size=size)
        except FileExistsError as e:
            raise ResourceError(f"Shared memory segment '{name}' already exists") from e
        except OSError as e:
            raise ResourceError(f"Error creating shared memory segment '{name}': {e}") from e

        staging = np.ndarray(points.shape, dtype=np.float64, buffer=shm.buf)
        staging[:] = points
        del staging

        logger.debug(f"Created shared dataset '{name}' ({len(points):,} points, {size:,} bytes)")
        return cls(shm, len(points), owner=True)

    @classmethod
    def attach(cls, name: str, n_points: int) -> "DatasetStore":
        """
        Attach to an existing segment (worker side).

        Raises:
            ResourceError: segment missing or smaller than n_points
        """
        try:
            shm = shared_memory.SharedMemory(name=name)
        except (FileNotFoundError, OSError) as e:
            raise ResourceError(f"Error attaching to shared memory segment '{name}': {e}") from e

        if shm.size < n_points * POINT_DIMS * ITEM_SIZE:
            shm.close()
            raise ResourceError(
                f"Shared memory segment '{name}' holds {shm.size} bytes, too small for {n_points} points"
            )
        return cls(shm, n_points, owner=False)

    @property
    def name(self) -> str:
        return self._shm.name if self._shm is not None else ""

    @property
    def points(self) -> np.ndarray:
        """Read-only (N, 2) view of the dataset."""
        if self._points is None:
            raise ResourceError("Dataset store already released")
        return self._points

    def size(self) -> int:
        return self._n_points

    def __len__(self) -> int:
        return self._n_points

    def get(self, index: int) -> Point:
        """Bounds-checked point access."""
        if not 0 <= index < self._n_points:
            raise IndexError(f"Point index {index} out of range [0, {self._n_points})")
        x, y = self.points[index]
        return Point(float(x), float(y))

    def close(self) -> None:
        """Detach from the segment. Safe to call more than once."""
        if self._shm is None:
            return
        # Views into shm.buf must be gone before the buffer can be closed
        self._points = None
        self._shm.close()
        if not self._owner:
            self._shm = None

    def release(self) -> None:
        """Detach and, for the owner, destroy the segment. Safe to call more than once."""
        if self._shm is None:
            return
        shm = self._shm
        self.close()
        if self._owner:
            try:
                shm.unlink()
            except FileNotFoundError:
                pass
            logger.debug(f"Released shared dataset '{shm.name}'")
        self._shm = None

    def __enter__(self) -> "DatasetStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
