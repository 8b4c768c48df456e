"""
Data Loader Module.

Reads `x,y` point datasets and writes centroid results. Both sides use the
same plain CSV layout: no header, one record per line.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Sequence, Tuple, Union

import numpy as np
import pandas as pd

from kmeans_optimizer.errors import LoadError

logger = logging.getLogger(__name__)

COLUMNS = ["x", "y"]


def load_points(path: Union[str, Path]) -> np.ndarray:
    """
    Load 2D points from a CSV file.

    Args:
        path: File with one `x,y` record per line, no header

    Returns:
        (N, 2) float64 array in file order

    Raises:
        LoadError: file missing/unreadable, malformed records, or empty
    """
    path = Path(path)
    if not path.is_file():
        raise LoadError(f"Dataset not found: {path}")

    try:
        df = pd.read_csv(path, header=None, skip_blank_lines=True)
    except pd.errors.EmptyDataError:
        raise LoadError(f"Dataset is empty: {path}")
    except (OSError, pd.errors.ParserError, UnicodeDecodeError) as e:
        raise LoadError(f"Error reading dataset {path}: {e}") from e

    if df.shape[1] != 2:
        raise LoadError(f"Expected 2 columns (x,y) in {path}, got {df.shape[1]}")

    df.columns = COLUMNS
    for col in COLUMNS:
        df[col] = pd.to_numeric(df[col], errors="coerce")

    bad = df[COLUMNS].isna().any(axis=1)
    if bad.any():
        first = int(np.flatnonzero(bad.to_numpy())[0]) + 1
        raise LoadError(f"Malformed record at line {first} of {path} ({int(bad.sum())} bad records)")

    points = df[COLUMNS].to_numpy(dtype=np.float64)
    logger.info(f"Loaded {len(points):,} points from {path}")
    return points


def load_dataset(path: Union[str, Path], n_clusters: int) -> np.ndarray:
    """
    Load a dataset and check it can be partitioned into n_clusters.

    Args:
        path: Dataset file
        n_clusters: Number of clusters K

    Returns:
        (N, 2) float64 array with N > K

    Raises:
        LoadError: fewer than K+1 records, or fewer than K+1 distinct points
    """
    points = load_points(path)
    n_points = len(points)

    if n_points <= n_clusters:
        raise LoadError(
            f"Number of clusters must be < number of points ({n_clusters} clusters, {n_points} points)"
        )

    # Redrawing a centroid rejects all K current ones, so K+1 distinct coordinates are needed
    distinct = len(np.unique(points, axis=0))
    if distinct <= n_clusters:
        raise LoadError(
            f"Dataset has only {distinct} distinct points, need more than {n_clusters} for {n_clusters} clusters"
        )

    return points


def write_centroids(centroids: Sequence[Tuple[float, float]], path: Union[str, Path]) -> Path:
    """
    Write centroids as `x,y` lines with two decimals.

    The file is written to a temp file next to the target and moved into
    place, so a reader never sees a partial result.

    Args:
        centroids: Sequence of (x, y)
        path: Output file

    Returns:
        Path written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    df = pd.DataFrame(list(centroids), columns=COLUMNS)

    temp_fd, temp_path = tempfile.mkstemp(suffix=".csv", dir=str(path.parent))
    try:
        with open(temp_fd, "w", newline="") as f:
            df.to_csv(f, header=False, index=False, float_format="%.2f")

        shutil.move(temp_path, str(path))

    except Exception:
        if Path(temp_path).exists():
            Path(temp_path).unlink()
        raise

    logger.info(f"Wrote {len(df)} centroids to {path}")
    return path
