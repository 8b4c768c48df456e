"""
Synthetic dataset generation.

Produces Gaussian blob datasets in the `x,y` layout read by load_points,
for trying the optimizer out and for tests.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd

from kmeans_optimizer.data.loader import COLUMNS

logger = logging.getLogger(__name__)


def generate_blobs(
    n_points: int,
    n_clusters: int,
    spread: float = 1.0,
    box: float = 100.0,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Generate points scattered around n_clusters random centers.

    Args:
        n_points: Total number of points
        n_clusters: Number of blob centers
        spread: Standard deviation of each blob
        box: Centers are drawn uniformly from [0, box) on both axes
        seed: Random seed (None = OS entropy)

    Returns:
        DataFrame with x, y columns
    """
    if n_points <= 0 or n_clusters <= 0:
        raise ValueError("n_points and n_clusters must be > 0")

    rng = np.random.default_rng(seed)
    centers = rng.uniform(0.0, box, size=(n_clusters, 2))
    labels = rng.integers(n_clusters, size=n_points)
    points = centers[labels] + rng.normal(0.0, spread, size=(n_points, 2))

    return pd.DataFrame(points, columns=COLUMNS)


def write_dataset(df: pd.DataFrame, path: Union[str, Path], float_format: str = "%.6f") -> Path:
    """Write a points DataFrame as headerless `x,y` lines."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df[COLUMNS].to_csv(path, header=False, index=False, float_format=float_format)
    logger.info(f"Wrote {len(df):,} points to {path}")
    return path
