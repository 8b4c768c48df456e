"""
K-Means Optimizer.

Parallel randomized-restart k-means for 2D points: a pool of worker
processes runs independent restarts over a shared read-only dataset and a
coordinator keeps the lowest-variance clustering, stopping once results
stop improving.
"""

__version__ = "1.0.0"
