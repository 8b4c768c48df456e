"""
Worker Process for the K-Means Optimizer.

Each worker attaches to the shared dataset once, seeds its own random
generator once, and then runs restarts back to back, sending every result
to the coordinator until the stop event is set.
"""

import logging
import os
import signal
from typing import Any, Dict, Optional

import numpy as np

from kmeans_optimizer.config import CONVERGENCE_THRESHOLD
from kmeans_optimizer.data.store import DatasetStore
from kmeans_optimizer.engine.kmeans import KMeansEngine
from kmeans_optimizer.errors import OptimizerError
from kmeans_optimizer.models import ResultMessage
from kmeans_optimizer.orchestrator.channel import ResultChannel

logger = logging.getLogger(__name__)

# ================================
# MODULE-LEVEL STATE
# ================================
# Set up once per worker process by init_worker
_WORKER_DATA: Dict[str, Any] = {
    "worker_id": None,
    "store": None,
    "engine": None,
    "initialized": False,
}


def init_worker(
    worker_id: int,
    store_name: str,
    n_points: int,
    n_clusters: int,
    seed: Optional[np.random.SeedSequence] = None,
    convergence_threshold: float = CONVERGENCE_THRESHOLD,
) -> KMeansEngine:
    """
    Initialize worker process: attach dataset, build engine.

    Args:
        worker_id: Index of this worker (0..W-1)
        store_name: Shared memory segment holding the dataset
        n_points: Number of points in the segment
        n_clusters: K
        seed: This worker's seed sequence (None = fresh OS entropy)
        convergence_threshold: Restart convergence threshold

    Returns:
        The worker's KMeansEngine
    """
    # Interrupts go to the coordinator, which stops workers via the stop event
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, signal.SIG_DFL)
    logging.getLogger().setLevel(logging.WARNING)

    store = DatasetStore.attach(store_name, n_points)
    engine = KMeansEngine(
        store.points,
        n_clusters,
        rng=np.random.default_rng(seed),
        convergence_threshold=convergence_threshold,
    )

    _WORKER_DATA["worker_id"] = worker_id
    _WORKER_DATA["store"] = store
    _WORKER_DATA["engine"] = engine
    _WORKER_DATA["initialized"] = True

    logger.debug(f"[Worker {worker_id}/{os.getpid()}] attached to '{store_name}' ({n_points:,} points, K={n_clusters})")
    return engine


def shutdown_worker() -> None:
    """Drop the engine and detach from the dataset."""
    store = _WORKER_DATA.get("store")
    # The engine holds a view into the shared buffer; drop it before detaching
    _WORKER_DATA["engine"] = None
    if store is not None:
        store.close()
    _WORKER_DATA["store"] = None
    _WORKER_DATA["initialized"] = False


def run_restarts(
    engine: KMeansEngine,
    channel: ResultChannel,
    stop_event,
    worker_id: int,
    max_restarts: Optional[int] = None,
) -> int:
    """
    Run restarts and send each result until told to stop.

    Args:
        engine: Engine to run
        channel: Result channel to the coordinator
        stop_event: Set by the coordinator when the run is finalized
        worker_id: Tag for result messages
        max_restarts: Stop after this many results (None = unbounded)

    Returns:
        Number of results sent
    """
    sent = 0
    while not stop_event.is_set():
        if max_restarts is not None and sent >= max_restarts:
            break

        result = engine.run_restart()
        if stop_event.is_set():
            break

        message = ResultMessage(worker_id=worker_id, sequence=sent, result=result)
        if not channel.send(message, stop_event):
            break
        sent += 1

    return sent


def worker_main(
    worker_id: int,
    store_name: str,
    n_points: int,
    n_clusters: int,
    channel: ResultChannel,
    stop_event,
    seed: Optional[np.random.SeedSequence] = None,
    convergence_threshold: float = CONVERGENCE_THRESHOLD,
) -> None:
    """Process entry point."""
    try:
        init_worker(worker_id, store_name, n_points, n_clusters, seed, convergence_threshold)
        sent = run_restarts(_WORKER_DATA["engine"], channel, stop_event, worker_id)
    except OptimizerError as e:
        # Process exit releases the mapping; the traceback still references the engine
        logger.error(f"[Worker {worker_id}] {e}")
        raise SystemExit(1)

    shutdown_worker()
    logger.debug(f"[Worker {worker_id}] stopped after {sent:,} results")
