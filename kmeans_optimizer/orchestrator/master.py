"""
Master Orchestrator for the K-Means Optimizer.

Loads the dataset into shared memory, starts the worker processes, keeps
the best clustering reported so far, and finalizes once MAX_NO_IMPROVEMENT
consecutive results fail to beat it (or the run is interrupted).

Lifecycle: INIT -> LOADING -> SPAWNING -> COLLECTING -> FINALIZING -> TERMINATED
"""

import json
import logging
import math
import multiprocessing
import time
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import numpy as np
import psutil

from kmeans_optimizer.config import (
    MAX_NO_IMPROVEMENT,
    OptimizerConfig,
    print_progress_bar,
    print_status,
)
from kmeans_optimizer.data.loader import load_dataset, write_centroids
from kmeans_optimizer.data.store import DatasetStore
from kmeans_optimizer.errors import TransportError, WorkerPoolError
from kmeans_optimizer.models import (
    BestState,
    ClusteringResult,
    CoordinatorState,
    RunSummary,
    centroids_to_list,
)
from kmeans_optimizer.orchestrator.channel import ResultChannel
from kmeans_optimizer.orchestrator.worker import worker_main

logger = logging.getLogger(__name__)

# Results between progress bar refreshes
PROGRESS_EVERY = 25


class TerminationPolicy:
    """
    Strict-minimum reduction with a non-improvement stop rule.

    A result improves only if its variance is strictly lower than the best
    so far. After `max_no_improvement` consecutive results that do not, the
    run is finished.
    """

    def __init__(self, max_no_improvement: int = MAX_NO_IMPROVEMENT):
        if max_no_improvement <= 0:
            raise ValueError(f"max_no_improvement must be > 0 (got {max_no_improvement})")
        self.max_no_improvement = max_no_improvement
        self.best = BestState()

    @property
    def finished(self) -> bool:
        return self.best.non_improving_streak >= self.max_no_improvement

    def observe(self, result: ClusteringResult) -> bool:
        """
        Fold one result into the best state.

        Returns:
            True once the stop rule has fired
        """
        best = self.best
        best.results_received += 1

        if result.variance < best.variance:
            best.variance = result.variance
            best.centroids = result.centroids
            best.non_improving_streak = 0
            best.improvements += 1
            logger.debug(f"New best variance {result.variance:.6f} (result #{best.results_received})")
        else:
            best.non_improving_streak += 1

        return self.finished


@dataclass
class CoordinatorContext:
    """
    Everything the coordinator allocates for a run.

    `teardown()` is the single release path: it stops the workers, waits for
    them, then releases the result channel and the dataset store. It runs
    exactly once however the run ends.
    """
    store: Optional[DatasetStore] = None
    channel: Optional[ResultChannel] = None
    stop_event: Optional[object] = None
    processes: List[multiprocessing.process.BaseProcess] = field(default_factory=list)
    join_timeout: float = 0.1
    stop_timeout: float = 60.0
    _workers_stopped: bool = False
    _torn_down: bool = False

    def workers_alive(self) -> bool:
        return any(p.is_alive() for p in self.processes)

    def stop_workers(self) -> None:
        """
        Signal every worker to stop and wait for all of them.

        The channel is drained while waiting: a worker cannot exit while its
        queue buffer still holds unsent results. Only a wait that completes
        marks the workers stopped; an interrupted one is redone by `teardown()`.
        """
        if self._workers_stopped:
            return

        if self.stop_event is not None:
            self.stop_event.set()

        deadline = time.monotonic() + self.stop_timeout
        while self.workers_alive():
            if self.channel is not None:
                self.channel.drain()
            for process in self.processes:
                process.join(self.join_timeout)

            if time.monotonic() > deadline:
                for process in self.processes:
                    if process.is_alive():
                        logger.warning(f"{process.name} did not stop within {self.stop_timeout}s, terminating")
                        process.terminate()
                for process in self.processes:
                    process.join()
                break

        if self.channel is not None:
            self.channel.drain()

        for process in self.processes:
            if process.exitcode not in (0, None):
                logger.warning(f"{process.name} exited with code {process.exitcode}")

        self._workers_stopped = True

    def teardown(self) -> None:
        """Stop workers, then release channel and store. Safe to call more than once."""
        if self._torn_down:
            return
        self._torn_down = True
        try:
            self.stop_workers()
        finally:
            if self.channel is not None:
                self.channel.close()
            if self.store is not None:
                self.store.release()


class OptimizerMaster:
    """
    Coordinator for a parallel k-means restart search.

    Coordinates:
    - Dataset loading into the shared store
    - Worker process management
    - Best-result tracking and the stop rule
    - Result persistence
    - Shutdown on completion, interrupt or error
    """

    def __init__(self, config: OptimizerConfig, mp_context: Optional[multiprocessing.context.BaseContext] = None):
        """
        Initialize OptimizerMaster.

        Args:
            config: Optimizer configuration
            mp_context: multiprocessing context for workers (default: platform default)
        """
        self.config = config
        self._mp = mp_context or multiprocessing.get_context()

        self.policy = TerminationPolicy(config.max_no_improvement)
        self.context: Optional[CoordinatorContext] = None
        self.state = CoordinatorState.INIT
        self.n_points = 0

        self._results_per_worker: Dict[int, int] = defaultdict(int)
        self._start_time: Optional[float] = None

    @property
    def best(self) -> BestState:
        return self.policy.best

    def _set_state(self, state: CoordinatorState) -> None:
        logger.debug(f"Coordinator {self.state.value} -> {state.value}")
        self.state = state

    def _get_memory_usage(self) -> str:
        """Get current memory usage."""
        try:
            process = psutil.Process()
            mem = process.memory_info().rss / (1024 * 1024)  # MB
            return f"{mem:.1f} MB"
        except psutil.Error:
            return "N/A"

    def run(self) -> RunSummary:
        """
        Run the optimization to completion or interrupt.

        Returns:
            RunSummary of the run

        Raises:
            ConfigurationError, LoadError, ResourceError, TransportError,
            WorkerPoolError: fatal errors, after everything allocated was released
        """
        config = self.config
        config.validate()

        print_status("=" * 60, "HEADER")
        print_status(f"K-Means Optimization: K={config.n_clusters}, {config.num_workers} workers", "HEADER")
        print_status("=" * 60, "HEADER")

        self._start_time = time.monotonic()
        self.context = context = CoordinatorContext(
            join_timeout=config.join_timeout,
            stop_timeout=config.stop_timeout,
        )
        cancelled = False

        try:
            self._set_state(CoordinatorState.LOADING)
            points = load_dataset(config.dataset_path, config.n_clusters)
            self.n_points = len(points)
            context.store = DatasetStore.create(points, config.shm_name)
            del points
            print_status(f"Dataset loaded: {self.n_points:,} points -> '{context.store.name}'", "SUCCESS")

            self._set_state(CoordinatorState.SPAWNING)
            context.channel = ResultChannel(config.queue_size, config.put_timeout, context=self._mp)
            context.stop_event = self._mp.Event()
            self._spawn_workers(context)
            print_status(f"{len(context.processes)} workers running", "SUCCESS")

            self._set_state(CoordinatorState.COLLECTING)
            try:
                self.collect_results(context.channel, context.workers_alive)
            except KeyboardInterrupt:
                cancelled = True
                print()
                print_status("Interrupted, finalizing with best result so far", "WARNING")

            self._set_state(CoordinatorState.FINALIZING)
            written = self._persist_best()
            context.stop_workers()

        finally:
            context.teardown()
            self._set_state(CoordinatorState.TERMINATED)

        summary = self._build_summary(cancelled, written)
        if config.summary_path is not None:
            self._save_summary(summary, config.summary_path)
        self._print_summary(summary)
        return summary

    def _spawn_workers(self, context: CoordinatorContext) -> None:
        """Start one process per worker, each with its own seed."""
        config = self.config
        seeds = np.random.SeedSequence(config.seed).spawn(config.num_workers)

        for worker_id, seed in enumerate(seeds):
            process = self._mp.Process(
                target=worker_main,
                name=f"kmeans-worker-{worker_id}",
                args=(
                    worker_id,
                    context.store.name,
                    self.n_points,
                    config.n_clusters,
                    context.channel,
                    context.stop_event,
                    seed,
                    config.convergence_threshold,
                ),
                daemon=True,
            )
            process.start()
            context.processes.append(process)
            logger.debug(f"Started {process.name} (pid {process.pid})")

    def collect_results(
        self,
        channel: ResultChannel,
        workers_alive: Callable[[], bool] = lambda: True,
    ) -> BestState:
        """
        Receive results until the stop rule fires.

        Args:
            channel: Result channel (anything with receive(timeout))
            workers_alive: Returns False once every worker has exited

        Returns:
            Final best state

        Raises:
            TransportError: a worker's results arrived out of order or with gaps
            WorkerPoolError: every worker exited before the stop rule fired
        """
        limit = self.policy.max_no_improvement

        while True:
            message = channel.receive(timeout=self.config.poll_interval)
            if message is None:
                if not workers_alive():
                    raise WorkerPoolError(
                        f"All workers exited after {self.best.results_received:,} results"
                    )
                continue

            expected = self._results_per_worker[message.worker_id]
            if message.sequence != expected:
                raise TransportError(
                    f"Worker {message.worker_id} sent result #{message.sequence}, expected #{expected}"
                )
            self._results_per_worker[message.worker_id] = expected + 1

            done = self.policy.observe(message.result)

            received = self.best.results_received
            if done or received % PROGRESS_EVERY == 0:
                print_progress_bar(
                    self.best.non_improving_streak, limit,
                    prefix="Stall",
                    suffix=f"| results {received:,} | best {self.best.variance:.4f}",
                )
            if done:
                return self.best

    def _persist_best(self) -> bool:
        """
        Write the best centroids to the output file.

        Returns:
            False if no result was ever received (nothing written)
        """
        if not self.best.has_result:
            logger.warning("No clustering result received, nothing written")
            print_status("No clustering result received; output not written", "WARNING")
            return False

        path = write_centroids(centroids_to_list(self.best.centroids), self.config.output_path)
        print_status(f"Best centroids saved: {path}", "SUCCESS")
        return True

    def _build_summary(self, cancelled: bool, written: bool) -> RunSummary:
        elapsed = time.monotonic() - self._start_time if self._start_time else 0.0
        return RunSummary(
            best_variance=self.best.variance,
            best_centroids=centroids_to_list(self.best.centroids),
            results_received=self.best.results_received,
            improvements=self.best.improvements,
            cancelled=cancelled,
            written=written,
            output_path=str(self.config.output_path),
            elapsed_seconds=elapsed,
            results_per_worker=dict(self._results_per_worker),
        )

    def _save_summary(self, summary: RunSummary, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(summary.to_dict(), f, indent=2)
        print_status(f"Run summary saved: {path}", "SUCCESS")

    def _print_summary(self, summary: RunSummary) -> None:
        print_status("=" * 60, "HEADER")
        print_status("OPTIMIZATION INTERRUPTED" if summary.cancelled else "OPTIMIZATION COMPLETE", "HEADER")
        print_status("=" * 60, "HEADER")
        print_status(f"Total time: {summary.elapsed_seconds:.1f}s", "INFO")
        print_status(f"Results received: {summary.results_received:,} ({summary.improvements} improvements)", "INFO")
        if not math.isinf(summary.best_variance):
            print_status(f"Best variance: {summary.best_variance:.6f}", "INFO")
        for x, y in summary.best_centroids:
            print_status(f"  centroid {x:.2f}, {y:.2f}", "INFO")
        print_status(f"Memory usage: {self._get_memory_usage()}", "INFO")


def run_optimization(
    n_clusters: int,
    num_workers: int,
    shm_key: str,
    dataset_path: Path,
    output_path: Path,
    **overrides,
) -> RunSummary:
    """
    Convenience function to run an optimization.

    Args:
        n_clusters: K
        num_workers: W
        shm_key: Shared resource key
        dataset_path: `x,y` dataset file
        output_path: Centroid output file
        **overrides: Any other OptimizerConfig field

    Returns:
        RunSummary
    """
    config = OptimizerConfig(
        n_clusters=n_clusters,
        num_workers=num_workers,
        shm_key=shm_key,
        dataset_path=dataset_path,
        output_path=output_path,
        **overrides,
    )
    master = OptimizerMaster(config)
    return master.run()
