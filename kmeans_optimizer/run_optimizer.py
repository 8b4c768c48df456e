#!/usr/bin/env python3
"""
K-Means Optimizer CLI.

Usage:
    # Cluster dataset.csv into 5 clusters with 8 workers (resource key 1234)
    python -m kmeans_optimizer.run_optimizer 5 8 1234 dataset.csv

    # Use one worker per physical core, custom output file
    python -m kmeans_optimizer.run_optimizer 5 auto 1234 dataset.csv --output best.csv

    # Generate a 10,000 point test dataset with 5 blobs first, then cluster it
    python -m kmeans_optimizer.run_optimizer 5 4 1234 blobs.csv --generate 10000
"""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from kmeans_optimizer.config import (
    DEFAULT_OUTPUT_FILE,
    MAX_CLUSTERS,
    MAX_NO_IMPROVEMENT,
    OptimizerConfig,
    default_num_workers,
    print_status,
)
from kmeans_optimizer.errors import OptimizerError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1


def parse_workers(value: str) -> int:
    """Worker count: positive int or 'auto'."""
    if value == "auto":
        return default_num_workers()
    try:
        return int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid worker count: {value!r} (int or 'auto')")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kmeans-optimizer",
        description="Parallel randomized-restart k-means for 2D points",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
The run stops after {MAX_NO_IMPROVEMENT} consecutive results fail to improve the
best variance (or on Ctrl-C), then writes the best K centroids as x,y lines.

Examples:
  kmeans-optimizer 5 8 1234 dataset.csv
  kmeans-optimizer 5 auto 1234 dataset.csv --output best.csv --seed 42
        """
    )

    # Required
    parser.add_argument("k", type=int, metavar="K", help=f"Number of clusters (0 < K < points, K <= {MAX_CLUSTERS})")
    parser.add_argument("workers", type=parse_workers, metavar="W", help="Number of worker processes, or 'auto'")
    parser.add_argument("key", type=str, metavar="KEY", help="Shared resource key (names the shared memory segment)")
    parser.add_argument("dataset", type=Path, metavar="DATASET", help="Dataset file, one x,y record per line")

    # Options
    parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_OUTPUT_FILE,
        help=f"Centroid output file (default: {DEFAULT_OUTPUT_FILE})"
    )
    parser.add_argument(
        "--max-no-improvement",
        type=int,
        default=None,
        help=f"Consecutive non-improving results before stopping (default: {MAX_NO_IMPROVEMENT})"
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for the per-worker random streams (default: OS entropy)"
    )
    parser.add_argument(
        "--summary",
        type=Path,
        default=None,
        help="Also write a JSON run summary to this file"
    )
    parser.add_argument(
        "--generate",
        type=int,
        default=None,
        metavar="N",
        help="Write an N point dataset with K blobs to DATASET before clustering"
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)"
    )
    return parser


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def generate_dataset(path: Path, n_points: int, n_clusters: int, seed: Optional[int]) -> None:
    """Write a blob dataset for a quick run."""
    from kmeans_optimizer.data.generate import generate_blobs, write_dataset

    df = generate_blobs(n_points, n_clusters, seed=seed)
    write_dataset(df, path)
    print_status(f"Generated {n_points:,} points ({n_clusters} blobs): {path}", "SUCCESS")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    from kmeans_optimizer.orchestrator.master import OptimizerMaster

    overrides = {}
    if args.max_no_improvement is not None:
        overrides["max_no_improvement"] = args.max_no_improvement

    # SIGTERM finalizes the same way as Ctrl-C
    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        config = OptimizerConfig(
            n_clusters=args.k,
            num_workers=args.workers,
            shm_key=args.key,
            dataset_path=args.dataset,
            output_path=args.output,
            seed=args.seed,
            summary_path=args.summary,
            **overrides,
        )
        config.validate()

        if args.generate is not None:
            if args.generate <= args.k:
                parser.error(f"--generate needs more than K={args.k} points")
            generate_dataset(args.dataset, args.generate, args.k, args.seed)

        summary = OptimizerMaster(config).run()

    except OptimizerError as e:
        print_status(str(e), "ERROR")
        return EXIT_ERROR
    except KeyboardInterrupt:
        print_status("Interrupted before collection started", "WARNING")
        return EXIT_ERROR
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if not summary.written:
        return EXIT_ERROR
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
