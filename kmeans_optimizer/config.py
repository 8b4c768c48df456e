"""
Configuration for the K-Means Optimizer.

This module contains all configurable parameters of an optimization run.
Defaults can be overridden from an optimizer_config.json file placed next
to this module, with CLI arguments taking precedence.
"""

import os
import json
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from pathlib import Path

import psutil

from kmeans_optimizer.errors import ConfigurationError

# ================================
# BLAS THREAD LIMITS (for multiprocessing)
# ================================
os.environ.setdefault("OMP_NUM_THREADS", "1")
os.environ.setdefault("OPENBLAS_NUM_THREADS", "1")
os.environ.setdefault("MKL_NUM_THREADS", "1")
os.environ.setdefault("NUMEXPR_NUM_THREADS", "1")


# ================================
# ALGORITHM CONSTANTS
# ================================
MAX_CLUSTERS = 100                 # Upper bound on K (keeps result messages small)
MAX_NO_IMPROVEMENT = 1000          # Consecutive non-improving results before finalizing
CONVERGENCE_THRESHOLD = 1e-10      # Total centroid displacement that counts as converged
DEGENERATE_CLUSTER_SIZE = 1        # Clusters with this many points or fewer are redrawn

# ================================
# CHANNEL / PROCESS DEFAULTS
# ================================
QUEUE_SIZE = 1024                  # Result channel capacity (messages)
PUT_TIMEOUT = 0.5                  # Seconds a worker blocks on a full channel per attempt
POLL_INTERVAL = 1.0                # Seconds the coordinator waits per receive
JOIN_TIMEOUT = 0.1                 # Seconds per join attempt while draining at shutdown
STOP_TIMEOUT = 60.0                # Seconds to wait for workers to stop before terminating them

SHM_PREFIX = "kmeans_optimizer"

# Default output file
DEFAULT_OUTPUT_FILE = Path("centroids.csv")

# JSON config file path
CONFIG_FILE = Path(__file__).parent / "optimizer_config.json"


def load_json_config(path: Path = CONFIG_FILE) -> Dict[str, Any]:
    """Load configuration from JSON file if it exists."""
    if path.exists():
        with open(path, 'r') as f:
            return json.load(f)
    return {}


# Load JSON config once at module load
_JSON_CONFIG = load_json_config()


def _get_json_default(section: str, key: str, default: Any) -> Any:
    """Get value from JSON config with fallback to default."""
    return _JSON_CONFIG.get(section, {}).get(key, default)


def default_num_workers() -> int:
    """One worker per physical core, leaving one for the coordinator."""
    cores = psutil.cpu_count(logical=False) or psutil.cpu_count() or 1
    return max(1, cores - 1)


# ================================
# OPTIMIZER CONFIGURATION
# ================================
@dataclass
class OptimizerConfig:
    """
    Configuration for one optimization run.

    Values are loaded from optimizer_config.json if present,
    with CLI arguments taking precedence.
    """
    n_clusters: int
    num_workers: int
    shm_key: str
    dataset_path: Path
    output_path: Path = DEFAULT_OUTPUT_FILE

    # Termination (from JSON: termination.*)
    max_no_improvement: int = field(default_factory=lambda: _get_json_default("termination", "max_no_improvement", MAX_NO_IMPROVEMENT))
    convergence_threshold: float = field(default_factory=lambda: _get_json_default("termination", "convergence_threshold", CONVERGENCE_THRESHOLD))

    # Channel (from JSON: channel.*)
    queue_size: int = field(default_factory=lambda: _get_json_default("channel", "queue_size", QUEUE_SIZE))
    put_timeout: float = field(default_factory=lambda: _get_json_default("channel", "put_timeout", PUT_TIMEOUT))
    poll_interval: float = field(default_factory=lambda: _get_json_default("channel", "poll_interval", POLL_INTERVAL))
    join_timeout: float = field(default_factory=lambda: _get_json_default("channel", "join_timeout", JOIN_TIMEOUT))
    stop_timeout: float = field(default_factory=lambda: _get_json_default("channel", "stop_timeout", STOP_TIMEOUT))

    # Randomness: None = fresh OS entropy
    seed: Optional[int] = None

    # Optional JSON run summary
    summary_path: Optional[Path] = None

    def __post_init__(self):
        self.dataset_path = Path(self.dataset_path)
        self.output_path = Path(self.output_path)
        if self.summary_path is not None:
            self.summary_path = Path(self.summary_path)

    @property
    def shm_name(self) -> str:
        """Shared memory segment name derived from the resource key."""
        return f"{SHM_PREFIX}_{self.shm_key}"

    def validate(self) -> None:
        """
        Check run parameters that do not depend on the dataset.

        Raises:
            ConfigurationError: on the first invalid parameter
        """
        if self.n_clusters <= 0:
            raise ConfigurationError(f"Number of clusters must be > 0 (got {self.n_clusters})")
        if self.n_clusters > MAX_CLUSTERS:
            raise ConfigurationError(
                f"Number of clusters must be <= {MAX_CLUSTERS} (got {self.n_clusters})"
            )
        if self.num_workers <= 0:
            raise ConfigurationError(f"Number of workers must be > 0 (got {self.num_workers})")
        if not str(self.shm_key):
            raise ConfigurationError("Shared resource key must not be empty")
        if self.max_no_improvement <= 0:
            raise ConfigurationError(
                f"max_no_improvement must be > 0 (got {self.max_no_improvement})"
            )
        if self.convergence_threshold <= 0:
            raise ConfigurationError(
                f"convergence_threshold must be > 0 (got {self.convergence_threshold})"
            )
        if self.queue_size <= 0:
            raise ConfigurationError(f"queue_size must be > 0 (got {self.queue_size})")


# ================================
# CONSOLE OUTPUT HELPERS
# ================================
class Colors:
    HEADER = '\033[95m'
    OKBLUE = '\033[94m'
    OKCYAN = '\033[96m'
    OKGREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


def print_status(message: str, status: str = "INFO") -> None:
    """Print status message with color."""
    from datetime import datetime
    colors = {
        "INFO": Colors.OKBLUE,
        "SUCCESS": Colors.OKGREEN,
        "WARNING": Colors.WARNING,
        "ERROR": Colors.FAIL,
        "HEADER": Colors.HEADER,
        "PROGRESS": Colors.OKCYAN,
    }
    color = colors.get(status, Colors.ENDC)
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"{color}[{timestamp}] {status}: {message}{Colors.ENDC}")


def print_progress_bar(current: int, total: int, prefix: str = '', suffix: str = '', length: int = 50) -> None:
    """Display progress bar."""
    percent = current / total if total > 0 else 0
    filled = int(length * percent)
    bar = '#' * filled + '-' * (length - filled)
    print(f'\r{Colors.OKCYAN}{prefix} |{bar}| {percent:.1%} {suffix}{Colors.ENDC}', end='', flush=True)
    if current == total:
        print()
