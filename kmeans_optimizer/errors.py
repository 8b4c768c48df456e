"""
Error types for the K-Means Optimizer.

Every error is fatal: nothing in the optimizer retries. The CLI maps any
OptimizerError to a non-zero exit status with a diagnostic.
"""


class OptimizerError(Exception):
    """Base class for all optimizer errors."""


class ConfigurationError(OptimizerError, ValueError):
    """Invalid run parameters (K, W, thresholds, paths)."""


class LoadError(OptimizerError):
    """Dataset could not be read or does not satisfy the run parameters."""


class ResourceError(OptimizerError):
    """Shared memory segment or result channel could not be allocated."""


class TransportError(OptimizerError):
    """A result message could not be sent or received."""


class WorkerPoolError(OptimizerError):
    """All workers exited while the coordinator was still collecting."""
