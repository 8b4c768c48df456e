"""
Orchestrator module for the K-Means Optimizer.

Provides the coordinator/worker architecture and the result channel between them.
"""

from .channel import ResultChannel
from .master import CoordinatorContext, OptimizerMaster, TerminationPolicy, run_optimization
from .worker import init_worker, run_restarts, worker_main

__all__ = [
    "CoordinatorContext",
    "OptimizerMaster",
    "ResultChannel",
    "TerminationPolicy",
    "init_worker",
    "run_optimization",
    "run_restarts",
    "worker_main",
]
