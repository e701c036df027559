"""
Distributed (ranks) and shared-memory (tasks) parallelism.
"""

from .comm import (
    LocalCommunicator,
    LocalCommunicatorGroup,
    MPICommunicator,
    run_local_ranks,
)
from .tasks import TaskPool, split_range
from .redistribution import redistribute

__all__ = [
    "LocalCommunicator",
    "LocalCommunicatorGroup",
    "MPICommunicator",
    "run_local_ranks",
    "TaskPool",
    "split_range",
    "redistribute",
]
