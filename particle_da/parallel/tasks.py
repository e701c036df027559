"""
Fork-join execution over disjoint particle index ranges within a rank.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List

import numpy as np


def split_range(n: int, n_task: int) -> List[slice]:
    """
    Split [0, n) into `n_task` contiguous slices whose sizes differ by at most one.

    Empty slices are dropped, so fewer than `n_task` slices are returned when n < n_task.
    """
    bounds = np.linspace(0, n, n_task + 1).round().astype(int)
    return [slice(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]


class TaskPool:
    """
    Runs one function per slice and returns results in slice order.

    Tasks only write to their own slice of the ensemble, so no locking is
    needed; combining the returned partials is left to the caller. With a
    single task everything runs inline on the calling thread.

    Args:
        n_task: Number of concurrent tasks
    """

    def __init__(self, n_task: int = 1):
        self.n_task = n_task
        self._executor = (
            ThreadPoolExecutor(max_workers=n_task, thread_name_prefix="particle-da-task")
            if n_task > 1 else None
        )

    def map(self, fn: Callable[[slice], Any], slices: List[slice]) -> List[Any]:
        if self._executor is None or len(slices) <= 1:
            return [fn(s) for s in slices]
        futures = [self._executor.submit(fn, s) for s in slices]
        # result() re-raises the task's exception in the caller
        return [future.result() for future in futures]

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "TaskPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
