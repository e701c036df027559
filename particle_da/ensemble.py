"""
Per-rank particle store.
"""

from dataclasses import dataclass, field
from typing import List

import numpy as np

from .errors import ConfigurationError
from .parallel.tasks import split_range


@dataclass
class Ensemble:
    """
    The shard of the ensemble owned by one rank.

    Rank r owns global particles [r * n_local, (r + 1) * n_local), stored as
    rows of `states`. Rows are further split into contiguous task slices.

    Attributes:
        states: [n_local, D] Particle states
        offset: Global index of the first local particle
        n_total: Ensemble size N across all ranks
        task_slices: Local row slices, one per task
    """
    states: np.ndarray
    offset: int
    n_total: int
    task_slices: List[slice] = field(default_factory=list)

    @classmethod
    def allocate(
        cls,
        n_particle: int,
        state_dimension: int,
        rank: int,
        n_rank: int,
        n_task: int = 1,
        dtype=np.float64,
    ) -> "Ensemble":
        if n_particle % n_rank != 0:
            raise ConfigurationError(
                f"Number of particles ({n_particle}) must be divisible by the "
                f"number of ranks ({n_rank})"
            )
        n_local = n_particle // n_rank
        return cls(
            states=np.zeros((n_local, state_dimension), dtype=dtype),
            offset=rank * n_local,
            n_total=n_particle,
            task_slices=split_range(n_local, n_task),
        )

    @property
    def n_local(self) -> int:
        return self.states.shape[0]

    @property
    def state_dimension(self) -> int:
        return self.states.shape[1]

    def global_indices(self, local: slice = slice(None)) -> np.ndarray:
        """Global indices of the local rows in `local`."""
        return self.offset + np.arange(self.n_local)[local]

    def owner(self, global_index):
        """Rank owning a global particle index (works elementwise on arrays)."""
        return global_index // self.n_local

    def __repr__(self) -> str:
        return (
            f"Ensemble(particles {self.offset}..{self.offset + self.n_local - 1} "
            f"of {self.n_total}, D={self.state_dimension}, tasks={len(self.task_slices)})"
        )
