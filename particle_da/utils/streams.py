"""
Reproducible random streams keyed by logical particle and time indices.

Every draw in a filtering run comes from a generator derived from the run
seed plus a spawn key naming what the draw is for. Streams never depend on
which rank or task happens to own a particle, so results are identical for
any partitioning of the ensemble.
"""

from typing import Optional

from numpy.random import Generator, PCG64, SeedSequence

# Spawn key purposes
PARTICLE_STREAM = 0
RESAMPLING_STREAM = 1


class RandomStreams:
    """
    Factory for per-particle and per-step generators.

    Args:
        seed: Run seed (non-negative int). None draws fresh OS entropy; in a
              distributed run the entropy must then be shared across ranks
              (see `entropy`).
    """

    def __init__(self, seed: Optional[int] = None):
        self._root = SeedSequence(seed)

    @property
    def entropy(self) -> int:
        """Root entropy, enough to rebuild identical streams on another rank."""
        return self._root.entropy

    def _generator(self, *spawn_key: int) -> Generator:
        seq = SeedSequence(self._root.entropy, spawn_key=tuple(int(k) for k in spawn_key))
        return Generator(PCG64(seq))

    def particle(self, time_index: int, particle_index: int) -> Generator:
        """Generator for the propagation of one particle at one time index."""
        return self._generator(PARTICLE_STREAM, time_index, particle_index)

    def resampling(self, time_index: int) -> Generator:
        """Generator for the resampling offset draw at one time index."""
        return self._generator(RESAMPLING_STREAM, time_index)

    def __repr__(self) -> str:
        return f"RandomStreams(entropy={self.entropy})"
