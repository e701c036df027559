"""
Trajectory simulation and storage.
"""

import numpy as np
from dataclasses import dataclass
from typing import Optional, Dict, Any
from numpy.random import Generator, default_rng

from ..models.base import ModelCapability


@dataclass
class Trajectory:
    """
    Container for simulated or recorded trajectory data.

    Attributes:
        states: [T+1, nx] State trajectory (x_0, x_1, ..., x_T)
        observations: [T, ny] Observations (y_1, y_2, ..., y_T)
        metadata: Optional dictionary for additional info
    """
    states: np.ndarray
    observations: np.ndarray
    metadata: Optional[Dict[str, Any]] = None

    @property
    def T(self) -> int:
        """Number of time steps."""
        return self.observations.shape[0]

    @property
    def state_dim(self) -> int:
        """State dimension."""
        return self.states.shape[1]

    @property
    def obs_dim(self) -> int:
        """Observation dimension."""
        return self.observations.shape[1]

    def save(self, path: str):
        """Save trajectory to .npz file."""
        np.savez(
            path,
            states=self.states,
            observations=self.observations,
            metadata=self.metadata,
        )

    @classmethod
    def load(cls, path: str) -> "Trajectory":
        """Load trajectory from .npz file."""
        data = np.load(path, allow_pickle=True)
        metadata = data['metadata'].item() if 'metadata' in data else None
        return cls(
            states=data['states'],
            observations=data['observations'],
            metadata=metadata,
        )


def simulate(
    model: ModelCapability,
    T: int,
    seed: Optional[int] = None,
    rng: Optional[Generator] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Trajectory:
    """
    Simulate a trajectory from a model.

    Each step applies the deterministic then the stochastic update and draws
    an observation of the new state.

    Args:
        model: Object implementing the model capability
        T: Number of time steps
        seed: Random seed (ignored if rng is provided)
        rng: NumPy random generator (optional)
        metadata: Optional metadata to attach

    Returns:
        Trajectory object
    """
    if rng is None:
        rng = default_rng(seed)

    states = np.zeros((T + 1, model.state_dimension), dtype=model.state_dtype)
    observations = np.zeros((T, model.observation_dimension), dtype=model.observation_dtype)

    states[0] = model.sample_initial_state(rng)

    for t in range(T):
        # Dynamics: x_t -> x_{t+1}
        states[t + 1] = states[t]
        model.update_state_deterministic(states[t + 1], t + 1)
        model.update_state_stochastic(states[t + 1], rng)

        # Observation: x_{t+1} -> y_{t+1}
        observations[t] = model.sample_observation_given_state(states[t + 1], rng)

    return Trajectory(
        states=states,
        observations=observations,
        metadata=metadata,
    )
