"""
Lorenz-63 system with additive Gaussian state noise.

State: x = [x1, x2, x3]
Dynamics: dx1/dt = sigma (x2 - x1)
          dx2/dt = x1 (rho - x3) - x2
          dx3/dt = x1 x2 - beta x3
integrated over one time step with fixed-step RK4, plus N(0, diag(s_x^2)) noise.
Observation: a subset of the coordinates with N(0, diag(s_y^2)) noise.
"""

from dataclasses import dataclass, fields
from typing import Sequence, Union

import numpy as np
from numpy.random import Generator

from .gaussian import LinearGaussianNoise
from ..errors import ConfigurationError


@dataclass
class Lorenz63Parameters:
    """
    Attributes:
        sigma, rho, beta: Lorenz-63 coefficients
        time_step: Time between observations
        n_integration_step: RK4 steps per time step
        observed_indices: State coordinates that are observed (0-based)
        initial_state_std: Scalar or [3] initial state standard deviation
        state_noise_std: Scalar or [3] state noise standard deviation
        observation_noise_std: Scalar or [ny] observation noise standard deviation
    """
    sigma: float = 10.0
    rho: float = 28.0
    beta: float = 8.0 / 3.0
    time_step: float = 0.1
    n_integration_step: int = 10
    observed_indices: Sequence[int] = (0, 1, 2)
    initial_state_std: Union[float, Sequence[float]] = 1.0
    state_noise_std: Union[float, Sequence[float]] = 1.0
    observation_noise_std: Union[float, Sequence[float]] = 1.0


def _lorenz63_tendency(x: np.ndarray, sigma: float, rho: float, beta: float) -> np.ndarray:
    return np.array([
        sigma * (x[1] - x[0]),
        x[0] * (rho - x[2]) - x[1],
        x[0] * x[1] - beta * x[2],
    ])


class Lorenz63Model:
    """
    Lorenz-63 model implementing the bootstrap and locally optimal capabilities.
    """

    state_dimension = 3
    state_dtype = np.dtype(np.float64)
    observation_dtype = np.dtype(np.float64)

    def __init__(self, parameters: Lorenz63Parameters = None):
        if parameters is None:
            parameters = Lorenz63Parameters()
        self.parameters = parameters

        observed = np.asarray(parameters.observed_indices, dtype=int)
        if observed.ndim != 1 or observed.size == 0 or observed.min() < 0 or observed.max() > 2:
            raise ConfigurationError(f"Invalid observed_indices {parameters.observed_indices}")
        if parameters.n_integration_step < 1:
            raise ConfigurationError("n_integration_step must be >= 1")
        self.observation_dimension = observed.size

        self._initial_std = np.broadcast_to(
            np.asarray(parameters.initial_state_std, dtype=np.float64), (3,)
        ).copy()
        state_std = np.broadcast_to(np.asarray(parameters.state_noise_std, dtype=np.float64), (3,))
        obs_std = np.broadcast_to(
            np.asarray(parameters.observation_noise_std, dtype=np.float64), (observed.size,)
        )

        H = np.zeros((observed.size, 3))
        H[np.arange(observed.size), observed] = 1.0
        self.noise = LinearGaussianNoise(np.diag(state_std ** 2), H, np.diag(obs_std ** 2))

    @classmethod
    def from_dict(cls, parameters: dict) -> "Lorenz63Model":
        """Build from a flat parameter dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(Lorenz63Parameters)}
        unknown = set(parameters) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown Lorenz63 parameters: {', '.join(sorted(unknown))}"
            )
        return cls(Lorenz63Parameters(**parameters))

    def sample_initial_state(self, rng: Generator) -> np.ndarray:
        return self._initial_std * rng.standard_normal(3)

    def update_state_deterministic(self, state: np.ndarray, time_index: int) -> None:
        p = self.parameters
        dt = p.time_step / p.n_integration_step
        x = state.copy()
        for _ in range(p.n_integration_step):
            k1 = _lorenz63_tendency(x, p.sigma, p.rho, p.beta)
            k2 = _lorenz63_tendency(x + 0.5 * dt * k1, p.sigma, p.rho, p.beta)
            k3 = _lorenz63_tendency(x + 0.5 * dt * k2, p.sigma, p.rho, p.beta)
            k4 = _lorenz63_tendency(x + dt * k3, p.sigma, p.rho, p.beta)
            x = x + (dt / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)
        state[:] = x

    def update_state_stochastic(self, state: np.ndarray, rng: Generator) -> None:
        self.noise.add_state_noise(state, rng)

    def sample_observation_given_state(self, state: np.ndarray, rng: Generator) -> np.ndarray:
        return self.noise.sample_observation(state, rng)

    def log_density_observation_given_state(self, observation: np.ndarray, state: np.ndarray) -> float:
        return self.noise.log_density_observation(observation, state)

    def get_optimal_proposal_log_weight(self, observation: np.ndarray, state: np.ndarray) -> float:
        return self.noise.optimal_proposal_log_weight(observation, state)

    def sample_state_from_optimal_proposal(
        self, state: np.ndarray, observation: np.ndarray, rng: Generator
    ) -> None:
        self.noise.sample_optimal_proposal(state, observation, rng)

    def __repr__(self) -> str:
        return f"Lorenz63Model(nx=3, ny={self.observation_dimension})"
